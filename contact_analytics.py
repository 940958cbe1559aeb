# contact_analytics.py : agrégats et graphiques du tableau de bord Contacts
from __future__ import annotations
from dataclasses import dataclass, asdict
import io
import math
import altair as alt
import pandas as pd
import streamlit as st
from loguru import logger

from _shared import ANALYTICS_COLS, is_blank, to_float_safe

COLORS = ["#8b5cf6", "#3b82f6", "#22c55e", "#eab308", "#ef4444", "#ec4899", "#06b6d4", "#f97316"]
SCORE_RANGES = [
    ("0-20", 0, 20),
    ("21-40", 21, 40),
    ("41-60", 41, 60),
    ("61-80", 61, 80),
    ("81-100", 81, 100),
]
TOP_INDUSTRIES = 8
CHART_HEIGHT = 250


@dataclass
class ContactStats:
    total_contacts: int = 0
    avg_score: int = 0
    with_company: int = 0
    with_source: int = 0


@dataclass
class ContactSummary:
    stats: ContactStats
    sources: pd.DataFrame
    industries: pd.DataFrame
    segments: pd.DataFrame
    scores: pd.DataFrame


def fetch_contacts(table) -> pd.DataFrame:
    """Lecture des contacts triés par nom ; en cas d'erreur, tableau vide (le dashboard affiche des zéros)."""
    try:
        return table.select(ANALYTICS_COLS).order("contact_name").execute()
    except Exception:
        logger.exception("Erreur de lecture des contacts pour l'analytique")
        return pd.DataFrame(columns=ANALYTICS_COLS)


def _col(df: pd.DataFrame, name: str) -> pd.Series:
    if df is None or name not in df.columns:
        return pd.Series([None] * (0 if df is None else len(df)), dtype=object)
    return df[name]


def _score(v) -> float:
    x = to_float_safe(v, 0.0)
    return x if math.isfinite(x) else 0.0


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def contact_stats(df: pd.DataFrame) -> ContactStats:
    n = 0 if df is None else len(df)
    if n == 0:
        return ContactStats()
    total = sum(_score(v) for v in _col(df, "score"))
    return ContactStats(
        total_contacts=n,
        avg_score=_round_half_up(total / n),
        with_company=int(sum(not is_blank(v) for v in _col(df, "company_name"))),
        with_source=int(sum(not is_blank(v) for v in _col(df, "contact_source"))),
    )


def _frequencies(values: pd.Series, default: str) -> list:
    """Comptage par valeur, dans l'ordre de première apparition ; vide -> default."""
    counts = {}
    for v in values:
        key = default if is_blank(v) else str(v).strip()
        counts[key] = counts.get(key, 0) + 1
    return list(counts.items())


def _frame(items: list, value_col: str = "value") -> pd.DataFrame:
    return pd.DataFrame(items, columns=["name", value_col]).astype({value_col: int})


def source_distribution(df: pd.DataFrame) -> pd.DataFrame:
    return _frame(_frequencies(_col(df, "contact_source"), "Unknown"))


def industry_distribution(df: pd.DataFrame, limit: int = TOP_INDUSTRIES) -> pd.DataFrame:
    items = _frequencies(_col(df, "industry"), "Unknown")
    # sorted() est stable : à égalité, ordre de première apparition
    items = sorted(items, key=lambda kv: -kv[1])[:limit]
    return _frame(items)


def segment_distribution(df: pd.DataFrame) -> pd.DataFrame:
    return _frame(_frequencies(_col(df, "segment"), "Prospect"))


def score_distribution(df: pd.DataFrame) -> pd.DataFrame:
    counts = {label: 0 for label, _, _ in SCORE_RANGES}
    for v in _col(df, "score"):
        s = _score(v)
        for label, lo, hi in SCORE_RANGES:
            if lo <= s <= hi:
                counts[label] += 1
                break
    return _frame(list(counts.items()), "count")


def summarize_contacts(df: pd.DataFrame) -> ContactSummary:
    return ContactSummary(
        stats=contact_stats(df),
        sources=source_distribution(df),
        industries=industry_distribution(df),
        segments=segment_distribution(df),
        scores=score_distribution(df),
    )


@st.cache_data(show_spinner=False)
def cached_summary(df: pd.DataFrame) -> ContactSummary:
    # recalcul uniquement quand les contacts chargés changent
    return summarize_contacts(df)


# =============== Graphiques ===============

def with_percent_labels(data: pd.DataFrame) -> pd.DataFrame:
    out = data.copy()
    total = out["value"].sum()
    out["percent"] = [(_round_half_up(v * 100 / total) if total else 0) for v in out["value"]]
    out["label"] = [f"{n} {p}%" for n, p in zip(out["name"], out["percent"])]
    return out


def donut_chart(data: pd.DataFrame) -> alt.LayerChart:
    d = with_percent_labels(data)
    palette = [COLORS[i % len(COLORS)] for i in range(len(d))]
    base = alt.Chart(d).encode(
        theta=alt.Theta("value:Q", stack=True),
        color=alt.Color("name:N", sort=list(d["name"]),
                        scale=alt.Scale(domain=list(d["name"]), range=palette),
                        legend=alt.Legend(title=None, orient="bottom")),
        tooltip=["name", "value", alt.Tooltip("percent:Q", title="%")],
    )
    arcs = base.mark_arc(innerRadius=60, outerRadius=90, padAngle=0.02)
    labels = base.mark_text(radius=112, size=11).encode(text="label:N")
    return (arcs + labels).properties(height=CHART_HEIGHT)


def industry_bar_chart(data: pd.DataFrame) -> alt.Chart:
    return alt.Chart(data).mark_bar(cornerRadiusTopRight=4, cornerRadiusBottomRight=4).encode(
        x=alt.X("value:Q", title=None),
        y=alt.Y("name:N", sort=list(data["name"]), title=None, axis=alt.Axis(labelLimit=100)),
        tooltip=["name", "value"],
    ).properties(height=CHART_HEIGHT)


def score_bar_chart(data: pd.DataFrame) -> alt.Chart:
    return alt.Chart(data).mark_bar(cornerRadiusTopLeft=4, cornerRadiusTopRight=4).encode(
        x=alt.X("name:N", sort=[r[0] for r in SCORE_RANGES], title=None),
        y=alt.Y("count:Q", title=None),
        tooltip=["name", "count"],
    ).properties(height=CHART_HEIGHT)


def analytics_excel_bytes(summary: ContactSummary) -> bytes:
    buf = io.BytesIO()
    with pd.ExcelWriter(buf, engine="openpyxl") as writer:
        pd.DataFrame([asdict(summary.stats)]).to_excel(writer, sheet_name="Summary", index=False)
        summary.sources.to_excel(writer, sheet_name="By source", index=False)
        summary.segments.to_excel(writer, sheet_name="By segment", index=False)
        summary.industries.to_excel(writer, sheet_name="Top industries", index=False)
        summary.scores.to_excel(writer, sheet_name="Score distribution", index=False)
    return buf.getvalue()
