# _shared.py : schémas, ouverture du backend, logs et utilitaires communs aux pages
from __future__ import annotations
from pathlib import Path
from datetime import datetime, timezone
import math
import re
import sys
import streamlit as st
from loguru import logger

from storage_backend import AUDIT_COLS, Backend, _secret

# === Schémas ===
CONTACT_COLS = [
    "id", "contact_name", "company_name", "position", "email", "phone_no",
    "linkedin", "website", "contact_source", "industry", "region", "country",
    "segment", "score", "contact_owner", "description",
] + AUDIT_COLS
# colonnes lues par le tableau de bord analytique
ANALYTICS_COLS = ["id", "contact_name", "company_name", "contact_source",
                  "industry", "region", "segment", "score"]
AUDIT_LOG_COLS = ["audit_id", "ts", "user", "action", "table_name",
                  "record_count", "record_ids", "details"]
PREF_COLS = ["key", "value"]

# listes proposées dans les formulaires (saisie libre acceptée à l'import)
SOURCES = ["Website", "Referral", "LinkedIn", "Cold Call", "Trade Show", "Email Campaign", "Other"]
SEGMENTS = ["Prospect", "Customer", "Partner", "Lead", "Inactive"]
REGIONS = ["EU", "US", "ASIA", "Other"]

_TRUTHY = ("1", "on", "true", "yes")


def secret_flag(key: str, default: str = "on", secrets=None) -> bool:
    return str(_secret(key, default, secrets)).strip().lower() in _TRUTHY


# === Logs ===
_LOGGER_READY = False


def setup_logger(level: str | None = None, log_dir: str | None = None, secrets=None):
    """Console + fichier tournant ; idempotent (Streamlit ré-exécute le script à chaque interaction)."""
    global _LOGGER_READY
    if _LOGGER_READY:
        return logger
    level = (level or _secret("log_level", "INFO", secrets)).upper()
    log_dir = Path(log_dir or _secret("log_dir", "logs", secrets))
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | {name}:{line} | <level>{message}</level>",
        level=level,
        colorize=sys.stderr.isatty(),
    )
    log_dir.mkdir(parents=True, exist_ok=True)
    logger.add(
        log_dir / "contacts_crm_{time:YYYYMMDD}.log",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} | {message}",
        level=level,
        rotation="10 MB",
        retention=5,
        encoding="utf-8",
    )
    _LOGGER_READY = True
    logger.debug("Logger initialisé (niveau {})", level)
    return logger


# === Backend (CSV par défaut ; Google Sheets si configuré) ===
def data_paths(data_dir: str | Path | None = None, secrets=None) -> dict:
    base = Path(data_dir or _secret("data_dir", "data", secrets))
    base.mkdir(exist_ok=True, parents=True)
    return {
        "contacts": base / "contacts.csv",
        "audit_log": base / "audit_log.csv",
        "prefs": base / "preferences.csv",
    }


def _init_gsheets():
    from gs_client import read_service_account_secret, get_gspread_client, make_ws_func
    info = read_service_account_secret()
    GC = get_gspread_client(info)
    sid = (_secret("gsheet_spreadsheet_id", "") or "").strip()
    sname = (_secret("gsheet_spreadsheet", "Contacts CRM DB") or "").strip()
    return make_ws_func(GC, spreadsheet_id=(sid or None), spreadsheet_title=(None if sid else sname))


def get_backend() -> Backend:
    """
    Backend effectif de la session. gsheets déclaré mais indisponible : repli CSV,
    mémorisé dans BACKEND_EFFECTIVE pour ne pas retenter à chaque rerun.
    """
    declared = str(_secret("storage_backend", "csv")).strip().lower()
    effective = st.session_state.get("BACKEND_EFFECTIVE")
    ws_func = st.session_state.get("WS_FUNC")
    if effective is None:
        effective = "csv"
        if declared == "gsheets":
            try:
                ws_func = _init_gsheets()
                effective = "gsheets"
            except Exception as e:
                logger.exception("Initialisation Google Sheets échouée, bascule CSV")
                st.session_state["BACKEND_ERROR"] = str(e)
                ws_func = None
        st.session_state["BACKEND_EFFECTIVE"] = effective
        st.session_state["WS_FUNC"] = ws_func
    return Backend(
        kind=effective,
        paths=data_paths(),
        ws_func=ws_func if effective == "gsheets" else None,
        user=str(_secret("audit_user", "ui")),
        override=bool(st.session_state.get("override_save", False)),
    )


# === Utils ===
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def email_ok(s) -> bool:
    s = str(s or "").strip()
    return not s or bool(EMAIL_RE.match(s))


def is_blank(v) -> bool:
    if v is None:
        return True
    if isinstance(v, float) and v != v:  # NaN
        return True
    return str(v).strip() == ""


def to_float_safe(x, default=0.0):
    """Nombre fini ou default (vide, texte, nan, inf, 1e999)."""
    try:
        if is_blank(x):
            return default
        v = float(str(x).replace(" ", "").replace(",", "."))
    except ValueError:
        return default
    return v if math.isfinite(v) else default


def to_int_safe(x, default=0):
    v = to_float_safe(x, None)
    return default if v is None else int(v)


def parse_column_list(s, available: list, defaults: list) -> list:
    """'a, b, c' -> colonnes connues dans l'ordre donné ; vide ou inconnu -> defaults."""
    cols = [c.strip() for c in str(s or "").split(",") if c.strip()]
    cols = [c for c in dict.fromkeys(cols) if c in available]
    return cols or list(defaults)


def today_str() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")

