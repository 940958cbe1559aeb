# contacts_io.py : import / export CSV des contacts
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Dict, List, Optional
import io
import re
import uuid
import pandas as pd
from loguru import logger

from _shared import AUDIT_COLS, CONTACT_COLS, email_ok, is_blank, to_int_safe


class ImportFileError(ValueError):
    """Fichier CSV illisible ou sans colonne de nom."""


EDITABLE_COLS = [c for c in CONTACT_COLS if c not in AUDIT_COLS and c != "id"]
EXPORT_COLS = [c for c in CONTACT_COLS if c not in ("Created_By", "Updated_By")]

# en-têtes usuels (exports Excel, HubSpot, Salesforce…) -> colonnes du schéma
HEADER_ALIASES = {
    "name": "contact_name",
    "full_name": "contact_name",
    "contact": "contact_name",
    "company": "company_name",
    "organization": "company_name",
    "account_name": "company_name",
    "title": "position",
    "job_title": "position",
    "e_mail": "email",
    "email_address": "email",
    "phone": "phone_no",
    "phone_number": "phone_no",
    "mobile": "phone_no",
    "linkedin_url": "linkedin",
    "url": "website",
    "source": "contact_source",
    "lead_source": "contact_source",
    "sector": "industry",
    "owner": "contact_owner",
    "notes": "description",
    "lead_score": "score",
}


def normalize_header(h) -> str:
    s = re.sub(r"[\s\-./]+", "_", str(h).strip().lower())
    return HEADER_ALIASES.get(s.strip("_"), s.strip("_"))


def _read_text(file) -> str:
    raw = Path(file).read_bytes() if isinstance(file, (str, Path)) else file.read()
    return raw.decode("utf-8-sig") if isinstance(raw, bytes) else raw


def _guess_sep(header: str) -> str:
    counts = {sep: header.count(sep) for sep in (",", ";", "\t")}
    best = max(counts, key=counts.get)
    return best if counts[best] else ","


def read_contacts_csv(file) -> pd.DataFrame:
    """Lit un CSV (séparateur , ; ou tabulation selon l'en-tête), colonnes en texte, en-têtes normalisés."""
    try:
        text = _read_text(file)
    except UnicodeDecodeError as e:
        raise ImportFileError(f"Fichier CSV illisible (encodage UTF-8 attendu) : {e}") from e
    if not text.strip():
        raise ImportFileError("Fichier CSV vide")
    sep = _guess_sep(text.splitlines()[0])
    try:
        df = pd.read_csv(io.StringIO(text), sep=sep, dtype=str, keep_default_na=False)
    except pd.errors.ParserError as e:
        raise ImportFileError(f"Fichier CSV illisible : {e}") from e
    df.columns = [normalize_header(c) for c in df.columns]
    # deux en-têtes vers la même colonne : on garde la première
    df = df.loc[:, ~pd.Index(df.columns).duplicated()]
    if "contact_name" not in df.columns:
        raise ImportFileError("Colonne 'contact_name' (ou 'name') absente du fichier")
    return df


def clean_score(v) -> str:
    if is_blank(v):
        return ""
    n = to_int_safe(v, default=None)
    if n is None:
        return ""
    return str(max(0, min(100, n)))


@dataclass
class ImportPlan:
    inserts: List[dict] = field(default_factory=list)
    updates: List[dict] = field(default_factory=list)
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
    ignored_columns: List[str] = field(default_factory=list)

    @property
    def rows(self) -> List[dict]:
        return self.updates + self.inserts


def prepare_import(df_in: pd.DataFrame, df_existing: pd.DataFrame,
                   new_id=lambda: str(uuid.uuid4())) -> ImportPlan:
    """
    Rapproche chaque ligne d'un contact existant (id, puis email sans casse).
    Rapprochée -> mise à jour des seuls champs renseignés ; sinon création.
    Même email répété dans le fichier : la dernière ligne l'emporte.
    """
    plan = ImportPlan(ignored_columns=[c for c in df_in.columns if c not in EDITABLE_COLS + ["id"]])
    ids = set(df_existing["id"].astype(str)) if "id" in df_existing.columns else set()
    by_email: Dict[str, str] = {}
    if "email" in df_existing.columns:
        for cid, em in zip(df_existing["id"].astype(str), df_existing["email"].astype(str)):
            if em.strip():
                by_email.setdefault(em.strip().lower(), cid)

    staged: Dict[str, dict] = {}  # clé de rapprochement -> ligne
    for n, (_, r) in enumerate(df_in.iterrows(), start=2):  # ligne 1 = en-têtes
        if is_blank(r.get("contact_name")):
            plan.skipped += 1
            plan.errors.append(f"Ligne {n} : nom de contact manquant")
            continue
        email = str(r.get("email", "") or "").strip()
        if not email_ok(email):
            plan.skipped += 1
            plan.errors.append(f"Ligne {n} : email invalide '{email}'")
            continue
        values = {c: str(r[c]).strip() for c in EDITABLE_COLS if c in r.index and not is_blank(r[c])}
        if "score" in values:
            values["score"] = clean_score(values["score"])
            if not values["score"]:
                del values["score"]
                plan.errors.append(f"Ligne {n} : score non numérique ignoré")
        cid = str(r.get("id", "") or "").strip()
        existing_id: Optional[str] = cid if (cid and cid in ids) else (by_email.get(email.lower()) if email else None)
        key = f"id:{existing_id}" if existing_id else (f"email:{email.lower()}" if email else f"row:{n}")
        if key in staged:
            plan.skipped += 1
        staged[key] = {"_existing": existing_id, **values}

    for row in staged.values():
        existing_id = row.pop("_existing")
        if existing_id:
            plan.updates.append({"id": existing_id, **row})
        else:
            plan.inserts.append({"id": new_id(), **{c: row.get(c, "") for c in EDITABLE_COLS}})
    logger.debug("Import préparé : {} création(s), {} mise(s) à jour, {} ignorée(s)",
                 len(plan.inserts), len(plan.updates), plan.skipped)
    return plan


def export_contacts_csv(df: pd.DataFrame, columns: Optional[List[str]] = None) -> bytes:
    cols = [c for c in (columns or EXPORT_COLS) if c in df.columns]
    buf = io.StringIO()
    df[cols].to_csv(buf, index=False)
    # BOM pour qu'Excel reconnaisse l'UTF-8
    return buf.getvalue().encode("utf-8-sig")


def export_filename(today: Optional[date] = None) -> str:
    return f"contacts_export_{(today or date.today()).isoformat()}.csv"
