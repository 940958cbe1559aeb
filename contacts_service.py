# contacts_service.py : état de la page Contacts et gestionnaires d'actions (sans widgets)
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, List, Optional, Tuple
import uuid
from loguru import logger

from _shared import CONTACT_COLS, email_ok, is_blank, parse_column_list
from audit_log import AuditLogger
from contacts_io import (
    EDITABLE_COLS, EXPORT_COLS, ImportFileError, clean_score,
    export_contacts_csv, export_filename, prepare_import, read_contacts_csv,
)
from storage_backend import StorageError, TableClient

VIEW_MODES = ("table", "analytics")
COLUMNS_PREF_KEY = "grid_contacts_columns"
AVAILABLE_COLUMNS = [c for c in CONTACT_COLS if c != "id"]
DEFAULT_VISIBLE_COLUMNS = [
    "contact_name", "company_name", "position", "email", "phone_no",
    "contact_source", "industry", "region", "segment", "score", "contact_owner",
]
STATE_KEY = "contacts_page"


@dataclass
class ContactsPageState:
    view_mode: str = "table"
    show_column_customizer: bool = False
    show_modal: bool = False
    show_import: bool = False
    selected_contacts: List[str] = field(default_factory=list)
    refresh_trigger: int = 0
    is_importing: bool = False
    uploader_nonce: int = 0

    def on_refresh(self):
        self.refresh_trigger += 1

    def set_view_mode(self, mode: str):
        if mode not in VIEW_MODES:
            raise ValueError(f"Mode d'affichage inconnu : {mode}")
        self.view_mode = mode


def page_state(state) -> ContactsPageState:
    """État de page conservé entre reruns (st.session_state ou dict en test)."""
    if STATE_KEY not in state:
        state[STATE_KEY] = ContactsPageState()
    return state[STATE_KEY]


@dataclass
class Notice:
    title: str
    description: str
    variant: str = "default"  # "destructive" pour les erreurs


Notify = Callable[[Notice], None]


@dataclass
class ActionItem:
    key: str
    label: str
    disabled: bool = False
    destructive: bool = False


def action_items(page: ContactsPageState) -> List[ActionItem]:
    """Entrées du menu Actions ; la suppression n'apparaît qu'avec une sélection."""
    items = [
        ActionItem("columns", "Columns"),
        ActionItem("import", "Import CSV", disabled=page.is_importing),
        ActionItem("export", "Export CSV"),
    ]
    n = len(page.selected_contacts)
    if n > 0:
        items.append(ActionItem("delete", f"Delete Selected ({n})", destructive=True))
    return items


# =============== Suppression groupée ===============

def handle_bulk_delete(page: ContactsPageState, table: TableClient, audit: AuditLogger, notify: Notify) -> bool:
    ids = list(page.selected_contacts)
    if not ids:
        return False
    try:
        table.delete().in_("id", ids).execute()
    except Exception:
        logger.exception("Suppression groupée échouée ({} contact(s))", len(ids))
        notify(Notice("Error", "Failed to delete contacts", "destructive"))
        return False
    audit.log_bulk_delete("contacts", len(ids), ids)
    notify(Notice("Success", f"{len(ids)} contacts deleted successfully"))
    page.selected_contacts = []
    page.on_refresh()
    return True


# =============== Import / export CSV ===============

def handle_import_csv(page: ContactsPageState, file, table: TableClient, audit: AuditLogger, notify: Notify):
    """Importe le fichier choisi ; le sélecteur de fichier est réinitialisé dans tous les cas."""
    if file is None:
        return None
    filename = getattr(file, "name", "") or ""
    page.is_importing = True
    try:
        df_in = read_contacts_csv(file)
        # lecture sans ETag : le verrou compare à la dernière lecture affichée
        existing = table.load(record_etag=False)[["id", "email"]]
        plan = prepare_import(df_in, existing)
        inserted, updated = table.upsert(plan.rows)
    except (ImportFileError, StorageError) as e:
        logger.error("Import CSV '{}' échoué : {}", filename, e)
        notify(Notice("Import failed", str(e), "destructive"))
        return None
    except Exception:
        logger.exception("Import CSV '{}' échoué", filename)
        notify(Notice("Import failed", "Failed to import contacts", "destructive"))
        return None
    finally:
        page.is_importing = False
        page.uploader_nonce += 1
    audit.log_import("contacts", inserted, updated, plan.skipped, filename)
    logger.info("Import CSV '{}' : {} créé(s), {} mis à jour, {} ignoré(s)", filename, inserted, updated, plan.skipped)
    notify(Notice("Import complete",
                  f"{inserted} contacts imported, {updated} updated, {plan.skipped} skipped"))
    page.on_refresh()
    return plan


def handle_export(table: TableClient, audit: AuditLogger, today: Optional[date] = None) -> Tuple[str, bytes]:
    df = table.select(EXPORT_COLS).order("contact_name").execute()
    audit.log_export("contacts", len(df))
    return export_filename(today), export_contacts_csv(df)


# =============== Création / modification ===============

class ContactValidationError(ValueError):
    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


def clean_contact_values(values: dict) -> dict:
    out = {c: str(values.get(c, "") or "").strip() for c in EDITABLE_COLS if c in values}
    errors = []
    if is_blank(out.get("contact_name")):
        errors.append("Contact name is required")
    if not email_ok(out.get("email")):
        errors.append(f"Invalid email: {out.get('email')}")
    if "score" in out:
        raw = out["score"]
        out["score"] = clean_score(raw)
        if raw and not out["score"]:
            errors.append(f"Score must be a number: {raw}")
    if errors:
        raise ContactValidationError(errors)
    return out


def create_contact(values: dict, table: TableClient, audit: AuditLogger,
                   new_id: Callable[[], str] = lambda: str(uuid.uuid4())) -> str:
    row = clean_contact_values(values)
    cid = new_id()
    table.insert({"id": cid, **row})
    audit.log_create("contacts", cid, details=row.get("contact_name", ""))
    return cid


def update_contact(contact_id: str, values: dict, table: TableClient, audit: AuditLogger) -> int:
    row = clean_contact_values(values)
    n = table.update(row).eq("id", contact_id).execute()
    if n:
        audit.log_update("contacts", contact_id, details=", ".join(sorted(row)))
    return n


# =============== Personnalisation des colonnes ===============

def load_visible_columns(prefs: TableClient, state=None) -> List[str]:
    if state is not None and state.get(COLUMNS_PREF_KEY):
        return list(state[COLUMNS_PREF_KEY])
    try:
        df = prefs.select(["key", "value"]).execute()
    except StorageError:
        logger.exception("Lecture des préférences de colonnes échouée")
        return list(DEFAULT_VISIBLE_COLUMNS)
    match = df[df["key"] == COLUMNS_PREF_KEY]
    raw = match["value"].iloc[-1] if not match.empty else ""
    cols = parse_column_list(raw, AVAILABLE_COLUMNS, DEFAULT_VISIBLE_COLUMNS)
    if state is not None:
        state[COLUMNS_PREF_KEY] = cols
    return cols


def save_visible_columns(prefs: TableClient, columns: List[str], state=None) -> List[str]:
    cols = parse_column_list(",".join(columns), AVAILABLE_COLUMNS, DEFAULT_VISIBLE_COLUMNS)
    prefs.upsert([{"key": COLUMNS_PREF_KEY, "value": ",".join(cols)}], on="key")
    if state is not None:
        state[COLUMNS_PREF_KEY] = cols
    logger.info("Colonnes visibles enregistrées : {}", ", ".join(cols))
    return cols


def grid_columns(visible: List[str]) -> List[str]:
    # id toujours présent (masqué dans la grille) pour la sélection
    return ["id"] + [c for c in visible if c != "id"]
