# audit_log.py : journal d'audit des opérations CRUD (table audit_log + loguru)
from __future__ import annotations
from typing import Iterable, Optional
import uuid
from loguru import logger

from storage_backend import TableClient, now_iso


class AuditLogger:
    """
    Ajoute une ligne par opération dans la table audit_log.
    Un échec d'écriture est journalisé sans annuler l'opération auditée.
    """

    def __init__(self, table: Optional[TableClient], user: str = "ui", enabled: bool = True):
        self.table = table
        self.user = user
        self.enabled = enabled and table is not None

    def _record(self, action: str, table_name: str, ids: Iterable = (), count: Optional[int] = None,
                details: str = "") -> Optional[dict]:
        ids = [str(i) for i in ids]
        row = {
            "audit_id": uuid.uuid4().hex,
            "ts": now_iso(),
            "user": self.user,
            "action": action,
            "table_name": table_name,
            "record_count": str(len(ids) if count is None else count),
            "record_ids": ";".join(ids),
            "details": details,
        }
        logger.info("AUDIT {} {} x{} par {} {}", action, table_name, row["record_count"], self.user, details)
        if not self.enabled:
            return row
        try:
            self.table.insert(row)
        except Exception:
            logger.exception("Écriture du journal d'audit échouée ({} sur {})", action, table_name)
            return None
        return row

    def log_create(self, table_name: str, record_id, details: str = ""):
        return self._record("CREATE", table_name, [record_id], details=details)

    def log_update(self, table_name: str, record_id, details: str = ""):
        return self._record("UPDATE", table_name, [record_id], details=details)

    def log_bulk_delete(self, table_name: str, count: int, ids: Iterable):
        return self._record("BULK_DELETE", table_name, ids, count=count)

    def log_import(self, table_name: str, inserted: int, updated: int, skipped: int, filename: str = ""):
        return self._record("IMPORT", table_name, count=inserted + updated,
                            details=f"file={filename} inserted={inserted} updated={updated} skipped={skipped}")

    def log_export(self, table_name: str, count: int):
        return self._record("EXPORT", table_name, count=count)
