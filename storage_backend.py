# storage_backend.py : backend CSV / Google Sheets avec ETag, verrou optimiste et client de requêtes
from __future__ import annotations
from typing import Dict, Iterable, List, Optional, Tuple
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
import hashlib
import pandas as pd
import streamlit as st
from gspread_dataframe import set_with_dataframe, get_as_dataframe
from loguru import logger

AUDIT_COLS = ["Created_At", "Created_By", "Updated_At", "Updated_By"]
SHEET_NAME = {
    "contacts": "contacts",
    "audit_log": "audit_log",
    "prefs": "preferences",
}


class StorageError(RuntimeError):
    """Backend indisponible ou mal configuré."""


class ConflictError(StorageError):
    """La table a changé depuis son chargement (ETag différent)."""


def _id_col_for(name: str) -> str:
    return {
        "contacts": "id",
        "audit_log": "audit_id",
        "prefs": "key",
    }.get(name, "id")


def _secret(key: str, default, secrets=None):
    src = st.secrets if secrets is None else secrets
    try:
        return src.get(key, default)
    except FileNotFoundError:
        # pas de secrets.toml : valeurs par défaut
        return default


def _state(state=None):
    return st.session_state if state is None else state


def now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def compute_etag(df: pd.DataFrame, name: str) -> str:
    """ETag stable basé sur colonnes d'identité + Updated_At si présente."""
    if df is None or df.empty:
        return "empty"
    cols = [_id_col_for(name), "Updated_At"]
    # colonne absente du fichier = colonne vide ajoutée au chargement
    view = pd.DataFrame({c: (df[c] if c in df.columns else "") for c in cols}, index=df.index)
    payload = view.fillna("").astype(str).sort_values(by=cols).to_csv(index=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _lock_enabled(secrets=None, state=None) -> bool:
    # secret "optimistic_lock" = off/0/false pour désactiver le verrou globalement
    val = str(_secret("optimistic_lock", "on", secrets)).lower()
    if val in ("0", "off", "false", "no"):
        return False
    # flag de session pour désactiver ponctuellement
    if _state(state).get("_lock_disable", False):
        return False
    return True


def _conform(df: pd.DataFrame, full_cols: list) -> pd.DataFrame:
    df = df.fillna("")
    for c in full_cols:
        if c not in df.columns:
            df[c] = ""
    return df[full_cols]


def ensure_df_source(name: str, cols: list, paths: Dict[str, Path] = None, ws_func=None,
                     secrets=None, state=None, record_etag: bool = True) -> pd.DataFrame:
    """
    Charge une table depuis CSV ou Google Sheets et prépare les colonnes.
    record_etag=False : lecture avant écriture, l'ETag de référence reste celui de la dernière lecture affichée.
    """
    full_cols = list(dict.fromkeys(cols + [c for c in AUDIT_COLS if c not in cols]))
    backend = _secret("storage_backend", "csv", secrets)

    if backend == "gsheets":
        if ws_func is None:
            raise StorageError("ws_func requis pour backend gsheets")
        tab = SHEET_NAME.get(name, name)
        ws = ws_func(tab)
        df = get_as_dataframe(ws, evaluate_formulas=True, header=0)
        if df is None or df.empty:
            df = pd.DataFrame(columns=full_cols)
            set_with_dataframe(ws, df, include_index=False, include_column_header=True, resize=True)
        else:
            # gspread-dataframe renvoie des colonnes "Unnamed: n" pour les cellules vides
            df = df.loc[:, [c for c in df.columns if not str(c).startswith("Unnamed")]]
            df = df.dropna(how="all").astype(str).replace({"nan": ""})
            df = _conform(df, full_cols)
        if record_etag:
            _state(state)[f"etag_{name}"] = compute_etag(df, name)
        logger.debug("Table '{}' chargée depuis Google Sheets ({} lignes)", name, len(df))
        return df

    # CSV
    if paths is None or name not in paths:
        raise StorageError(f"PATHS manquant pour la table '{name}' (backend CSV)")
    path = paths[name]
    if not path.exists():
        df = pd.DataFrame(columns=full_cols)
        path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(path, index=False, encoding="utf-8")
    else:
        try:
            df = pd.read_csv(path, dtype=str, keep_default_na=False)
        except pd.errors.EmptyDataError:
            df = pd.DataFrame(columns=full_cols)
    df = _conform(df, full_cols)
    if record_etag:
        _state(state)[f"etag_{name}"] = compute_etag(df, name)
    logger.debug("Table '{}' chargée depuis {} ({} lignes)", name, path, len(df))
    return df


def save_df_target(name: str, df: pd.DataFrame, paths: Optional[Dict[str, Path]] = None, ws_func=None,
                   override: bool = False, secrets=None, state=None):
    """Sauvegarde avec verrou optimiste (désactivable) et mode 'override'."""
    backend = _secret("storage_backend", "csv", secrets)
    st_state = _state(state)
    expected = st_state.get(f"etag_{name}")

    if backend == "gsheets":
        if ws_func is None:
            raise StorageError("ws_func requis pour backend gsheets")
        tab = SHEET_NAME.get(name, name)
        ws = ws_func(tab)
        df_remote = get_as_dataframe(ws, evaluate_formulas=True, header=0)
        if df_remote is None:
            df_remote = pd.DataFrame(columns=df.columns)
        else:
            df_remote = df_remote.dropna(how="all").astype(str).replace({"nan": ""})
        current = compute_etag(df_remote, name)
        if _lock_enabled(secrets, state) and (not override) and expected and expected != current:
            raise ConflictError(f"Conflit de modification détecté sur '{tab}'. Rechargez la page ou forcez la sauvegarde.")
        set_with_dataframe(ws, df, include_index=False, include_column_header=True, resize=True)
        st_state[f"etag_{name}"] = compute_etag(df, name)
        logger.debug("Table '{}' écrite dans Google Sheets ({} lignes)", name, len(df))
        return

    # CSV
    if paths is None or name not in paths:
        raise StorageError(f"PATHS manquant pour la table '{name}' (backend CSV)")
    path = paths[name]
    try:
        cur = pd.read_csv(path, dtype=str, keep_default_na=False)
    except (FileNotFoundError, pd.errors.EmptyDataError):
        cur = pd.DataFrame(columns=df.columns)
    current = compute_etag(cur, name)
    if _lock_enabled(secrets, state) and (not override) and expected and expected != current:
        raise ConflictError(f"Conflit de modification détecté sur '{name}'. Rechargez la page ou forcez la sauvegarde.")
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False, encoding="utf-8")
    st_state[f"etag_{name}"] = compute_etag(df, name)
    logger.debug("Table '{}' écrite dans {} ({} lignes)", name, path, len(df))


def stamp_create(row: dict, user: str) -> dict:
    """Ajoute les colonnes d'audit lors d'une création."""
    row = dict(row)
    now = now_iso()
    row["Created_At"] = row.get("Created_At") or now
    row["Created_By"] = row.get("Created_By") or user
    row["Updated_At"] = now
    row["Updated_By"] = user
    return row


def stamp_update(row: dict, user: str) -> dict:
    """Met à jour Updated_* lors d'une édition."""
    row = dict(row)
    row["Updated_At"] = now_iso()
    row["Updated_By"] = user
    return row


# =============== Client de requêtes déclaratif ===============

@dataclass
class Backend:
    """Regroupe le type de backend, les chemins CSV et la fonction worksheet."""
    kind: str = "csv"
    paths: Dict[str, Path] = field(default_factory=dict)
    ws_func: object = None
    user: str = "ui"
    override: bool = False
    secrets: Optional[dict] = None
    state: Optional[dict] = None

    def __post_init__(self):
        if self.kind == "gsheets" and self.ws_func is None:
            raise StorageError("ws_func requis pour backend gsheets")

    def _secrets(self):
        if self.secrets is not None:
            return self.secrets
        # backend effectif : le repli CSV ne doit pas relire storage_backend=gsheets
        return {"storage_backend": self.kind,
                "optimistic_lock": _secret("optimistic_lock", "on")}

    def load(self, name: str, cols: list, record_etag: bool = True) -> pd.DataFrame:
        return ensure_df_source(name, cols, self.paths, self.ws_func,
                                secrets=self._secrets(), state=self.state, record_etag=record_etag)

    def save(self, name: str, df: pd.DataFrame):
        save_df_target(name, df, self.paths, self.ws_func, override=self.override,
                       secrets=self._secrets(), state=self.state)

    def table(self, name: str, cols: list) -> "TableClient":
        return TableClient(name, cols, self)


def _sort_key(s: pd.Series) -> pd.Series:
    return s.astype(str).str.strip().str.lower()


class SelectQuery:
    def __init__(self, table: "TableClient", columns: List[str]):
        self._table = table
        self._columns = columns
        self._order: List[Tuple[str, bool]] = []

    def order(self, column: str, ascending: bool = True) -> "SelectQuery":
        self._order.append((column, ascending))
        return self

    def execute(self) -> pd.DataFrame:
        df = self._table.load()
        unknown = [c for c in self._columns + [c for c, _ in self._order] if c not in df.columns]
        if unknown:
            raise StorageError(f"Colonnes inconnues pour '{self._table.name}' : {', '.join(unknown)}")
        # tri stable, du dernier critère au premier ; valeurs vides en fin
        for col, asc in reversed(self._order):
            blank = df[col].astype(str).str.strip() == ""
            filled = df[~blank].sort_values(by=col, key=_sort_key, ascending=asc, kind="mergesort")
            df = pd.concat([filled, df[blank]])
        return df[self._columns].reset_index(drop=True)


class DeleteQuery:
    def __init__(self, table: "TableClient"):
        self._table = table
        self._filters: List[Tuple[str, set]] = []

    def in_(self, column: str, values: Iterable) -> "DeleteQuery":
        self._filters.append((column, {str(v) for v in values}))
        return self

    def execute(self) -> int:
        if not self._filters:
            raise StorageError("delete() sans filtre refusé")
        if any(not vals for _, vals in self._filters):
            return 0
        df = self._table.load(record_etag=False)
        mask = pd.Series(True, index=df.index)
        for col, vals in self._filters:
            if col not in df.columns:
                raise StorageError(f"Colonne inconnue pour '{self._table.name}' : {col}")
            mask &= df[col].astype(str).isin(vals)
        n = int(mask.sum())
        if n:
            self._table.save(df[~mask].reset_index(drop=True))
        logger.info("{} ligne(s) supprimée(s) de '{}'", n, self._table.name)
        return n


class UpdateQuery:
    def __init__(self, table: "TableClient", values: dict):
        self._table = table
        self._values = values
        self._eq: List[Tuple[str, str]] = []

    def eq(self, column: str, value) -> "UpdateQuery":
        self._eq.append((column, str(value)))
        return self

    def execute(self) -> int:
        if not self._eq:
            raise StorageError("update() sans filtre refusé")
        df = self._table.load(record_etag=False)
        mask = pd.Series(True, index=df.index)
        for col, val in self._eq:
            if col not in df.columns:
                raise StorageError(f"Colonne inconnue pour '{self._table.name}' : {col}")
            mask &= df[col].astype(str) == val
        idx = df.index[mask]
        if len(idx) == 0:
            return 0
        values = stamp_update({k: v for k, v in self._values.items() if k in df.columns},
                              self._table.backend.user)
        for k, v in values.items():
            df.loc[idx, k] = "" if v is None else str(v)
        self._table.save(df)
        logger.info("{} ligne(s) mise(s) à jour dans '{}'", len(idx), self._table.name)
        return len(idx)


class TableClient:
    """Accès déclaratif à une table : select/order, delete().in_(), insert, update().eq(), upsert."""

    def __init__(self, name: str, cols: list, backend: Backend):
        self.name = name
        self.cols = cols
        self.backend = backend
        self.id_col = _id_col_for(name)

    def load(self, record_etag: bool = True) -> pd.DataFrame:
        return self.backend.load(self.name, self.cols, record_etag)

    def save(self, df: pd.DataFrame):
        self.backend.save(self.name, df)

    def select(self, columns="*") -> SelectQuery:
        if columns == "*":
            cols = list(self.load(record_etag=False).columns)
        elif isinstance(columns, str):
            cols = [c.strip() for c in columns.split(",") if c.strip()]
        else:
            cols = list(columns)
        return SelectQuery(self, cols)

    def delete(self) -> DeleteQuery:
        return DeleteQuery(self)

    def update(self, values: dict) -> UpdateQuery:
        return UpdateQuery(self, values)

    def _rows_frame(self, rows: list, columns) -> pd.DataFrame:
        user = self.backend.user
        stamped = [stamp_create({k: ("" if v is None else str(v)) for k, v in r.items()}, user) for r in rows]
        return pd.DataFrame(stamped).reindex(columns=columns, fill_value="").fillna("")

    def insert(self, rows) -> int:
        rows = [rows] if isinstance(rows, dict) else list(rows)
        if not rows:
            return 0
        df = self.load(record_etag=False)
        df = pd.concat([df, self._rows_frame(rows, df.columns)], ignore_index=True)
        self.save(df)
        logger.info("{} ligne(s) insérée(s) dans '{}'", len(rows), self.name)
        return len(rows)

    def upsert(self, rows: list, on: Optional[str] = None) -> Tuple[int, int]:
        """Insère ou met à jour selon la colonne `on` (id par défaut), en une seule écriture."""
        on = on or self.id_col
        df = self.load(record_etag=False)
        pos = {str(v): i for i, v in zip(df.index, df[on].astype(str))}
        new_rows, updated = [], 0
        for r in rows:
            key = str(r.get(on, ""))
            if key and key in pos:
                i = pos[key]
                for k, v in stamp_update(r, self.backend.user).items():
                    if k in df.columns and k not in ("Created_At", "Created_By"):
                        df.at[i, k] = "" if v is None else str(v)
                updated += 1
            else:
                new_rows.append(r)
        if new_rows:
            df = pd.concat([df, self._rows_frame(new_rows, df.columns)], ignore_index=True)
        if new_rows or updated:
            self.save(df)
        logger.info("Upsert '{}' : {} insérée(s), {} mise(s) à jour", self.name, len(new_rows), updated)
        return len(new_rows), updated
