# gs_client.py : Google Sheets client helpers (caching + backoff + diagnostics)
from __future__ import annotations
import json, time
import gspread
import pandas as pd
import streamlit as st
from google.oauth2.service_account import Credentials
from gspread_dataframe import set_with_dataframe, get_as_dataframe
from loguru import logger

SCOPES = [
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive",
    "https://www.googleapis.com/auth/drive.file",
]
DEFAULT_SPREADSHEET = "Contacts CRM DB"


def _normalize_private_key(pk):
    # clé collée depuis un JSON : "\\n" littéraux au lieu de vrais retours ligne
    if isinstance(pk, str) and "\\n" in pk and "\n" not in pk:
        return pk.replace("\\n", "\n")
    return pk


def read_service_account_secret(secrets=None) -> dict:
    """
    Lit le secret [google_service_account] (TOML ou chaîne JSON).
    Retourne une copie dict mutable (et non l'objet Secrets) : st.secrets
    refuse l'affectation d'éléments.
    """
    src = st.secrets if secrets is None else secrets
    try:
        info = src.get("google_service_account")
    except FileNotFoundError:
        info = None
    if not info:
        raise ValueError("Secret [google_service_account] introuvable (TOML ou JSON).")
    if isinstance(info, str):
        info = json.loads(info)
    else:
        info = dict(info)
    info["private_key"] = _normalize_private_key(info.get("private_key", ""))
    return info


@st.cache_resource(show_spinner=False)
def get_gspread_client(info: dict):
    creds = Credentials.from_service_account_info(info, scopes=SCOPES)
    return gspread.authorize(creds)


def make_ws_func(GC, spreadsheet_id: str | None = None, spreadsheet_title: str | None = None,
                 state=None, retries: int = 3, backoff: float = 1.5):
    """
    Retourne une fonction ws(name) qui:
    - ouvre le spreadsheet une seule fois (open_by_key si id, sinon open par titre)
    - met en cache les Worksheet par nom
    - applique un backoff linéaire si l'ouverture échoue (429 / quotas)
    """
    cache_state = st.session_state if state is None else state

    def ws(name: str):
        if cache_state.get("__GS_SS__") is None:
            last_err = None
            for attempt in range(retries):
                try:
                    if spreadsheet_id:
                        s = GC.open_by_key(spreadsheet_id)
                    else:
                        s = GC.open(spreadsheet_title or DEFAULT_SPREADSHEET)
                    cache_state["__GS_SS__"] = s
                    break
                except gspread.exceptions.GSpreadException as e:
                    last_err = e
                    logger.warning("Ouverture spreadsheet échouée (tentative {}/{}) : {}", attempt + 1, retries, e)
                    time.sleep(backoff * (attempt + 1))
            if cache_state.get("__GS_SS__") is None:
                raise last_err
        s = cache_state["__GS_SS__"]
        cache = cache_state.setdefault("__WS_CACHE__", {})
        if name in cache:
            return cache[name]
        try:
            w = s.worksheet(name)
        except gspread.exceptions.WorksheetNotFound:
            # création paresseuse
            logger.info("Création de la feuille '{}'", name)
            w = s.add_worksheet(title=name, rows=100, cols=30)
        cache[name] = w
        return w
    return ws


def diagnose_sheets(ws_func, sheet_name_map: dict) -> pd.DataFrame:
    """Une ligne par table attendue : feuille, nombre de lignes, statut (via le ws_func de la session)."""
    rows = []
    for table, tab in sheet_name_map.items():
        try:
            df = get_as_dataframe(ws_func(tab), evaluate_formulas=True, header=0)
            n = 0 if df is None else len(df.dropna(how="all"))
            rows.append({"table": table, "worksheet": tab, "rows": n, "status": "OK"})
        except gspread.exceptions.GSpreadException as e:
            logger.warning("Diagnostic feuille '{}' échoué : {}", tab, e)
            rows.append({"table": table, "worksheet": tab, "rows": None, "status": f"Erreur : {e}"})
    return pd.DataFrame(rows, columns=["table", "worksheet", "rows", "status"])


def show_diagnostics_sidebar(sheet_name_map: dict, ws_func=None):
    """Panneau sidebar : secret du compte de service puis lecture de chaque feuille par le chemin d'ouverture de l'app."""
    with st.sidebar.expander("🩺 Diagnostics (Google Sheets)"):
        backend = st.session_state.get("BACKEND_EFFECTIVE", "csv")
        st.caption(f"Backend: **{backend}**")
        ws_func = ws_func or st.session_state.get("WS_FUNC")
        if backend != "gsheets" or ws_func is None:
            if st.session_state.get("BACKEND_ERROR"):
                st.error(f"Google Sheets indisponible : {st.session_state['BACKEND_ERROR']}")
            else:
                st.info("Backend CSV : rien à diagnostiquer côté Google Sheets.")
            return

        try:
            info = read_service_account_secret()
            st.success(f"Compte de service : {info.get('client_email', '?')}")
        except (ValueError, json.JSONDecodeError) as e:
            st.error(f"Secret invalide : {e}")
            return

        report = diagnose_sheets(ws_func, sheet_name_map)
        st.dataframe(report, hide_index=True, use_container_width=True)
        if (report["status"] != "OK").any():
            st.warning("Certaines feuilles sont illisibles (quota, droits de partage ?)")

        if st.checkbox("Test d'écriture sur la feuille _diag (consomme du quota)", value=False):
            w = ws_func("_diag")
            set_with_dataframe(w, pd.DataFrame({"ts": [pd.Timestamp.now().isoformat()]}),
                               include_index=False, include_column_header=True, resize=True)
            st.write("Relu :", get_as_dataframe(w, evaluate_formulas=True, header=0).tail(1))
