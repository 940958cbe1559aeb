# app.py : Contacts CRM (backend CSV / Google Sheets + navigation)
from __future__ import annotations
import streamlit as st
from loguru import logger

from _shared import CONTACT_COLS, get_backend, setup_logger
from gs_client import show_diagnostics_sidebar
from storage_backend import SHEET_NAME, StorageError

st.set_page_config(page_title="Contacts CRM", page_icon="📇", layout="wide")
setup_logger()

# ---------- Backend ----------
backend = get_backend()
if backend.kind == "gsheets":
    st.sidebar.success("Google Sheets prêt ✅")
elif st.session_state.get("BACKEND_ERROR"):
    st.sidebar.error(f"Initialisation Google Sheets échouée : {st.session_state['BACKEND_ERROR']}")
    st.info("Bascule automatique en CSV local (./data).")
else:
    st.sidebar.info("Backend : CSV (./data)")

# ---------- Diagnostics Google Sheets ----------
if st.sidebar.checkbox("🩺 Ouvrir le panneau Diagnostics", value=False, key="diag_gs"):
    show_diagnostics_sidebar(SHEET_NAME)

# ---------- Navigation ----------
st.sidebar.markdown("### 📚 Navigation")
st.sidebar.page_link("app.py", label="🏠 Accueil")
st.sidebar.page_link("pages/01_Contacts.py", label="👤 Contacts")

st.title("Contacts CRM")
try:
    n = len(backend.table("contacts", CONTACT_COLS).select(["id"]).execute())
    st.metric("👥 Contacts", n)
except StorageError as e:
    logger.exception("Lecture des contacts échouée")
    st.error(f"Contacts indisponibles : {e}")
st.page_link("pages/01_Contacts.py", label="Ouvrir la liste des contacts", icon="👤")
