# pages/01_Contacts.py : liste des contacts (CRUD, import/export CSV, colonnes) + vue analytique
from __future__ import annotations
import pandas as pd
import streamlit as st
from loguru import logger

from _shared import (
    CONTACT_COLS, AUDIT_LOG_COLS, PREF_COLS, SOURCES, SEGMENTS, REGIONS,
    get_backend, secret_flag, setup_logger, to_int_safe,
)
from audit_log import AuditLogger
from contact_analytics import (
    analytics_excel_bytes, cached_summary, donut_chart, fetch_contacts,
    industry_bar_chart, score_bar_chart,
)
from contacts_service import (
    AVAILABLE_COLUMNS, DEFAULT_VISIBLE_COLUMNS, ContactValidationError, Notice,
    action_items, create_contact, grid_columns, handle_bulk_delete, handle_export,
    handle_import_csv, load_visible_columns, page_state, save_visible_columns, update_contact,
)
from storage_backend import StorageError
from ui_common import aggrid_table, flush_notices, queue_notice, selected_ids, stat_card

st.set_page_config(page_title="Contacts", page_icon="👤", layout="wide")
setup_logger()

backend = get_backend()
contacts = backend.table("contacts", CONTACT_COLS)
prefs = backend.table("prefs", PREF_COLS)
audit = AuditLogger(backend.table("audit_log", AUDIT_LOG_COLS), user=backend.user,
                    enabled=secret_flag("audit_enabled"))
page = page_state(st.session_state)

st.sidebar.checkbox("⚠️ Forcer la sauvegarde (ignore verrou)", value=False, key="override_save")
st.sidebar.caption(f"Backend : {st.session_state.get('BACKEND_EFFECTIVE', 'csv')}")

flush_notices()
# en-tête rempli après la grille : le menu Actions voit la sélection courante
header = st.container()
st.markdown("---")


# =============== Formulaires ===============

def _contact_form(key: str, d: dict) -> dict | None:
    with st.form(key, clear_on_submit=False):
        a1, a2, a3 = st.columns(3)
        values = {
            "contact_name": a1.text_input("Name *", d.get("contact_name", "")),
            "company_name": a2.text_input("Company", d.get("company_name", "")),
            "position": a3.text_input("Position", d.get("position", "")),
        }
        b1, b2, b3 = st.columns(3)
        values["email"] = b1.text_input("Email", d.get("email", ""))
        values["phone_no"] = b2.text_input("Phone", d.get("phone_no", ""))
        values["contact_owner"] = b3.text_input("Owner", d.get("contact_owner", ""))
        c1, c2, c3 = st.columns(3)
        values["linkedin"] = c1.text_input("LinkedIn", d.get("linkedin", ""))
        values["website"] = c2.text_input("Website", d.get("website", ""))
        values["industry"] = c3.text_input("Industry", d.get("industry", ""))
        e1, e2, e3, e4 = st.columns(4)
        src_opts = [""] + SOURCES
        cur_src = d.get("contact_source", "")
        if cur_src and cur_src not in src_opts:
            src_opts.append(cur_src)
        values["contact_source"] = e1.selectbox("Source", src_opts, index=src_opts.index(cur_src))
        seg_opts = [""] + SEGMENTS
        cur_seg = d.get("segment", "")
        if cur_seg and cur_seg not in seg_opts:
            seg_opts.append(cur_seg)
        values["segment"] = e2.selectbox("Segment", seg_opts, index=seg_opts.index(cur_seg))
        reg_opts = [""] + REGIONS
        cur_reg = d.get("region", "")
        if cur_reg and cur_reg not in reg_opts:
            reg_opts.append(cur_reg)
        values["region"] = e3.selectbox("Region", reg_opts, index=reg_opts.index(cur_reg))
        values["score"] = str(e4.number_input("Score", min_value=0, max_value=100, step=1,
                                              value=min(100, max(0, to_int_safe(d.get("score"), 0)))))
        values["country"] = st.text_input("Country", d.get("country", ""))
        values["description"] = st.text_area("Description", d.get("description", ""))
        submitted = st.form_submit_button("Save")
    return values if submitted else None


def _render_add_contact():
    with st.expander("➕ Add Contact", expanded=True):
        values = _contact_form("add_contact_form", {})
        if st.button("Cancel", key="add_contact_cancel"):
            page.show_modal = False
            st.rerun()
    if values is None:
        return
    try:
        cid = create_contact(values, contacts, audit)
    except ContactValidationError as e:
        for msg in e.errors:
            st.error(msg)
        return
    except StorageError as e:
        logger.exception("Création de contact échouée")
        st.error(f"Failed to create contact : {e}")
        return
    queue_notice(Notice("Success", f"Contact {values['contact_name']} created"))
    logger.info("Contact {} créé", cid)
    page.show_modal = False
    page.on_refresh()
    st.rerun()


def _render_edit_contact(d: dict):
    st.subheader(f"Edit : {d.get('contact_name', '')}")
    values = _contact_form(f"edit_contact_{d['id']}", d)
    if values is None:
        return
    try:
        n = update_contact(d["id"], values, contacts, audit)
    except ContactValidationError as e:
        for msg in e.errors:
            st.error(msg)
        return
    except StorageError as e:
        logger.exception("Mise à jour du contact {} échouée", d["id"])
        st.error(f"Failed to update contact : {e}")
        return
    if n == 0:
        st.warning("Contact introuvable (supprimé entre-temps ?)")
        return
    queue_notice(Notice("Success", f"Contact {values['contact_name']} updated"))
    page.on_refresh()
    st.rerun()


def _render_column_customizer(visible: list):
    with st.expander("⚙️ Columns", expanded=True):
        chosen = st.multiselect("Visible columns (in display order)", AVAILABLE_COLUMNS, default=visible,
                                key="columns_multiselect")
        c1, c2, c3 = st.columns(3)
        if c1.button("Apply", type="primary"):
            save_visible_columns(prefs, chosen, st.session_state)
            page.show_column_customizer = False
            st.rerun()
        if c2.button("Reset to default"):
            save_visible_columns(prefs, DEFAULT_VISIBLE_COLUMNS, st.session_state)
            st.rerun()
        if c3.button("Close"):
            page.show_column_customizer = False
            st.rerun()


def _render_import():
    up = st.file_uploader("Import CSV", type=["csv"], key=f"import_csv_{page.uploader_nonce}",
                          disabled=page.is_importing)
    if up is not None:
        with st.spinner("Importing contacts…"):
            handle_import_csv(page, up, contacts, audit, queue_notice)
        page.show_import = False
        st.rerun()
    if st.button("Cancel import"):
        page.show_import = False
        st.rerun()


# =============== Vue analytique ===============

def _chart_card(title: str, data: pd.DataFrame, chart, always: bool = False):
    with st.container(border=True):
        st.markdown(f"**{title}**")
        if data.empty and not always:
            st.caption("No data available")
        else:
            st.altair_chart(chart(data), use_container_width=True)


def _render_analytics():
    with st.spinner("Loading analytics…"):
        df = fetch_contacts(contacts)
        summary = cached_summary(df)
    s = summary.stats
    c = st.columns(4)
    stat_card(c[0], "Total Contacts", s.total_contacts, "👥")
    stat_card(c[1], "With Company", s.with_company, "🏢")
    stat_card(c[2], "With Source", s.with_source, "📈")
    stat_card(c[3], "Avg Score", f"{s.avg_score}/100", "⭐")

    r1 = st.columns(2)
    with r1[0]:
        _chart_card("Contacts by Source", summary.sources, donut_chart)
    with r1[1]:
        _chart_card("Contacts by Segment", summary.segments, donut_chart)
    r2 = st.columns(2)
    with r2[0]:
        _chart_card("Top Industries", summary.industries, industry_bar_chart)
    with r2[1]:
        _chart_card("Score Distribution", summary.scores, score_bar_chart, always=True)

    st.download_button("⬇ Export analytics (Excel)", analytics_excel_bytes(summary), "contacts_analytics.xlsx",
                       mime="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet")


# =============== Corps de page ===============

visible = load_visible_columns(prefs, st.session_state)

if page.show_import:
    _render_import()
if page.show_modal:
    _render_add_contact()
if page.show_column_customizer and page.view_mode == "table":
    _render_column_customizer(visible)

if page.view_mode == "analytics":
    _render_analytics()
else:
    try:
        df_all = contacts.select(CONTACT_COLS).order("contact_name").execute()
    except StorageError as e:
        logger.exception("Lecture des contacts échouée")
        st.error(f"Contacts indisponibles : {e}")
        st.stop()

    q = st.text_input("🔎 Search (name, company, email…)", "", key="contacts_search")
    dfv = df_all
    if q:
        qs = q.strip().lower()
        hay = df_all[visible].astype(str).apply(lambda col: col.str.lower().str.contains(qs, regex=False))
        dfv = df_all[hay.any(axis=1)]

    grid = aggrid_table(dfv[grid_columns(visible)].reset_index(drop=True), hidden_cols=["id"],
                        key=f"contacts_grid_{page.refresh_trigger}")
    page.selected_contacts = selected_ids(grid)
    st.caption(f"{len(dfv)} contact(s) · {len(page.selected_contacts)} selected")

    if len(page.selected_contacts) == 1:
        match = df_all[df_all["id"] == page.selected_contacts[0]]
        if not match.empty:
            st.markdown("---")
            _render_edit_contact(match.iloc[0].to_dict())


# =============== En-tête : bascule de vue, menu Actions, ajout ===============

def _on_action(key: str):
    if key == "columns":
        page.show_column_customizer = True
        page.set_view_mode("table")
    elif key == "import":
        page.show_import = True
    elif key == "export":
        try:
            st.session_state["_export"] = handle_export(contacts, audit)
        except StorageError as e:
            logger.exception("Export CSV échoué")
            queue_notice(Notice("Error", f"Export failed : {e}", "destructive"))
    elif key == "delete":
        handle_bulk_delete(page, contacts, audit, queue_notice)


with header:
    h1, h2, h3, h4 = st.columns([5, 2, 1, 1.2], vertical_alignment="center")
    h1.title("Contacts")
    with h2:
        t1, t2 = st.columns(2)
        t1.button("☰ List", use_container_width=True,
                  type=("primary" if page.view_mode == "table" else "secondary"),
                  on_click=page.set_view_mode, args=("table",))
        t2.button("📊 Analytics", use_container_width=True,
                  type=("primary" if page.view_mode == "analytics" else "secondary"),
                  on_click=page.set_view_mode, args=("analytics",))
    with h3:
        with st.popover("Actions", disabled=page.is_importing, use_container_width=True):
            for item in action_items(page):
                st.button(item.label, key=f"action_{item.key}", disabled=item.disabled,
                          type=("primary" if item.destructive else "secondary"),
                          use_container_width=True, on_click=_on_action, args=(item.key,))
    h4.button("Add Contact", use_container_width=True, on_click=lambda: setattr(page, "show_modal", True))

    exported = st.session_state.pop("_export", None)
    if exported:
        filename, data = exported
        st.download_button(f"⬇ Download {filename}", data, filename, mime="text/csv")
