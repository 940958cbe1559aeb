# ui_common.py : composants UI partagés (grille, notifications)
from __future__ import annotations
from typing import List
import pandas as pd
import streamlit as st
from st_aggrid import AgGrid, GridOptionsBuilder, GridUpdateMode, DataReturnMode

from contacts_service import Notice

NOTICES_KEY = "_notices"


def queue_notice(notice: Notice):
    """Puits de notifications : conservé jusqu'au prochain affichage (survit à st.rerun)."""
    st.session_state.setdefault(NOTICES_KEY, []).append(notice)


def flush_notices():
    for n in st.session_state.pop(NOTICES_KEY, []):
        icon = "⚠️" if n.variant == "destructive" else "✅"
        st.toast(f"**{n.title}** : {n.description}", icon=icon)
        if n.variant == "destructive":
            st.error(f"{n.title} : {n.description}")


def aggrid_table(df: pd.DataFrame, *, height=520, page_size=25, selection="multiple",
                 hidden_cols: List[str] | None = None, preselected: List[int] | None = None,
                 key="grid", fit_columns=True):
    gb = GridOptionsBuilder.from_dataframe(df)
    gb.configure_pagination(enabled=True, paginationAutoPageSize=False, paginationPageSize=page_size)
    gb.configure_default_column(filter=True, sortable=True, resizable=True)
    gb.configure_selection(selection_mode=selection, use_checkbox=True,
                           header_checkbox=(selection == "multiple"),
                           pre_selected_rows=preselected or [])
    for c in hidden_cols or []:
        if c in df.columns:
            gb.configure_column(c, hide=True)
    gb.configure_status_bar(statusPanels=[
        {"statusPanel": "agTotalRowCountComponent", "align": "left"},
        {"statusPanel": "agSelectedRowCountComponent", "align": "right"},
    ])
    grid = AgGrid(df, gridOptions=gb.build(), height=height, fit_columns_on_grid_load=fit_columns,
                  data_return_mode=DataReturnMode.FILTERED_AND_SORTED,
                  update_mode=GridUpdateMode.SELECTION_CHANGED, key=key)
    return grid


def selected_ids(grid, id_col: str = "id") -> List[str]:
    # selon la version de streamlit-aggrid : DataFrame, liste de dicts ou None
    rows = grid.selected_rows
    if rows is None:
        return []
    if isinstance(rows, pd.DataFrame):
        return rows[id_col].astype(str).tolist() if id_col in rows.columns else []
    return [str(r.get(id_col)) for r in rows if r.get(id_col)]


def stat_card(col, label: str, value, icon: str = ""):
    col.metric(f"{icon} {label}".strip(), value)
