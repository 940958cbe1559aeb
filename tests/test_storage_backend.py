import pandas as pd
import pytest

from storage_backend import (
    AUDIT_COLS, Backend, ConflictError, StorageError, compute_etag, ensure_df_source, save_df_target,
)

COLS = ["id", "contact_name", "email"]


def test_ensure_df_source_creates_missing_csv(tmp_path):
    paths = {"contacts": tmp_path / "contacts.csv"}
    state = {}
    df = ensure_df_source("contacts", COLS, paths, secrets={}, state=state)
    assert df.empty
    assert list(df.columns) == COLS + AUDIT_COLS
    assert paths["contacts"].exists()
    assert state["etag_contacts"] == "empty"


def test_ensure_df_source_adds_missing_columns(tmp_path):
    p = tmp_path / "contacts.csv"
    p.write_text("id,contact_name\n1,Alice\n", encoding="utf-8")
    df = ensure_df_source("contacts", COLS, {"contacts": p}, secrets={}, state={})
    assert df.loc[0, "contact_name"] == "Alice"
    assert df.loc[0, "email"] == ""
    assert list(df.columns) == COLS + AUDIT_COLS


def test_csv_backend_requires_paths():
    with pytest.raises(StorageError):
        ensure_df_source("contacts", COLS, {}, secrets={}, state={})


def test_gsheets_backend_requires_ws_func():
    with pytest.raises(StorageError):
        ensure_df_source("contacts", COLS, secrets={"storage_backend": "gsheets"}, state={})
    with pytest.raises(StorageError):
        Backend(kind="gsheets", secrets={}, state={})


def test_save_detects_conflict(tmp_path):
    p = tmp_path / "contacts.csv"
    paths = {"contacts": p}
    state = {}
    df = ensure_df_source("contacts", COLS, paths, secrets={}, state=state)
    df = pd.concat([df, pd.DataFrame([{"id": "1", "contact_name": "Alice"}])], ignore_index=True).fillna("")
    # écriture concurrente
    pd.DataFrame([{"id": "9", "contact_name": "Zed", "Updated_At": "2025-01-01 00:00:00"}]).to_csv(p, index=False)
    with pytest.raises(ConflictError):
        save_df_target("contacts", df, paths, secrets={}, state=state)
    save_df_target("contacts", df, paths, override=True, secrets={}, state=state)
    assert pd.read_csv(p, dtype=str)["id"].tolist() == ["1"]


def test_lock_can_be_disabled(tmp_path):
    p = tmp_path / "contacts.csv"
    paths = {"contacts": p}
    state = {}
    df = ensure_df_source("contacts", COLS, paths, secrets={}, state=state)
    pd.DataFrame([{"id": "9"}]).to_csv(p, index=False)
    save_df_target("contacts", df, paths, secrets={"optimistic_lock": "off"}, state=state)
    state["_lock_disable"] = True
    pd.DataFrame([{"id": "8"}]).to_csv(p, index=False)
    save_df_target("contacts", df, paths, secrets={}, state=state)


def test_compute_etag_ignores_row_order_and_missing_updated_at():
    a = pd.DataFrame({"id": ["1", "2"], "x": ["a", "b"]})
    b = pd.DataFrame({"x": ["b", "a"], "id": ["2", "1"], "Updated_At": ["", ""]})
    assert compute_etag(a, "contacts") == compute_etag(b, "contacts")
    c = b.assign(Updated_At=["2025-01-01 00:00:00", ""])
    assert compute_etag(c, "contacts") != compute_etag(b, "contacts")
    assert compute_etag(pd.DataFrame(), "contacts") == "empty"


# =============== Client de requêtes ===============

def test_insert_stamps_audit_columns(seeded_contacts):
    df = seeded_contacts.load()
    assert len(df) == 4
    assert (df["Created_By"] == "tester").all()
    assert (df["Created_At"] != "").all()


def test_select_orders_case_insensitive_blanks_last(seeded_contacts):
    df = seeded_contacts.select("id, contact_name").order("contact_name").execute()
    assert list(df.columns) == ["id", "contact_name"]
    assert df["id"].tolist() == ["2", "4", "1", "3"]
    desc = seeded_contacts.select(["id"]).order("contact_name", ascending=False).execute()
    assert desc["id"].tolist() == ["1", "4", "2", "3"]


def test_select_star_returns_all_columns(seeded_contacts):
    df = seeded_contacts.select().execute()
    assert "company_name" in df.columns and "Created_At" in df.columns


def test_select_unknown_column(seeded_contacts):
    with pytest.raises(StorageError):
        seeded_contacts.select(["id", "nope"]).execute()
    with pytest.raises(StorageError):
        seeded_contacts.select(["id"]).order("nope").execute()


def test_delete_in(seeded_contacts):
    n = seeded_contacts.delete().in_("id", ["1", "4", "99"]).execute()
    assert n == 2
    assert sorted(seeded_contacts.load()["id"]) == ["2", "3"]


def test_delete_with_empty_list_is_noop(seeded_contacts):
    assert seeded_contacts.delete().in_("id", []).execute() == 0
    assert len(seeded_contacts.load()) == 4


def test_delete_requires_filter(seeded_contacts):
    with pytest.raises(StorageError):
        seeded_contacts.delete().execute()


def test_update_eq(seeded_contacts):
    n = seeded_contacts.update({"email": "c@x.io", "bogus": "x"}).eq("id", "1").execute()
    assert n == 1
    row = seeded_contacts.load().set_index("id").loc["1"]
    assert row["email"] == "c@x.io"
    assert row["Updated_By"] == "tester"
    assert "bogus" not in seeded_contacts.load().columns
    assert seeded_contacts.update({"email": "x@x.io"}).eq("id", "nope").execute() == 0


def test_upsert_updates_only_given_fields(seeded_contacts):
    inserted, updated = seeded_contacts.upsert([
        {"id": "2", "company_name": "Globex"},
        {"id": "5", "contact_name": "Eve"},
    ])
    assert (inserted, updated) == (1, 1)
    df = seeded_contacts.load().set_index("id")
    assert df.loc["2", "contact_name"] == "Alice"
    assert df.loc["2", "company_name"] == "Globex"
    assert df.loc["5", "contact_name"] == "Eve"


def test_mutation_after_concurrent_change_conflicts(seeded_contacts):
    seeded_contacts.select(["id"]).execute()
    path = seeded_contacts.backend.paths["contacts"]
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    df.loc[df["id"] == "1", "Updated_At"] = "2099-01-01 00:00:00"
    df.to_csv(path, index=False)
    with pytest.raises(ConflictError):
        seeded_contacts.delete().in_("id", ["1"]).execute()
    seeded_contacts.backend.override = True
    assert seeded_contacts.delete().in_("id", ["1"]).execute() == 1


# =============== Backend Google Sheets (feuille simulée) ===============

class FakeWorksheet:
    def __init__(self, df=None):
        self.df = pd.DataFrame() if df is None else df
        self.writes = 0


@pytest.fixture
def fake_sheets(monkeypatch):

    def get_as_dataframe(ws, **kwargs):
        return ws.df.copy()

    def set_with_dataframe(ws, df, **kwargs):
        ws.df = df.copy()
        ws.writes += 1

    monkeypatch.setattr("storage_backend.get_as_dataframe", get_as_dataframe)
    monkeypatch.setattr("storage_backend.set_with_dataframe", set_with_dataframe)


GS = {"storage_backend": "gsheets"}


def test_gsheets_empty_sheet_gets_headers(fake_sheets):
    ws = FakeWorksheet()
    df = ensure_df_source("contacts", COLS, ws_func=lambda tab: ws, secrets=GS, state={})
    assert df.empty
    assert ws.writes == 1
    assert list(ws.df.columns) == COLS + AUDIT_COLS


def test_gsheets_drops_unnamed_columns_and_nan(fake_sheets):
    tabs = []
    ws = FakeWorksheet(pd.DataFrame({
        "id": ["1", float("nan")],
        "contact_name": ["Alice", float("nan")],
        "Unnamed: 2": [float("nan"), float("nan")],
    }))

    def ws_func(tab):
        tabs.append(tab)
        return ws
    df = ensure_df_source("prefs", ["key", "value"], ws_func=ws_func, secrets=GS, state={})
    assert tabs == ["preferences"]
    ws.df = pd.DataFrame({"id": ["1"], "contact_name": [float("nan")], "Unnamed: 5": [float("nan")]})
    df = ensure_df_source("contacts", COLS, ws_func=lambda tab: ws, secrets=GS, state={})
    assert list(df.columns) == COLS + AUDIT_COLS
    assert len(df) == 1
    assert df.loc[0, "contact_name"] == ""
    assert df.loc[0, "email"] == ""
    assert ws.writes == 0


def test_gsheets_save_detects_remote_conflict(fake_sheets):
    ws = FakeWorksheet(pd.DataFrame({"id": ["1"], "contact_name": ["Alice"]}))
    state = {}
    df = ensure_df_source("contacts", COLS, ws_func=lambda tab: ws, secrets=GS, state=state)
    df.loc[0, "email"] = "alice@x.io"
    ws.df = pd.DataFrame({"id": ["1"], "contact_name": ["Alice"], "Updated_At": ["2099-01-01 00:00:00"]})
    with pytest.raises(ConflictError):
        save_df_target("contacts", df, ws_func=lambda tab: ws, secrets=GS, state=state)
    assert ws.writes == 0
    save_df_target("contacts", df, ws_func=lambda tab: ws, override=True, secrets=GS, state=state)
    assert ws.df.loc[0, "email"] == "alice@x.io"
    assert state["etag_contacts"] == compute_etag(df, "contacts")


def test_gsheets_save_without_remote_change(fake_sheets):
    ws = FakeWorksheet(pd.DataFrame({"id": ["1"], "contact_name": ["Alice"]}))
    state = {}
    df = ensure_df_source("contacts", COLS, ws_func=lambda tab: ws, secrets=GS, state=state)
    save_df_target("contacts", df, ws_func=lambda tab: ws, secrets=GS, state=state)
    assert ws.writes == 1
    with pytest.raises(StorageError):
        save_df_target("contacts", df, secrets=GS, state=state)
