import pytest

from _shared import AUDIT_LOG_COLS, CONTACT_COLS, PREF_COLS, data_paths
from audit_log import AuditLogger
from storage_backend import Backend


@pytest.fixture
def backend(tmp_path):
    return Backend(kind="csv", paths=data_paths(tmp_path), user="tester", secrets={}, state={})


@pytest.fixture
def contacts_table(backend):
    return backend.table("contacts", CONTACT_COLS)


@pytest.fixture
def seeded_contacts(contacts_table):
    contacts_table.insert([
        {"id": "1", "contact_name": "charlie", "email": "charlie@x.io"},
        {"id": "2", "contact_name": "Alice", "email": "alice@x.io", "company_name": "Acme"},
        {"id": "3", "contact_name": ""},
        {"id": "4", "contact_name": "bob"},
    ])
    return contacts_table


@pytest.fixture
def audit_table(backend):
    return backend.table("audit_log", AUDIT_LOG_COLS)


@pytest.fixture
def audit(audit_table):
    return AuditLogger(audit_table, user="tester")


@pytest.fixture
def prefs_table(backend):
    return backend.table("prefs", PREF_COLS)
