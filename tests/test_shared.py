import math
from _shared import (
    data_paths, email_ok, is_blank, parse_column_list, secret_flag, to_float_safe, to_int_safe,
)


def test_is_blank():
    assert is_blank(None)
    assert is_blank(math.nan)
    assert is_blank("   ")
    assert not is_blank(0)
    assert not is_blank("x")


def test_to_int_safe():
    assert to_int_safe("12,9") == 12
    assert to_int_safe("1 000") == 1000
    assert to_int_safe("abc", default=None) is None
    assert to_int_safe("nan") == 0
    assert to_int_safe("inf") == 0
    assert to_int_safe("1e999", default=None) is None
    assert to_float_safe("-Infinity", default=1.5) == 1.5
    assert to_float_safe("2,5") == 2.5


def test_email_ok_accepts_blank():
    assert email_ok("")
    assert email_ok("a.b@x.io")
    assert not email_ok("nope")


def test_parse_column_list():
    available = ["a", "b", "c"]
    assert parse_column_list(" b, a ,b, zz", available, ["c"]) == ["b", "a"]
    assert parse_column_list("", available, ["c"]) == ["c"]
    assert parse_column_list("zz", available, ["c"]) == ["c"]


def test_secret_flag():
    assert secret_flag("audit_enabled", secrets={})
    assert not secret_flag("audit_enabled", secrets={"audit_enabled": "off"})


def test_data_paths(tmp_path):
    paths = data_paths(tmp_path / "d", secrets={})
    assert set(paths) == {"contacts", "audit_log", "prefs"}
    assert paths["contacts"].name == "contacts.csv"
    assert paths["contacts"].parent.exists()
