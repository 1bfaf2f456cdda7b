import datetime

import pytest

from app.services.flow_variables import (
    coerce_to_date,
    delete_path,
    get_path,
    has_path,
    parse_path,
    render_value,
    resolve_template,
    resolve_variable_reference,
    set_path,
    substitute_variables,
)

VARIABLES = {
    "contact": {"name": "Ana", "phones": ["111", "222"]},
    "items": [{"name": "router"}, {"name": "cable"}],
    "active": True,
    "count": 3,
}


def test_parse_path_tokens():
    assert parse_path("$.items[*].name") == ["items", "*", "name"]
    assert parse_path("contact.phones[-1]") == ["contact", "phones", -1]


def test_get_path_variants():
    assert get_path(VARIABLES, "contact.name") == "Ana"
    assert get_path(VARIABLES, "contact.phones[1]") == "222"
    assert get_path(VARIABLES, "items.0.name") == "router"
    assert get_path(VARIABLES, "items[*].name") == ["router", "cable"]
    assert get_path(VARIABLES, "contact.email", "none") == "none"
    assert get_path(VARIABLES, "$") is VARIABLES
    assert has_path(VARIABLES, "active")
    assert not has_path(VARIABLES, "contact.phones[5]")


def test_set_path_creates_intermediate_containers():
    data = {}
    set_path(data, "order.lines[0]", {"sku": "A1"})
    set_path(data, "order.total", 10.5)
    set_path(data, "when", datetime.date(2024, 3, 15))

    assert data == {"order": {"lines": [{"sku": "A1"}], "total": 10.5}, "when": "2024-03-15"}
    with pytest.raises(ValueError):
        set_path(data, "items[*].name", "x")


def test_delete_path():
    data = {"a": {"b": 1, "c": 2}, "list": [1, 2, 3]}
    delete_path(data, "a.b")
    delete_path(data, "list[0]")
    delete_path(data, "missing.key")
    assert data == {"a": {"c": 2}, "list": [2, 3]}


def test_render_value():
    assert render_value(None) == ""
    assert render_value(False) == "false"
    assert render_value(["a", "b"]) == "a\nb"
    assert render_value({"k": 1}) == '{\n  "k": 1\n}'


def test_substitute_and_resolve():
    assert substitute_variables("Hi {{ contact.name }}, {{missing}}!", VARIABLES) == "Hi Ana, !"
    assert substitute_variables(42, VARIABLES) == 42
    assert resolve_template("{{count}}", VARIABLES) == 3
    assert resolve_template({"body": {"phones": "{{contact.phones}}"}}, VARIABLES) == {"body": {"phones": ["111", "222"]}}
    assert resolve_template("count={{count}}", VARIABLES) == "count=3"
    assert resolve_variable_reference("contact.name", VARIABLES) == "Ana"
    assert resolve_variable_reference("{{active}}", VARIABLES) is True


@pytest.mark.parametrize("value,expected", [
    ("15/03/2024", datetime.datetime(2024, 3, 15)),
    ("15/03/2024 14:30", datetime.datetime(2024, 3, 15, 14, 30)),
    ("2024-03-15T10:00:00Z", datetime.datetime(2024, 3, 15, 10, 0)),
    (0, datetime.datetime(1970, 1, 1)),
    (1_700_000_000_000, datetime.datetime(2023, 11, 14, 22, 13, 20)),
    ("31/02/2024", None),
    ("tomorrow", None),
    (True, None),
])
def test_coerce_to_date(value, expected):
    assert coerce_to_date(value) == expected


def test_coerce_time_only_uses_today():
    now = datetime.datetime(2024, 5, 1, 8, 0, 0)
    assert coerce_to_date("18:45", now) == datetime.datetime(2024, 5, 1, 18, 45)
    assert coerce_to_date("25:00", now) is None
