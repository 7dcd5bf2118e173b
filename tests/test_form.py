import pytest

from dynamic_forms.form import DynamicForm, merge_values, set_path


CONFIG = {
    "fields": [
        {
            "key": "top",
            "type": "row",
            "fields": [
                {"key": "first", "type": "input", "value": "Ada"},
                {"key": "last", "type": "input"},
            ],
        },
        {
            "key": "address",
            "type": "group",
            "fields": [
                {"key": "city", "type": "input", "value": "Oslo"},
                {"key": "zip", "type": "input"},
            ],
        },
        {"key": "contacts", "type": "array", "fields": [{"key": "phone", "type": "input", "value": ""}]},
        {"key": "intro", "type": "text"},
    ]
}


def test_defaults_follow_the_field_tree() -> None:
    form = DynamicForm(CONFIG)
    assert form.value() == {
        "first": "Ada",
        "last": None,
        "address": {"city": "Oslo", "zip": None},
        "contacts": [],
    }
    assert form.field("first").path == "first"
    assert form.field("address.city").value == "Oslo"
    with pytest.raises(KeyError):
        form.field("top")


def test_patch_and_reset() -> None:
    form = DynamicForm(CONFIG, value={"last": "Lovelace"})
    form.patch_value({"address": {"zip": "0150"}})
    assert form.get_value("address") == {"city": "Oslo", "zip": "0150"}
    assert form.get_value("last") == "Lovelace"

    form.reset()
    assert form.get_value("last") is None
    assert form.get_value("address.zip") is None


def test_array_items_can_be_added_and_removed() -> None:
    form = DynamicForm(CONFIG)

    first = form.add_array_item("contacts")
    assert first.path == "contacts.0"
    assert form.get_value("contacts") == [{"phone": ""}]

    form.add_array_item("contacts", {"phone": "555-0100"}, index=0)
    assert form.get_value("contacts") == [{"phone": "555-0100"}, {"phone": ""}]
    assert first.path == "contacts.1"

    with pytest.raises(IndexError):
        form.remove_array_item("contacts", 5)
    with pytest.raises(KeyError):
        form.add_array_item("address")

    form.remove_array_item("contacts", 1)
    assert form.get_value("contacts") == [{"phone": "555-0100"}]
    assert [state.path for state in form.fields() if state.path.startswith("contacts")] == [
        "contacts",
        "contacts.0",
        "contacts.0.phone",
    ]


def test_items_follow_values_written_directly() -> None:
    form = DynamicForm(CONFIG)
    form.set_value("contacts", [{"phone": "1"}, {"phone": "2"}])
    assert form.field("contacts.1.phone").value == "2"
    form.set_value("contacts", [])
    with pytest.raises(KeyError):
        form.field("contacts.0")


def test_snapshot_shape() -> None:
    form = DynamicForm(CONFIG)
    snapshot = form.snapshot()
    assert "intro" not in snapshot
    assert snapshot["address.city"] == {
        "hidden": False,
        "disabled": False,
        "required": False,
        "readonly": False,
        "errors": [],
        "value": "Oslo",
        "pending": False,
    }


def test_value_helpers_copy_on_write() -> None:
    original = {"a": {"b": 1}, "items": [{"x": 1}]}
    updated = set_path(original, ["items", "0", "x"], 2)
    assert original["items"][0]["x"] == 1
    assert updated["items"][0]["x"] == 2
    assert merge_values({"a": {"b": 1, "c": 2}}, {"a": {"b": 3}}) == {"a": {"b": 3, "c": 2}}


def test_item_operations_require_an_array_node() -> None:
    form = DynamicForm(CONFIG)
    address = next(node for node in form.iter_nodes() if node.path == "address")

    with pytest.raises(TypeError, match="not an array"):
        address.insert_item(0)
    with pytest.raises(TypeError, match="not an array"):
        address.remove_item(0)
