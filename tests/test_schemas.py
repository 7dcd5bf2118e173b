import asyncio

import pytest

from dynamic_forms.form import DynamicForm


SCHEMAS = [
    {"name": "requiredText", "validators": [{"type": "required"}, {"type": "maxLength", "value": 8}]},
    {"name": "positiveLine", "validators": [{"type": "custom", "expression": "formValue.qty > 0", "kind": "positiveQty"}]},
    {"name": "shortString", "validators": [{"type": "maxLength", "value": 3}]},
    {"name": "lineBundle", "pathPattern": "lines.*", "subSchemas": ["positiveLine"]},
]


def kinds(state) -> list[str]:
    return [error.kind for error in state.errors]


def test_apply_installs_schema_validators() -> None:
    form = DynamicForm(
        {
            "schemas": SCHEMAS,
            "fields": [{"key": "nickname", "type": "input", "schemas": ["requiredText"]}],
        }
    )
    nickname = form.field("nickname")
    assert nickname.required is True
    assert kinds(nickname) == ["required"]
    form.set_value("nickname", "much-too-long")
    assert kinds(nickname) == ["maxLength"]


def test_apply_when_gates_the_whole_bundle() -> None:
    form = DynamicForm(
        {
            "schemas": SCHEMAS,
            "fields": [
                {"key": "business", "type": "checkbox", "value": False},
                {
                    "key": "vatId",
                    "type": "input",
                    "schemas": [
                        {
                            "type": "applyWhen",
                            "schema": "requiredText",
                            "condition": {"type": "fieldValue", "fieldPath": "business", "operator": "equals", "value": True},
                        }
                    ],
                },
            ],
        }
    )
    vat = form.field("vatId")
    assert vat.required is False
    assert kinds(vat) == []
    form.set_value("business", True)
    assert vat.required is True
    assert kinds(vat) == ["required"]


def test_apply_when_value_checks_the_runtime_type() -> None:
    form = DynamicForm(
        {
            "schemas": SCHEMAS,
            "fields": [
                {
                    "key": "code",
                    "type": "input",
                    "value": 12345,
                    "schemas": [{"type": "applyWhenValue", "schema": "shortString", "typePredicate": "string"}],
                }
            ],
        }
    )
    code = form.field("code")
    assert kinds(code) == []
    form.set_value("code", "ABCDE")
    assert kinds(code) == ["maxLength"]


def test_apply_when_value_accepts_registered_predicates() -> None:
    form = DynamicForm(
        {
            "schemas": SCHEMAS,
            "fields": [
                {
                    "key": "code",
                    "type": "input",
                    "value": "ABCDE",
                    "schemas": [{"type": "applyWhenValue", "schema": "shortString", "typePredicate": "isUpper"}],
                }
            ],
        },
        custom_fn_config={"customFunctions": {"isUpper": lambda value: isinstance(value, str) and value.isupper()}},
    )
    code = form.field("code")
    assert kinds(code) == ["maxLength"]
    form.set_value("code", "abcde")
    assert kinds(code) == []


def line_form(**kwargs) -> DynamicForm:
    return DynamicForm(
        {
            "schemas": SCHEMAS,
            "fields": [
                {
                    "key": "lines",
                    "type": "array",
                    "fields": [{"key": "sku", "type": "input"}, {"key": "qty", "type": "input"}],
                    "schemas": [{"type": "applyEach", "schema": "positiveLine"}],
                }
            ],
        },
        **kwargs,
    )


def test_apply_each_installs_bundle_on_new_items() -> None:
    form = line_form(value={"lines": [{"sku": "A", "qty": 1}]})
    assert kinds(form.field("lines.0")) == []

    added = form.add_array_item("lines", {"sku": "B", "qty": 0})
    assert added.path == "lines.1"
    assert kinds(form.field("lines.1")) == ["positiveQty"]
    assert form.errors() == {"lines.1": [{"kind": "positiveQty", "message": "positiveQty"}]}


def test_removing_an_item_keeps_sibling_state() -> None:
    form = line_form(value={"lines": [{"sku": "A", "qty": 1}, {"sku": "B", "qty": 0}]})
    survivor = form.field("lines.1")
    assert kinds(survivor) == ["positiveQty"]

    form.remove_array_item("lines", 0)

    assert form.get_value("lines") == [{"sku": "B", "qty": 0}]
    assert survivor.path == "lines.0"
    assert kinds(survivor) == ["positiveQty"]
    assert form.field("lines.0.sku").value == "B"
    with pytest.raises(KeyError):
        form.field("lines.1")


def test_path_pattern_schema_broadcasts_over_items() -> None:
    form = DynamicForm(
        {
            "schemas": SCHEMAS,
            "fields": [
                {
                    "key": "lines",
                    "type": "array",
                    "fields": [{"key": "qty", "type": "input"}],
                    "schemas": ["lineBundle"],
                }
            ],
        },
        value={"lines": [{"qty": 0}, {"qty": 2}]},
    )
    assert kinds(form.field("lines.0")) == ["positiveQty"]
    assert kinds(form.field("lines.1")) == []
    assert kinds(form.field("lines")) == []


def test_items_see_their_own_values_first() -> None:
    form = DynamicForm(
        {
            "fields": [
                {"key": "mode", "type": "select", "value": "strict"},
                {
                    "key": "lines",
                    "type": "array",
                    "fields": [
                        {"key": "kind", "type": "select"},
                        {
                            "key": "note",
                            "type": "input",
                            "logic": [
                                {
                                    "type": "hidden",
                                    "condition": {
                                        "type": "and",
                                        "conditions": [
                                            {"type": "fieldValue", "fieldPath": "kind", "operator": "equals", "value": "plain"},
                                            {"type": "fieldValue", "fieldPath": "mode", "operator": "equals", "value": "strict"},
                                        ],
                                    },
                                }
                            ],
                        },
                    ],
                },
            ]
        },
        value={"lines": [{"kind": "plain"}, {"kind": "extra"}]},
    )
    assert form.field("lines.0.note").hidden is True
    assert form.field("lines.1.note").hidden is False
    form.set_value("mode", "relaxed")
    assert form.field("lines.0.note").hidden is False


@pytest.mark.asyncio
async def test_removing_an_item_does_not_rerun_sibling_resolvers() -> None:
    calls = []

    async def flagged(ctx) -> bool:
        calls.append(ctx.field_value["sku"])
        await asyncio.sleep(0)
        return ctx.field_value["qty"] > 5

    form = DynamicForm(
        {
            "schemas": [
                {
                    "name": "flaggedLine",
                    "logic": [{"type": "hidden", "condition": {"type": "async", "asyncFunctionName": "flagged"}}],
                }
            ],
            "fields": [
                {
                    "key": "lines",
                    "type": "array",
                    "fields": [{"key": "sku", "type": "input"}, {"key": "qty", "type": "input"}],
                    "schemas": [{"type": "applyEach", "schema": "flaggedLine"}],
                }
            ],
        },
        custom_fn_config={"asyncConditions": {"flagged": flagged}},
        value={"lines": [{"sku": "A", "qty": 1}, {"sku": "B", "qty": 9}]},
    )
    await form.settle()
    assert sorted(calls) == ["A", "B"]
    assert form.field("lines.1").hidden is True

    form.remove_array_item("lines", 0)
    await form.settle()

    assert sorted(calls) == ["A", "B"]
    assert form.field("lines.0").hidden is True
    await form.aclose()
