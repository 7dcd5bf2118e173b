import pytest

from dynamic_forms.conditions import (
    ConditionEvaluationError,
    EvaluationContext,
    apply_operator,
    evaluate_condition,
    get_path,
)
from dynamic_forms.config import AsyncCondition, ConfigurationError, FieldValueCondition, parse_condition


def make_context(**overrides) -> EvaluationContext:
    values = {
        "field_value": None,
        "form_value": {"country": "NO", "profile": {"age": 42}, "tags": ["a", "b"]},
        "field_path": "city",
    }
    values.update(overrides)
    return EvaluationContext(**values)


def test_boolean_conditions() -> None:
    ctx = make_context()
    assert evaluate_condition(True, ctx) is True
    assert evaluate_condition(False, ctx) is False


def test_empty_and_or_conditions() -> None:
    ctx = make_context()
    assert evaluate_condition({"type": "and", "conditions": []}, ctx) is True
    assert evaluate_condition({"type": "or", "conditions": []}, ctx) is False
    assert evaluate_condition({"type": "and", "conditions": [True, False]}, ctx) is False
    assert evaluate_condition({"type": "or", "conditions": [True, False]}, ctx) is True


@pytest.mark.parametrize(
    ("operator", "left", "right", "expected"),
    [
        ("equals", 1, 1, True),
        ("equals", True, 1, False),
        ("notEquals", "a", "b", True),
        ("greater", 5, 3, True),
        ("greater", None, 3, False),
        ("less", "a", "b", True),
        ("greaterOrEqual", 3, 3, True),
        ("lessOrEqual", 4, 3, False),
        ("contains", "hello", "ell", True),
        ("contains", ["a", "b"], "b", True),
        ("startsWith", "hello", "he", True),
        ("endsWith", "hello", "lo", True),
        ("matches", "abc123", r"\d+", True),
        ("matches", None, ".*", False),
    ],
)
def test_operators(operator, left, right, expected) -> None:
    assert apply_operator(operator, left, right) is expected


def test_field_value_condition_reads_dotted_paths() -> None:
    ctx = make_context()
    condition = {"type": "fieldValue", "fieldPath": "profile.age", "operator": "greaterOrEqual", "value": 18}
    assert evaluate_condition(condition, ctx) is True
    assert evaluate_condition({**condition, "fieldPath": "profile.missing"}, ctx) is False


def test_field_value_condition_without_path_or_operator_is_false() -> None:
    ctx = make_context()
    assert evaluate_condition(FieldValueCondition(field_path=None, operator="equals", value=None), ctx) is False
    assert evaluate_condition(FieldValueCondition(field_path="country", operator=None, value="NO"), ctx) is False


def test_form_value_condition_compares_whole_value() -> None:
    ctx = make_context(form_value="draft")
    assert evaluate_condition({"type": "formValue", "operator": "equals", "value": "draft"}, ctx) is True


def test_javascript_condition_binds_context_names() -> None:
    ctx = make_context(field_value="Oslo", external_data={"allowed": ["Oslo"]})
    condition = {
        "type": "javascript",
        "expression": "contains(externalData.allowed, fieldValue) and formValue.country == 'NO'",
    }
    assert evaluate_condition(condition, ctx) is True


def test_javascript_condition_errors_propagate() -> None:
    ctx = make_context(field_value="text")
    with pytest.raises(ConditionEvaluationError) as raised:
        evaluate_condition({"type": "javascript", "expression": "fieldValue > 3"}, ctx)
    assert isinstance(raised.value.__cause__, TypeError)
    assert raised.value.condition_type == "javascript"


def test_custom_condition_receives_context() -> None:
    seen = []

    def is_norwegian(ctx: EvaluationContext) -> bool:
        seen.append(ctx.field_path)
        return ctx.form_value["country"] == "NO"

    ctx = make_context(custom_functions={"isNorwegian": is_norwegian})
    assert evaluate_condition({"type": "custom", "expression": "isNorwegian"}, ctx) is True
    assert seen == ["city"]


def test_custom_condition_errors_are_wrapped() -> None:
    def broken(ctx: EvaluationContext) -> bool:
        raise KeyError("country")

    ctx = make_context(custom_functions={"broken": broken})
    with pytest.raises(ConditionEvaluationError) as raised:
        evaluate_condition({"type": "custom", "expression": "broken"}, ctx)
    assert isinstance(raised.value.__cause__, KeyError)


def test_unregistered_custom_condition_raises() -> None:
    with pytest.raises(ConditionEvaluationError):
        evaluate_condition({"type": "custom", "expression": "missing"}, make_context())


def test_array_item_scope_falls_back_to_root() -> None:
    root = {"mode": "strict", "lines": [{"kind": "extra"}]}
    ctx = make_context(form_value=root["lines"][0], root_form_value=root, array_index=0, array_path="lines")

    assert evaluate_condition({"type": "fieldValue", "fieldPath": "kind", "operator": "equals", "value": "extra"}, ctx)
    assert evaluate_condition({"type": "fieldValue", "fieldPath": "mode", "operator": "equals", "value": "strict"}, ctx)


def test_deferred_conditions_report_pending_without_a_resolver() -> None:
    ctx = make_context()
    condition = AsyncCondition(async_function_name="check", pending_value=True)
    assert evaluate_condition(condition, ctx) is True
    assert evaluate_condition(condition, ctx, resolve_deferred=lambda _: False) is False


def test_parse_condition_strict_mode_rejects_unknown_functions() -> None:
    with pytest.raises(ConfigurationError):
        parse_condition({"type": "custom", "expression": "missing"}, strict=True)


def test_get_path_indexes_lists() -> None:
    value = {"lines": [{"qty": 2}]}
    assert get_path(value, "lines.0.qty") == 2
    assert get_path(value, "lines.5.qty", "fallback") == "fallback"
