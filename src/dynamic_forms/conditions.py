from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from .config import (
    AndCondition,
    AsyncCondition,
    Condition,
    CustomCondition,
    FieldValueCondition,
    FormValueCondition,
    HttpCondition,
    JavascriptCondition,
    OrCondition,
    parse_condition,
)
from .expressions import UnsafeExpressionError, compile_expression, evaluate_program, resolve_functions

logger = logging.getLogger(__name__)

_MISSING = object()


class ConditionEvaluationError(RuntimeError):
    """Raised when a javascript or custom condition fails while evaluating."""

    def __init__(self, message: str, *, condition_type: str, field_path: str | None = None) -> None:
        super().__init__(message)
        self.condition_type = condition_type
        self.field_path = field_path


@dataclass(slots=True, frozen=True)
class EvaluationContext:
    field_value: Any = None
    form_value: Any = None
    field_path: str = ""
    custom_functions: Mapping[str, Callable[..., Any]] = field(default_factory=dict)
    logger: logging.Logger = logger
    root_form_value: Any = None
    array_index: int | None = None
    array_path: str | None = None
    external_data: Mapping[str, Any] = field(default_factory=dict)
    expression_functions: Mapping[str, Callable[..., Any]] | None = None

    @property
    def root(self) -> Any:
        return self.root_form_value if self.root_form_value is not None else self.form_value

    def functions(self) -> Mapping[str, Callable[..., Any]]:
        if self.expression_functions is not None:
            return self.expression_functions
        return resolve_functions(self.custom_functions)

    def expression_scope(self) -> dict[str, Any]:
        return {
            "fieldValue": self.field_value,
            "formValue": self.form_value,
            "fieldPath": self.field_path,
            "rootFormValue": self.root,
            "externalData": self.external_data,
            "arrayIndex": self.array_index,
            "arrayPath": self.array_path,
        }

    def with_value(self, field_value: Any) -> EvaluationContext:
        return replace(self, field_value=field_value)


def split_path(path: str) -> list[str]:
    return [part for part in str(path).split(".") if part != ""]


def get_path(value: Any, path: str, default: Any = None) -> Any:
    """Walk a dotted path through nested mappings and sequences.

    Numeric segments index into lists. Any missing step yields ``default``.
    """
    current = value
    for part in split_path(path):
        if isinstance(current, Mapping):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            if not -len(current) <= index < len(current):
                return default
            current = current[index]
        else:
            return default
    return current


def _same_kind(left: Any, right: Any) -> bool:
    # True == 1 in Python; form values keep booleans and numbers apart
    return isinstance(left, bool) == isinstance(right, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and not (
        isinstance(value, float) and math.isnan(value)
    )


def _ordered(left: Any, right: Any, compare: Callable[[Any, Any], bool]) -> bool:
    if _is_number(left) and _is_number(right):
        return compare(left, right)
    if isinstance(left, str) and isinstance(right, str):
        return compare(left, right)
    return False


def _equals(left: Any, right: Any) -> bool:
    return _same_kind(left, right) and left == right


def _contains(left: Any, right: Any) -> bool:
    if isinstance(left, str):
        return right is not None and str(right) in left
    if isinstance(left, (list, tuple, set, frozenset)):
        return any(_equals(item, right) for item in left)
    if isinstance(left, Mapping):
        return right in left
    return False


def _matches(left: Any, pattern: re.Pattern[str] | None, raw: Any) -> bool:
    if left is None:
        return False
    if pattern is None:
        try:
            pattern = re.compile(str(raw))
        except re.error:
            return False
    return pattern.search(str(left)) is not None


def apply_operator(operator: str | None, left: Any, right: Any, pattern: re.Pattern[str] | None = None) -> bool:
    if operator == "equals":
        return _equals(left, right)
    if operator == "notEquals":
        return not _equals(left, right)
    if operator == "greater":
        return _ordered(left, right, lambda a, b: a > b)
    if operator == "less":
        return _ordered(left, right, lambda a, b: a < b)
    if operator == "greaterOrEqual":
        return _ordered(left, right, lambda a, b: a >= b)
    if operator == "lessOrEqual":
        return _ordered(left, right, lambda a, b: a <= b)
    if operator == "contains":
        return _contains(left, right)
    if operator == "startsWith":
        return isinstance(left, str) and right is not None and left.startswith(str(right))
    if operator == "endsWith":
        return isinstance(left, str) and right is not None and left.endswith(str(right))
    if operator == "matches":
        return _matches(left, pattern, right)
    return False


def resolve_field_value(path: str, ctx: EvaluationContext) -> Any:
    """Resolve ``path`` for a fieldValue condition.

    Inside an array item the item is searched first; paths it does not own
    fall back to the whole form.
    """
    if ctx.array_index is not None and isinstance(ctx.form_value, Mapping):
        scoped = get_path(ctx.form_value, path, _MISSING)
        if scoped is not _MISSING:
            return scoped
        return get_path(ctx.root, path)
    return get_path(ctx.form_value, path)


DeferredResolver = Callable[[AsyncCondition | HttpCondition], bool]


def evaluate_condition(
    condition: Condition | Mapping[str, Any],
    ctx: EvaluationContext,
    *,
    resolve_deferred: DeferredResolver | None = None,
) -> bool:
    """Evaluate a condition against ``ctx``.

    Async and http conditions cannot be decided synchronously; they are
    delegated to ``resolve_deferred`` (the form's resolvers) or, without one,
    report their pending value.
    """
    if isinstance(condition, Mapping):
        condition = parse_condition(condition, {"customFunctions": dict(ctx.custom_functions)})

    if isinstance(condition, bool):
        return condition

    if isinstance(condition, FieldValueCondition):
        if not condition.field_path or condition.operator is None:
            return False
        left = resolve_field_value(condition.field_path, ctx)
        return apply_operator(condition.operator, left, condition.value, condition.pattern)

    if isinstance(condition, FormValueCondition):
        if condition.operator is None:
            return False
        return apply_operator(condition.operator, ctx.form_value, condition.value, condition.pattern)

    if isinstance(condition, AndCondition):
        return all(evaluate_condition(item, ctx, resolve_deferred=resolve_deferred) for item in condition.conditions)

    if isinstance(condition, OrCondition):
        return any(evaluate_condition(item, ctx, resolve_deferred=resolve_deferred) for item in condition.conditions)

    if isinstance(condition, JavascriptCondition):
        return _evaluate_javascript(condition, ctx)

    if isinstance(condition, CustomCondition):
        return _evaluate_custom(condition, ctx)

    if isinstance(condition, (AsyncCondition, HttpCondition)):
        if resolve_deferred is None:
            return condition.pending_value
        return bool(resolve_deferred(condition))

    raise TypeError(f"unsupported condition {condition!r}")


def _evaluate_javascript(condition: JavascriptCondition, ctx: EvaluationContext) -> bool:
    functions = ctx.functions()
    program = condition.program
    try:
        if program is None:
            if not condition.expression:
                return False
            program = compile_expression(condition.expression, functions=functions)
        return bool(evaluate_program(program, ctx.expression_scope(), functions=functions))
    except UnsafeExpressionError:
        raise
    except Exception as exc:
        logger.debug(
            "condition_evaluation_failed",
            extra={"condition_type": "javascript", "field_path": ctx.field_path, "expression": condition.expression},
        )
        raise ConditionEvaluationError(
            f"expression '{condition.expression}' failed for '{ctx.field_path}': {exc}",
            condition_type="javascript",
            field_path=ctx.field_path,
        ) from exc


def _evaluate_custom(condition: CustomCondition, ctx: EvaluationContext) -> bool:
    function = ctx.custom_functions.get(condition.expression or "")
    if function is None:
        raise ConditionEvaluationError(
            f"custom function '{condition.expression}' is not registered",
            condition_type="custom",
            field_path=ctx.field_path,
        )
    try:
        return bool(function(ctx))
    except Exception as exc:
        logger.debug(
            "condition_evaluation_failed",
            extra={"condition_type": "custom", "field_path": ctx.field_path, "function": condition.expression},
        )
        raise ConditionEvaluationError(
            f"custom function '{condition.expression}' failed for '{ctx.field_path}': {exc}",
            condition_type="custom",
            field_path=ctx.field_path,
        ) from exc


def iter_deferred(condition: Condition) -> Iterator[AsyncCondition | HttpCondition]:
    """Yield every async/http condition nested in ``condition``."""
    if isinstance(condition, (AsyncCondition, HttpCondition)):
        yield condition
    elif isinstance(condition, (AndCondition, OrCondition)):
        for item in condition.conditions:
            yield from iter_deferred(item)
