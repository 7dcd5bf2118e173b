from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Callable

from .config import SchemaApplicationConfig, SchemaDefinition
from .logic import Gate, apply_multiple_logic

if TYPE_CHECKING:
    from .form import FieldNode

logger = logging.getLogger(__name__)


def value_type_matches(
    predicate: str | None,
    value: Any,
    custom_functions: Mapping[str, Callable[..., Any]],
) -> bool:
    if predicate == "string":
        return isinstance(value, str)
    if predicate == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if predicate == "boolean":
        return isinstance(value, bool)
    if predicate == "array":
        return isinstance(value, (list, tuple))
    if predicate == "object":
        return isinstance(value, Mapping)
    if predicate == "null":
        return value is None
    function = custom_functions.get(predicate or "")
    return bool(function(value)) if function is not None else False


def _compose(outer: Gate | None, inner: Gate) -> Gate:
    if outer is None:
        return inner
    return lambda: outer() and inner()


def apply_schema_definition(schema: SchemaDefinition, node: FieldNode, gate: Gate | None = None) -> None:
    for validator in schema.validators:
        node.add_validator(validator, gate)
    apply_multiple_logic(schema.logic, node, gate)
    for application in schema.sub_schemas:
        apply_schema(application, node, gate)


def apply_schema(application: SchemaApplicationConfig, node: FieldNode, gate: Gate | None = None) -> None:
    """Install a schema's validators and logic on ``node``.

    ``applyEach`` (and plain ``apply`` of a ``*.``-pattern schema on an
    array) installs the bundle on every current and future item instead.
    """
    schema = application.schema
    kind = application.type

    if kind == "applyEach" or (kind == "apply" and schema.broadcasts and node.is_array):
        node.add_item_schema(lambda item: apply_schema_definition(schema, item, gate))
        logger.debug("schema_applied", extra={"field_path": node.path, "schema": schema.name, "each": True})
        return

    if kind == "applyWhen":
        condition = application.condition
        node.track_deferred(condition)
        gate = _compose(gate, lambda: node.evaluate(condition))
    elif kind == "applyWhenValue":
        predicate = application.type_predicate
        gate = _compose(
            gate,
            lambda: value_type_matches(predicate, node.value(), node.form.custom_fn_config.custom_functions),
        )

    apply_schema_definition(schema, node, gate)
    logger.debug("schema_applied", extra={"field_path": node.path, "schema": schema.name, "each": False})
