"""Binds logic rules (hidden/disabled/required/readonly/derivation) to field nodes.

A rule starts idle; the first read of the field state evaluates its
condition and the result stays applied until an input the condition read
changes. Several rules for the same state combine with OR, together with
the field's static flag.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any, Callable

from .conditions import EvaluationContext
from .config import LogicConfig
from .expressions import evaluate_program

if TYPE_CHECKING:
    from .form import FieldNode

Gate = Callable[[], bool]

logger = logging.getLogger(__name__)


def logic_function(config: LogicConfig, node: FieldNode, gate: Gate | None = None) -> Callable[[], bool]:
    condition = config.condition

    def _evaluate() -> bool:
        if gate is not None and not gate():
            return False
        return node.evaluate(condition)

    return _evaluate


def derive_value(config: LogicConfig, ctx: EvaluationContext) -> Any:
    if config.function_name is not None:
        return ctx.custom_functions[config.function_name](ctx)
    if config.program is not None:
        return evaluate_program(config.program, ctx.expression_scope(), functions=ctx.functions())
    return config.value


def apply_logic(config: LogicConfig, node: FieldNode, gate: Gate | None = None) -> None:
    node.track_deferred(config.condition)
    active = logic_function(config, node, gate)
    if config.type == "derivation":
        node.add_derivation(config, active)
    else:
        node.add_state_source(config.type, active, config.error_message)
    logger.debug("logic_applied", extra={"field_path": node.path, "logic_type": config.type})


def apply_multiple_logic(configs: Iterable[LogicConfig], node: FieldNode, gate: Gate | None = None) -> None:
    for config in configs:
        apply_logic(config, node, gate)
