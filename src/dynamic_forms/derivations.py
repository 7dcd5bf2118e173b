"""Derivations whose value comes from an async function or an HTTP response.

Both resolvers publish ``NO_RESULT`` while a request is in flight and after a
failure, so the form only writes a value that was actually resolved for the
latest inputs.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Callable

from .async_conditions import NO_RESULT, DeferredResolver, freeze, resolve_result
from .conditions import EvaluationContext, get_path, split_path
from .config import LogicConfig
from .expressions import compile_expression, evaluate_program
from .http_conditions import HttpConditionCache, HttpResolver


def without_path(value: Any, parts: list[str]) -> Any:
    """Copy of ``value`` with the leaf at ``parts`` dropped."""
    if not parts:
        return None
    head, rest = parts[0], parts[1:]
    if isinstance(value, Mapping):
        if head not in value:
            return value
        trimmed = dict(value)
        if rest:
            trimmed[head] = without_path(value[head], rest)
        else:
            del trimmed[head]
        return trimmed
    if isinstance(value, list) and head.isdigit() and int(head) < len(value):
        items = list(value)
        items[int(head)] = without_path(items[int(head)], rest) if rest else None
        return items
    return value


def derivation_inputs(config: LogicConfig, ctx: EvaluationContext) -> Any:
    # the target's own value is left out so writing the result does not re-trigger
    if config.depends_on is not None:
        return tuple(freeze(get_path(ctx.root, path)) for path in config.depends_on)
    return freeze(without_path(ctx.root, split_path(ctx.field_path)))


class AsyncDerivationResolver(DeferredResolver):
    """Computes a field value with a registered async derivation function."""

    kind = "async_derivation"
    failure_event = "derivation_failed"

    def __init__(self, config: LogicConfig, function: Callable[..., Any], *, field_path: str = "") -> None:
        super().__init__(NO_RESULT, config.debounce_ms, field_path=field_path)
        self.config = config
        self._function = function

    def inputs_key(self, ctx: EvaluationContext) -> Any:
        return derivation_inputs(self.config, ctx)

    async def resolve(self, ctx: EvaluationContext) -> Any:
        return await resolve_result(self._function(ctx))


class HttpDerivationResolver(HttpResolver):
    """Computes a field value from ``responseExpression`` over an HTTP response."""

    kind = "http_derivation"
    failure_event = "derivation_failed"

    def __init__(
        self,
        config: LogicConfig,
        client: Any,
        cache: HttpConditionCache,
        *,
        field_path: str = "",
    ) -> None:
        if config.http is None or config.response_expression is None:
            raise ValueError("http derivations need an http request and a responseExpression")
        super().__init__(config.http, client, cache, pending_value=NO_RESULT, field_path=field_path)
        self.config = config

    def extract(self, data: Any) -> Any:
        program = self.config.response_program
        if program is None:
            program = compile_expression(self.config.response_expression)
        return evaluate_program(program, {"response": data})
