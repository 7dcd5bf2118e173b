"""Resolvers for conditions that can only be decided asynchronously.

Each resolver owns a ``value`` signal that starts at the condition's pending
value. ``update(ctx)`` is called by the form whenever the inputs may have
changed; a new input key cancels the task in flight (switch semantics), puts
the pending value back on ``value`` and starts another task on the running
event loop. A generation counter drops any result that arrives after it was
superseded.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Mapping
from typing import Any, Callable

from .conditions import EvaluationContext, get_path
from .config import AsyncCondition
from .expressions import safe_snapshot_value
from .signals import Signal, batch

logger = logging.getLogger(__name__)

_UNSET = object()

# returned by try_resolve_now on a miss, and by derivation fallbacks
NO_RESULT = object()


def freeze(value: Any) -> Any:
    """Hashable, order-independent snapshot used to compare resolver inputs."""
    if isinstance(value, Mapping):
        return tuple(sorted((str(key), freeze(item)) for key, item in value.items()))
    if isinstance(value, (list, tuple)):
        return tuple(freeze(item) for item in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(freeze(item) for item in value)
    return value


async def resolve_result(result: Any) -> Any:
    """Accept an awaitable, an async iterator (first item) or a plain value."""
    if inspect.isawaitable(result):
        result = await result
    if hasattr(result, "__anext__"):
        iterator = result
        try:
            return await iterator.__anext__()
        except StopAsyncIteration:
            return None
        finally:
            closer = getattr(iterator, "aclose", None)
            if closer is not None:
                await closer()
    return result


class DeferredResolver:
    """Shared task/generation bookkeeping for async and http resolvers."""

    kind = "deferred"
    failure_event = "deferred_condition_failed"

    def __init__(self, pending_value: Any, debounce_ms: int, *, field_path: str = "") -> None:
        self.pending_value = pending_value
        self.debounce_ms = max(int(debounce_ms), 0)
        self.field_path = field_path
        self.value: Signal[Any] = Signal(self.pending_value, name=f"{self.kind}:{field_path}")
        self.pending: Signal[bool] = Signal(True, name=f"{self.kind}-pending:{field_path}")
        self._generation = 0
        self._task: asyncio.Task[None] | None = None
        self._last_key: Any = _UNSET
        self._closed = False
        self.stalled = False

    @property
    def task(self) -> asyncio.Task[None] | None:
        return self._task

    @property
    def generation(self) -> int:
        return self._generation

    def inputs_key(self, ctx: EvaluationContext) -> Any:
        raise NotImplementedError

    async def resolve(self, ctx: EvaluationContext) -> Any:
        raise NotImplementedError

    def fallback(self) -> Any:
        return self.pending_value

    def try_resolve_now(self, ctx: EvaluationContext, key: Any) -> Any:
        """Hook for resolvers that can answer without scheduling (cache hits)."""
        return NO_RESULT

    def update(self, ctx: EvaluationContext) -> None:
        if self._closed:
            return
        key = self.inputs_key(ctx)
        if key == self._last_key:
            return
        self._last_key = key
        self._generation += 1
        self._cancel_task()

        immediate = self.try_resolve_now(ctx, key)
        if immediate is not NO_RESULT:
            self.stalled = False
            self._publish(immediate, pending=False)
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "deferred_condition_no_loop",
                extra={"kind": self.kind, "field_path": self.field_path},
            )
            # retry on the next change once a loop is available
            self._last_key = _UNSET
            self.stalled = True
            self._publish(self.fallback(), pending=True)
            return

        self.stalled = False
        self._publish(self.fallback(), pending=True)
        self._task = loop.create_task(self._run(ctx, self._generation))

    async def _run(self, ctx: EvaluationContext, generation: int) -> None:
        if self.debounce_ms:
            await asyncio.sleep(self.debounce_ms / 1000)
        if generation != self._generation:
            return
        try:
            result = await self.resolve(ctx)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning(
                self.failure_event,
                exc_info=True,
                extra={
                    "field_path": self.field_path,
                    "field_value": safe_snapshot_value(self.field_path, ctx.field_value),
                    "pending_value": self.pending_value,
                },
            )
            result = self.fallback()
        if generation != self._generation:
            return
        self._publish(result, pending=False)
        logger.debug(
            "condition_resolved",
            extra={"kind": self.kind, "field_path": self.field_path, "result": result},
        )

    def _publish(self, result: Any, *, pending: bool) -> None:
        with batch():
            self.value.set(result)
            self.pending.set(pending)

    def _cancel_task(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def close(self) -> None:
        self._closed = True
        self._generation += 1
        self._cancel_task()

    def current(self) -> Any:
        return self.value()


class AsyncConditionResolver(DeferredResolver):
    """Resolves an ``async`` condition through a registered async function."""

    kind = "async"
    failure_event = "async_condition_failed"

    def __init__(
        self,
        condition: AsyncCondition,
        function: Callable[..., Any],
        *,
        field_path: str = "",
    ) -> None:
        super().__init__(bool(condition.pending_value), condition.debounce_ms, field_path=field_path)
        self.condition = condition
        self._function = function

    def inputs_key(self, ctx: EvaluationContext) -> Any:
        if self.condition.depends_on is not None:
            return tuple(freeze(get_path(ctx.root, path)) for path in self.condition.depends_on)
        return (freeze(ctx.field_value), freeze(ctx.form_value))

    async def resolve(self, ctx: EvaluationContext) -> bool:
        return bool(await resolve_result(self._function(ctx)))
