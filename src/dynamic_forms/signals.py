"""Minimal push/pull reactive graph.

``Signal`` holds a value, ``Computed`` derives a value lazily from other
cells and tracks what it read, ``Effect`` re-runs eagerly whenever anything
it read changes. Everything runs on one thread: writes mark dependents dirty
synchronously and queued effects flush once the outermost write or
``batch()`` completes.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Generic, Iterator, TypeVar

T = TypeVar("T")

MAX_EFFECT_DEPTH = 100

logger = logging.getLogger(__name__)


class ReactiveCycleError(RuntimeError):
    """Raised when effects keep re-triggering each other without settling."""


_observer_stack: list[_Observer | None] = []
_pending_effects: list[Effect] = []
_batch_depth = 0
_flushing = False


class _Source:
    __slots__ = ("_observers", "name")

    def __init__(self, name: str | None = None) -> None:
        self._observers: set[_Observer] = set()
        self.name = name

    def _track(self) -> None:
        observer = _observer_stack[-1] if _observer_stack else None
        if observer is not None:
            self._observers.add(observer)
            observer._sources.add(self)

    def _notify(self) -> None:
        for observer in list(self._observers):
            observer._invalidate()


class _Observer:
    __slots__ = ()

    _sources: set[_Source]

    def _invalidate(self) -> None:
        raise NotImplementedError

    def _detach(self) -> None:
        for source in self._sources:
            source._observers.discard(self)
        self._sources = set()


class Signal(_Source, Generic[T]):
    """Writable reactive cell."""

    __slots__ = ("_value", "_equals")

    def __init__(
        self,
        value: T,
        *,
        name: str | None = None,
        equals: Callable[[Any, Any], bool] | None = None,
    ) -> None:
        super().__init__(name)
        self._value = value
        self._equals = equals or _default_equals

    def __call__(self) -> T:
        self._track()
        return self._value

    def peek(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        if self._equals(self._value, value):
            return
        self._value = value
        with batch():
            self._notify()

    def __repr__(self) -> str:
        return f"Signal({self.name or ''}={self._value!r})"


class Computed(_Source, _Observer, Generic[T]):
    """Lazily recomputed cell that re-evaluates only after a dependency changed.

    An exception raised by ``fn`` is cached like a value and re-raised to
    every reader until a dependency changes.
    """

    __slots__ = ("_fn", "_value", "_error", "_dirty", "_sources", "_computing")

    def __init__(self, fn: Callable[[], T], *, name: str | None = None) -> None:
        _Source.__init__(self, name)
        self._fn = fn
        self._value: Any = None
        self._error: Exception | None = None
        self._dirty = True
        self._sources = set()
        self._computing = False

    def __call__(self) -> T:
        self._track()
        return self.peek()

    def peek(self) -> T:
        if self._dirty:
            self._recompute()
        if self._error is not None:
            raise self._error
        return self._value

    def _recompute(self) -> None:
        if self._computing:
            raise ReactiveCycleError(f"computed '{self.name}' depends on itself")
        self._detach()
        self._computing = True
        _observer_stack.append(self)
        try:
            self._value = self._fn()
            self._error = None
        except ReactiveCycleError:
            raise
        except Exception as exc:
            self._value = None
            self._error = exc
        finally:
            _observer_stack.pop()
            self._computing = False
        self._dirty = False

    def _invalidate(self) -> None:
        if self._dirty:
            return
        self._dirty = True
        self._notify()

    def dispose(self) -> None:
        self._detach()
        self._dirty = True

    def __repr__(self) -> str:
        return f"Computed({self.name or ''})"


class Effect(_Observer):
    """Side effect re-run after any cell it read changes.

    Errors raised by the effect body are logged; they never stop the
    propagation of a write to other observers.
    """

    __slots__ = ("_fn", "_sources", "_scheduled", "_disposed", "name")

    def __init__(self, fn: Callable[[], Any], *, name: str | None = None) -> None:
        self._fn = fn
        self._sources = set()
        self._scheduled = False
        self._disposed = False
        self.name = name
        self._run()

    def _invalidate(self) -> None:
        self._schedule()

    def _schedule(self) -> None:
        if self._scheduled or self._disposed:
            return
        self._scheduled = True
        _pending_effects.append(self)
        if _batch_depth == 0 and not _flushing:
            _flush()

    def _run(self) -> None:
        self._scheduled = False
        if self._disposed:
            return
        self._detach()
        _observer_stack.append(self)
        try:
            self._fn()
        except ReactiveCycleError:
            raise
        except Exception:
            logger.exception("effect_failed", extra={"effect": self.name})
        finally:
            _observer_stack.pop()

    def dispose(self) -> None:
        self._disposed = True
        self._detach()

    @property
    def disposed(self) -> bool:
        return self._disposed


def _default_equals(left: Any, right: Any) -> bool:
    if left is right:
        return True
    try:
        return bool(left == right) and type(left) is type(right)
    except Exception:
        return False


def _flush() -> None:
    global _flushing
    if _flushing:
        return
    _flushing = True
    runs: dict[int, int] = {}
    try:
        while _pending_effects:
            effect = _pending_effects.pop(0)
            count = runs.get(id(effect), 0) + 1
            runs[id(effect)] = count
            if count > MAX_EFFECT_DEPTH:
                effect._scheduled = False
                for stale in _pending_effects:
                    stale._scheduled = False
                _pending_effects.clear()
                raise ReactiveCycleError(f"effect '{effect.name}' did not settle after {MAX_EFFECT_DEPTH} runs")
            effect._run()
    finally:
        _flushing = False


@contextmanager
def batch() -> Iterator[None]:
    """Defer effects until the outermost batch exits."""
    global _batch_depth
    _batch_depth += 1
    try:
        yield
    finally:
        _batch_depth -= 1
        if _batch_depth == 0 and not _flushing:
            _flush()


def untracked(fn: Callable[[], T]) -> T:
    """Run ``fn`` without registering dependencies on the current observer."""
    _observer_stack.append(None)
    try:
        return fn()
    finally:
        _observer_stack.pop()

