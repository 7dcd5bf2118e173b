from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable

from .async_conditions import NO_RESULT, DeferredResolver
from .conditions import EvaluationContext
from .config import HttpCondition, HttpRequestSpec
from .expressions import compile_expression, evaluate_program

DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass(slots=True, frozen=True)
class HttpRequest:
    method: str
    url: str
    params: dict[str, Any] = field(default_factory=dict)
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)

    def fingerprint(self) -> str:
        return json.dumps(
            {"method": self.method, "url": self.url, "params": self.params, "body": self.body},
            sort_keys=True,
            default=str,
        )


class HttpConditionCache:
    """TTL cache of parsed responses keyed by request fingerprint.

    Concurrent fetches of one fingerprint share a single request. Entries are
    only ever invalidated by age.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}
        self._inflight: dict[str, asyncio.Future[Any]] = {}

    def get(self, fingerprint: str) -> Any:
        entry = self._entries.get(fingerprint)
        if entry is None:
            return _MISSING
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[fingerprint]
            return _MISSING
        return value

    def contains(self, fingerprint: str) -> bool:
        return self.get(fingerprint) is not _MISSING

    def put(self, fingerprint: str, value: Any, ttl_ms: int) -> None:
        if ttl_ms <= 0:
            return
        self._entries[fingerprint] = (self._clock() + ttl_ms / 1000, value)

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def fetch(self, fingerprint: str, ttl_ms: int, load: Callable[[], Awaitable[Any]]) -> Any:
        cached = self.get(fingerprint)
        if cached is not _MISSING:
            return cached
        shared = self._inflight.get(fingerprint)
        if shared is None:
            shared = asyncio.ensure_future(self._load(fingerprint, ttl_ms, load))
            self._inflight[fingerprint] = shared
            shared.add_done_callback(partial(self._forget, fingerprint))
        # one waiter being cancelled must not cancel the shared request
        return await asyncio.shield(shared)

    async def _load(self, fingerprint: str, ttl_ms: int, load: Callable[[], Awaitable[Any]]) -> Any:
        value = await load()
        self.put(fingerprint, value, ttl_ms)
        return value

    def _forget(self, fingerprint: str, future: asyncio.Future[Any]) -> None:
        if self._inflight.get(fingerprint) is future:
            del self._inflight[fingerprint]
        if not future.cancelled():
            # retrieved here so abandoned failures are not reported as unhandled
            future.exception()


def _evaluate_value(
    spec: HttpRequestSpec,
    key: str,
    expression: str,
    scope: Mapping[str, Any],
    functions: Mapping[str, Callable[..., Any]],
) -> Any:
    program = spec.programs.get(key)
    if program is None:
        program = compile_expression(expression, functions=functions)
    return evaluate_program(program, scope, functions=functions)


def _evaluate_body(
    spec: HttpRequestSpec,
    value: Any,
    prefix: str,
    scope: Mapping[str, Any],
    functions: Mapping[str, Callable[..., Any]],
) -> Any:
    if isinstance(value, str):
        return _evaluate_value(spec, f"body.{prefix}", value, scope, functions)
    if isinstance(value, Mapping):
        return {
            key: _evaluate_body(spec, item, f"{prefix}.{key}" if prefix else str(key), scope, functions)
            for key, item in value.items()
        }
    return value


def build_request(spec: HttpRequestSpec, ctx: EvaluationContext) -> HttpRequest:
    """Evaluate query parameter (and optionally body) expressions against ``ctx``."""
    functions = ctx.functions()
    scope = ctx.expression_scope()
    params: dict[str, Any] = {}
    for name, raw in spec.query_params.items():
        value = _evaluate_value(spec, f"query.{name}", raw, scope, functions) if isinstance(raw, str) else raw
        if value is not None:
            params[name] = value
    body = spec.body
    if spec.evaluate_body_expressions and body is not None:
        body = _evaluate_body(spec, body, "", scope, functions)
    return HttpRequest(method=spec.method, url=spec.url, params=params, body=body, headers=dict(spec.headers))


async def send_request(client: Any, request: HttpRequest) -> Any:
    response = await client.request(
        request.method,
        request.url,
        params=request.params or None,
        json=request.body,
        headers=request.headers or None,
    )
    response.raise_for_status()
    if not response.content:
        return None
    return response.json()


def extract_result(condition: HttpCondition, data: Any) -> bool:
    if condition.response_expression is None:
        return bool(data)
    program = condition.response_program or compile_expression(condition.response_expression)
    return bool(evaluate_program(program, {"response": data}))


class HttpResolver(DeferredResolver):
    """Fetches ``spec`` with debounce, caching and switch semantics.

    Subclasses turn the parsed response into their result with ``extract``.
    """

    kind = "http"
    failure_event = "http_condition_failed"

    def __init__(
        self,
        spec: HttpRequestSpec,
        client: Any,
        cache: HttpConditionCache,
        *,
        pending_value: Any,
        field_path: str = "",
    ) -> None:
        super().__init__(pending_value, spec.debounce_ms, field_path=field_path)
        self.spec = spec
        self._client = client
        self._cache = cache

    def extract(self, data: Any) -> Any:
        raise NotImplementedError

    def inputs_key(self, ctx: EvaluationContext) -> Any:
        try:
            return build_request(self.spec, ctx).fingerprint()
        except Exception as exc:
            # resolve() rebuilds the request and reports the failure
            return ("unbuildable", type(exc).__name__, str(exc))

    def try_resolve_now(self, ctx: EvaluationContext, key: Any) -> Any:
        if not isinstance(key, str):
            return NO_RESULT
        cached = self._cache.get(key)
        if cached is _MISSING:
            return NO_RESULT
        try:
            result = self.extract(cached)
        except Exception:
            logger.warning(
                self.failure_event,
                exc_info=True,
                extra={"field_path": self.field_path, "url": self.spec.url},
            )
            return self.fallback()
        logger.debug(
            "http_cache_hit",
            extra={"kind": self.kind, "field_path": self.field_path, "url": self.spec.url, "result": result},
        )
        return result

    async def resolve(self, ctx: EvaluationContext) -> Any:
        request = build_request(self.spec, ctx)
        data = await self._cache.fetch(
            request.fingerprint(),
            self.spec.cache_duration_ms,
            partial(self._send, request),
        )
        return self.extract(data)

    async def _send(self, request: HttpRequest) -> Any:
        logger.info(
            "http_request",
            extra={
                "kind": self.kind,
                "field_path": self.field_path,
                "method": request.method,
                "url": request.url,
                "param_names": sorted(request.params),
            },
        )
        return await send_request(self._client, request)


class HttpConditionResolver(HttpResolver):
    """Resolves an ``http`` condition to a boolean."""

    def __init__(
        self,
        condition: HttpCondition,
        client: Any,
        cache: HttpConditionCache,
        *,
        field_path: str = "",
    ) -> None:
        super().__init__(
            condition.http,
            client,
            cache,
            pending_value=condition.pending_value,
            field_path=field_path,
        )
        self.condition = condition

    def extract(self, data: Any) -> bool:
        return extract_result(self.condition, data)
