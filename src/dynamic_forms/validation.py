"""Validator pipeline: built-in rules, custom rules and message resolution.

Every active validator runs; failures are reported in declaration order as
``ValidationError(kind, message)``. Empty values only fail ``required``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Callable

from .async_conditions import DeferredResolver, freeze, resolve_result
from .conditions import EvaluationContext
from .config import HttpValidatorSpec, ValidatorConfig
from .expressions import evaluate_program
from .http_conditions import HttpRequest, send_request

logger = logging.getLogger(__name__)

DEFAULT_VALIDATION_MESSAGES = {
    "required": "This field is required",
    "min": "Must be at least {{min}}",
    "max": "Must be at most {{max}}",
    "minLength": "Must be at least {{requiredLength}} characters",
    "maxLength": "Must be at most {{requiredLength}} characters",
    "pattern": "Invalid format",
    "email": "Invalid email address",
}

ASYNC_VALIDATOR_TYPES = {"customAsync", "customHttp"}

EMAIL_PATTERN = re.compile(
    r"^(?=.{1,254}$)(?=.{1,64}@)[a-zA-Z0-9!#$%&'*+/=?^_`{|}~-]+(?:\.[a-zA-Z0-9!#$%&'*+/=?^_`{|}~-]+)*"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)
_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")


@dataclass(slots=True, frozen=True)
class ValidationError:
    kind: str
    message: str
    params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


def is_empty(value: Any) -> bool:
    if value is None or value is False:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, (list, tuple, set, frozenset, Mapping)):
        return len(value) == 0
    return False


def interpolate(template: str, params: Mapping[str, Any]) -> str:
    """Replace ``{{name}}`` placeholders; unknown names are left untouched."""

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in params:
            return match.group(0)
        return str(params[name])

    return _PLACEHOLDER.sub(_replace, template)


@dataclass(slots=True)
class MessageResolver:
    """Chooses the message for a failed rule.

    Lookup order: the validator's ``errorMessage``, the validator's
    ``validationMessages``, the field's ``validationMessages``, the form's
    ``defaultValidationMessages``, then the built-in defaults. A kind with no
    message anywhere reports the kind itself.
    """

    field_messages: Mapping[str, str] = field(default_factory=dict)
    form_messages: Mapping[str, str] = field(default_factory=dict)

    def resolve(
        self,
        kind: str,
        params: Mapping[str, Any] | None = None,
        validator: ValidatorConfig | None = None,
        override: str | None = None,
    ) -> str:
        params = params or {}
        template = None
        if validator is not None and validator.error_message:
            template = validator.error_message
        elif override:
            template = override
        for source in (
            validator.validation_messages if validator is not None else {},
            self.field_messages,
            self.form_messages,
            DEFAULT_VALIDATION_MESSAGES,
        ):
            if template is not None:
                break
            template = source.get(kind)
        return interpolate(template if template is not None else kind, params)

    def error(
        self,
        kind: str,
        params: Mapping[str, Any] | None = None,
        validator: ValidatorConfig | None = None,
        override: str | None = None,
    ) -> ValidationError:
        params = dict(params or {})
        return ValidationError(kind=kind, message=self.resolve(kind, params, validator, override), params=params)


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _threshold(config: ValidatorConfig, ctx: EvaluationContext) -> Any:
    if config.program is not None:
        return evaluate_program(config.program, ctx.expression_scope(), functions=ctx.functions())
    return config.value


def check_validator(
    config: ValidatorConfig,
    ctx: EvaluationContext,
    messages: MessageResolver,
    validators: Mapping[str, Callable[..., Any]] | None = None,
) -> ValidationError | None:
    """Run one synchronous rule against ``ctx.field_value``."""
    value = ctx.field_value
    kind = config.type

    if kind == "required":
        return messages.error("required", {}, config) if is_empty(value) else None

    if kind == "custom":
        return _check_custom(config, ctx, messages, validators)

    if kind in ASYNC_VALIDATOR_TYPES:
        raise ValueError(f"'{kind}' validators run through a resolver")

    if is_empty(value):
        return None

    if kind in {"min", "max"}:
        limit = _as_number(_threshold(config, ctx))
        actual = _as_number(value)
        if limit is None or actual is None:
            return None
        failed = actual < limit if kind == "min" else actual > limit
        return messages.error(kind, {kind: limit, "actual": actual}, config) if failed else None

    if kind in {"minLength", "maxLength"}:
        limit = _as_number(_threshold(config, ctx))
        if limit is None or not hasattr(value, "__len__"):
            return None
        length = len(value)
        failed = length < limit if kind == "minLength" else length > limit
        params = {"requiredLength": int(limit), "actualLength": length, kind: int(limit)}
        return messages.error(kind, params, config) if failed else None

    if kind == "pattern":
        pattern = config.pattern
        if pattern is None:
            pattern = re.compile(str(_threshold(config, ctx)))
        if pattern.fullmatch(str(value)) is None:
            return messages.error("pattern", {"requiredPattern": pattern.pattern, "actualValue": value}, config)
        return None

    if kind == "email":
        if not isinstance(value, str) or EMAIL_PATTERN.match(value) is None:
            return messages.error("email", {}, config)
        return None

    raise ValueError(f"unknown validator type '{kind}'")


def _check_custom(
    config: ValidatorConfig,
    ctx: EvaluationContext,
    messages: MessageResolver,
    validators: Mapping[str, Callable[..., Any]] | None,
) -> ValidationError | None:
    if config.program is not None:
        functions = ctx.functions()
        scope = ctx.expression_scope()
        if evaluate_program(config.program, scope, functions=functions):
            return None
        params = {
            name: evaluate_program(program, scope, functions=functions)
            for name, program in config.error_params.items()
        }
        return messages.error(config.kind or "custom", params, config)

    function = (validators or {}).get(config.function_name or "")
    if function is None:
        raise ValueError(f"validator '{config.function_name}' is not registered")
    return coerce_result(function(ctx, config.params), config, messages)



def coerce_result(result: Any, config: ValidatorConfig, messages: MessageResolver) -> ValidationError | None:
    """Normalize what a custom validator returned into an error or ``None``.

    ``None``/``True``/empty means valid; ``False`` fails with the configured
    kind; a string names the failed kind; a mapping may carry ``kind``,
    ``params`` and ``message``.
    """
    default_kind = config.kind or config.function_name or config.type
    if result is None or result is True:
        return None
    if result is False:
        return messages.error(default_kind, config.params, config)
    if isinstance(result, ValidationError):
        return result
    if isinstance(result, str):
        return messages.error(result, config.params, config)
    if isinstance(result, Mapping):
        if not result:
            return None
        kind = str(result.get("kind") or default_kind)
        params = {**config.params, **dict(result.get("params") or {})}
        explicit = result.get("message")
        if explicit:
            return ValidationError(kind=kind, message=interpolate(str(explicit), params), params=params)
        return messages.error(kind, params, config)
    raise TypeError(f"unsupported validator result {result!r}")


class AsyncValidatorResolver(DeferredResolver):
    """Runs a registered ``customAsync`` validator; ``None`` while pending."""

    kind = "async_validator"
    failure_event = "validator_failed"

    def __init__(
        self,
        config: ValidatorConfig,
        function: Callable[..., Any],
        messages: MessageResolver,
        *,
        field_path: str = "",
        debounce_ms: int = 0,
    ) -> None:
        super().__init__(None, debounce_ms, field_path=field_path)
        self.config = config
        self.messages = messages
        self._function = function

    def inputs_key(self, ctx: EvaluationContext) -> Any:
        return (freeze(ctx.field_value), freeze(ctx.form_value))

    async def resolve(self, ctx: EvaluationContext) -> ValidationError | None:
        result = await resolve_result(self._function(ctx, self.config.params))
        return coerce_result(result, self.config, self.messages)


def _coerce_request(raw: Any) -> HttpRequest:
    if isinstance(raw, HttpRequest):
        return raw
    if isinstance(raw, str):
        return HttpRequest(method="GET", url=raw)
    if isinstance(raw, Mapping):
        return HttpRequest(
            method=str(raw.get("method") or "GET").upper(),
            url=str(raw["url"]),
            params={k: v for k, v in dict(raw.get("params") or raw.get("queryParams") or {}).items() if v is not None},
            body=raw.get("body"),
            headers=dict(raw.get("headers") or {}),
        )
    raise TypeError(f"http validator request must be a url, mapping or HttpRequest, got {raw!r}")


class HttpValidatorResolver(DeferredResolver):
    """Runs a registered ``customHttp`` validator through the form's HTTP client."""

    kind = "http_validator"
    failure_event = "validator_failed"

    def __init__(
        self,
        config: ValidatorConfig,
        spec: HttpValidatorSpec,
        client: Any,
        messages: MessageResolver,
        *,
        field_path: str = "",
    ) -> None:
        super().__init__(None, spec.debounce_ms, field_path=field_path)
        self.config = config
        self.spec = spec
        self.messages = messages
        self._client = client

    def inputs_key(self, ctx: EvaluationContext) -> Any:
        return (freeze(ctx.field_value), freeze(ctx.form_value))

    async def resolve(self, ctx: EvaluationContext) -> ValidationError | None:
        request = _coerce_request(self.spec.request(ctx, self.config.params))
        try:
            data = await send_request(self._client, request)
        except Exception as exc:
            if self.spec.on_error is None:
                raise
            logger.info(
                "http_validator_request_failed",
                extra={"field_path": self.field_path, "url": request.url, "error": type(exc).__name__},
            )
            return coerce_result(self.spec.on_error(exc, ctx), self.config, self.messages)
        return coerce_result(self.spec.on_success(data, ctx), self.config, self.messages)


def run_pipeline(
    validators: Sequence[ValidatorConfig],
    ctx: EvaluationContext,
    messages: MessageResolver,
    *,
    required: bool,
    is_active: Callable[[ValidatorConfig], bool],
    deferred: Callable[[ValidatorConfig], ValidationError | None],
    functions: Mapping[str, Callable[..., Any]] | None = None,
    required_message: str | None = None,
) -> list[ValidationError]:
    """Collect every failing rule in declaration order.

    ``required`` is the field's effective required state (static prop,
    gated required validators and required logic combined). Its error is
    reported once: at the first declared required validator, or first of all
    when none is declared.
    """
    errors: list[ValidationError] = []
    empty = is_empty(ctx.field_value)
    required_slot = next((config for config in validators if config.type == "required"), None)
    if required and empty and required_slot is None:
        errors.append(messages.error("required", {}, None, required_message))

    for config in validators:
        if config.type == "required":
            if config is required_slot and required and empty:
                errors.append(messages.error("required", {}, config, required_message))
            continue
        if not is_active(config):
            continue
        if config.type in ASYNC_VALIDATOR_TYPES:
            error = deferred(config)
        else:
            error = check_validator(config, ctx, messages, functions)
        if error is not None:
            errors.append(error)
            logger.debug(
                "validation_failed",
                extra={"field_path": ctx.field_path, "kind": error.kind},
            )
    return errors
