"""Declarative form configuration: parsing, normalization and compile-time checks.

Raw configs are plain nested data with the camelCase keys used by form
authors (``fieldPath``, ``validationMessages``, ``customFnConfig``...).
``parse_form_config`` turns them into dataclasses and collects every
configuration problem it finds; ``ConfigurationError`` is raised once with
all of them so a broken form never reaches rendering.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable, Union

from .expressions import (
    ExpressionProgram,
    UnsafeExpressionError,
    compile_expression,
    extract_expression_variables,
    resolve_functions,
)

FIELD_TYPES = {
    "input",
    "select",
    "checkbox",
    "radio",
    "multi-checkbox",
    "textarea",
    "datepicker",
    "slider",
    "toggle",
    "submit",
    "button",
    "group",
    "row",
    "array",
    "page",
    "text",
    "hidden",
}
CONTAINER_TYPES = {"group", "row", "array", "page"}
LAYOUT_TYPES = {"row", "page"}
DISPLAY_ONLY_TYPES = {"submit", "button", "text"}

LOGIC_TYPES = {"hidden", "disabled", "required", "readonly", "derivation"}
VALIDATOR_TYPES = {
    "required",
    "min",
    "max",
    "minLength",
    "maxLength",
    "pattern",
    "email",
    "custom",
    "customAsync",
    "customHttp",
}
OPERATORS = {
    "equals",
    "notEquals",
    "greater",
    "less",
    "greaterOrEqual",
    "lessOrEqual",
    "contains",
    "startsWith",
    "endsWith",
    "matches",
}
SCHEMA_APPLICATION_TYPES = {"apply", "applyWhen", "applyWhenValue", "applyEach"}
TYPE_PREDICATES = {"string", "number", "boolean", "array", "object", "null"}
HTTP_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE"}
EXPRESSION_NAMES = {
    "fieldValue",
    "formValue",
    "fieldPath",
    "rootFormValue",
    "externalData",
    "arrayIndex",
    "arrayPath",
}

DEFAULT_PENDING_VALUE = False
DEFAULT_ASYNC_DEBOUNCE_MS = 0
DEFAULT_HTTP_DEBOUNCE_MS = 300
DEFAULT_CACHE_DURATION_MS = 30000
DEFAULT_DERIVATION_DEBOUNCE_MS = 300

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ConfigIssue:
    kind: str
    path: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "path": self.path, "message": self.message}


class ConfigurationError(ValueError):
    """Raised when a form config cannot be compiled."""

    def __init__(self, issues: list[ConfigIssue]) -> None:
        self.issues = list(issues)
        summary = "; ".join(f"{issue.path}: {issue.message}" for issue in self.issues[:5])
        if len(self.issues) > 5:
            summary += f" (+{len(self.issues) - 5} more)"
        super().__init__(f"invalid form config: {summary}")

    @property
    def kinds(self) -> list[str]:
        return [issue.kind for issue in self.issues]


# -- conditions ---------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class FieldValueCondition:
    field_path: str | None
    operator: str | None
    value: Any = None
    pattern: re.Pattern[str] | None = None
    type: str = "fieldValue"


@dataclass(slots=True, frozen=True)
class FormValueCondition:
    operator: str | None
    value: Any = None
    pattern: re.Pattern[str] | None = None
    type: str = "formValue"


@dataclass(slots=True, frozen=True)
class AndCondition:
    conditions: tuple[Any, ...] = ()
    type: str = "and"


@dataclass(slots=True, frozen=True)
class OrCondition:
    conditions: tuple[Any, ...] = ()
    type: str = "or"


@dataclass(slots=True, frozen=True)
class JavascriptCondition:
    expression: str | None
    program: ExpressionProgram | None = None
    type: str = "javascript"


@dataclass(slots=True, frozen=True)
class CustomCondition:
    expression: str | None
    type: str = "custom"


@dataclass(slots=True, frozen=True)
class AsyncCondition:
    async_function_name: str
    pending_value: bool = DEFAULT_PENDING_VALUE
    depends_on: tuple[str, ...] | None = None
    debounce_ms: int = DEFAULT_ASYNC_DEBOUNCE_MS
    type: str = "async"


@dataclass(slots=True, frozen=True)
class HttpRequestSpec:
    url: str
    method: str = "GET"
    query_params: dict[str, Any] = field(default_factory=dict)
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    evaluate_body_expressions: bool = False
    debounce_ms: int = DEFAULT_HTTP_DEBOUNCE_MS
    cache_duration_ms: int = DEFAULT_CACHE_DURATION_MS
    programs: dict[str, ExpressionProgram] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class HttpCondition:
    http: HttpRequestSpec
    response_expression: str | None = None
    response_program: ExpressionProgram | None = None
    pending_value: bool = DEFAULT_PENDING_VALUE
    type: str = "http"


Condition = Union[
    bool,
    FieldValueCondition,
    FormValueCondition,
    AndCondition,
    OrCondition,
    JavascriptCondition,
    CustomCondition,
    AsyncCondition,
    HttpCondition,
]


# -- field level config -------------------------------------------------------


@dataclass(slots=True)
class ValidatorConfig:
    type: str
    value: Any = None
    expression: str | None = None
    program: ExpressionProgram | None = None
    when: Condition | None = None
    error_message: str | None = None
    validation_messages: dict[str, str] = field(default_factory=dict)
    function_name: str | None = None
    kind: str | None = None
    params: dict[str, Any] = field(default_factory=dict)
    error_params: dict[str, ExpressionProgram] = field(default_factory=dict)
    pattern: re.Pattern[str] | None = None


@dataclass(slots=True)
class LogicConfig:
    type: str
    condition: Condition = True
    error_message: str | None = None
    value: Any = None
    expression: str | None = None
    program: ExpressionProgram | None = None
    function_name: str | None = None
    async_function_name: str | None = None
    http: HttpRequestSpec | None = None
    response_expression: str | None = None
    response_program: ExpressionProgram | None = None
    depends_on: tuple[str, ...] | None = None
    debounce_ms: int = DEFAULT_DERIVATION_DEBOUNCE_MS

    @property
    def deferred(self) -> bool:
        return self.async_function_name is not None or self.http is not None


@dataclass(slots=True)
class SchemaApplicationConfig:
    type: str
    schema: SchemaDefinition
    condition: Condition | None = None
    type_predicate: str | None = None


@dataclass(slots=True)
class SchemaDefinition:
    name: str
    description: str | None = None
    validators: list[ValidatorConfig] = field(default_factory=list)
    logic: list[LogicConfig] = field(default_factory=list)
    sub_schemas: list[SchemaApplicationConfig] = field(default_factory=list)
    path_pattern: str | None = None

    @property
    def broadcasts(self) -> bool:
        return bool(self.path_pattern and self.path_pattern.endswith(".*"))


@dataclass(slots=True)
class FieldDef:
    key: str
    type: str
    validators: list[ValidatorConfig] = field(default_factory=list)
    logic: list[LogicConfig] = field(default_factory=list)
    schemas: list[SchemaApplicationConfig] = field(default_factory=list)
    fields: list[FieldDef] = field(default_factory=list)
    props: dict[str, Any] = field(default_factory=dict)
    validation_messages: dict[str, str] = field(default_factory=dict)
    value: Any = None
    label: str | None = None
    required: bool = False
    hidden: bool = False
    disabled: bool = False
    readonly: bool = False
    options: list[Any] = field(default_factory=list)
    min: Any = None
    max: Any = None
    col: int | None = None

    @property
    def is_container(self) -> bool:
        return self.type in CONTAINER_TYPES

    @property
    def is_layout(self) -> bool:
        return self.type in LAYOUT_TYPES

    @property
    def has_value(self) -> bool:
        return self.type not in DISPLAY_ONLY_TYPES and self.type not in LAYOUT_TYPES


@dataclass(slots=True)
class HttpValidatorSpec:
    request: Callable[..., Any]
    on_success: Callable[..., Any]
    on_error: Callable[..., Any] | None = None
    debounce_ms: int = DEFAULT_HTTP_DEBOUNCE_MS


@dataclass(slots=True)
class CustomFnConfig:
    custom_functions: dict[str, Callable[..., Any]] = field(default_factory=dict)
    async_conditions: dict[str, Callable[..., Any]] = field(default_factory=dict)
    async_derivations: dict[str, Callable[..., Any]] = field(default_factory=dict)
    validators: dict[str, Callable[..., Any]] = field(default_factory=dict)
    async_validators: dict[str, Callable[..., Any]] = field(default_factory=dict)
    http_validators: dict[str, HttpValidatorSpec] = field(default_factory=dict)

    def merged(self, other: CustomFnConfig | None) -> CustomFnConfig:
        if other is None:
            return self
        return CustomFnConfig(
            custom_functions={**self.custom_functions, **other.custom_functions},
            async_conditions={**self.async_conditions, **other.async_conditions},
            async_derivations={**self.async_derivations, **other.async_derivations},
            validators={**self.validators, **other.validators},
            async_validators={**self.async_validators, **other.async_validators},
            http_validators={**self.http_validators, **other.http_validators},
        )


@dataclass(slots=True)
class FormConfig:
    fields: list[FieldDef]
    schemas: dict[str, SchemaDefinition] = field(default_factory=dict)
    default_props: dict[str, Any] = field(default_factory=dict)
    default_validation_messages: dict[str, str] = field(default_factory=dict)
    custom_fn_config: CustomFnConfig = field(default_factory=CustomFnConfig)
    external_data: dict[str, Any] = field(default_factory=dict)


def _get(raw: Mapping[str, Any], camel: str, default: Any = None) -> Any:
    if camel in raw:
        return raw[camel]
    snake = re.sub(r"(?<!^)(?=[A-Z])", "_", camel).lower()
    return raw.get(snake, default)


def coerce_custom_fn_config(raw: Any) -> CustomFnConfig:
    if raw is None:
        return CustomFnConfig()
    if isinstance(raw, CustomFnConfig):
        return raw
    if not isinstance(raw, Mapping):
        raise TypeError("customFnConfig must be a mapping")
    http_validators = {
        str(name): _coerce_http_validator(spec)
        for name, spec in dict(_get(raw, "httpValidators") or {}).items()
    }
    return CustomFnConfig(
        custom_functions=dict(_get(raw, "customFunctions") or {}),
        async_conditions=dict(_get(raw, "asyncConditions") or {}),
        async_derivations=dict(_get(raw, "asyncDerivations") or {}),
        validators=dict(_get(raw, "validators") or {}),
        async_validators=dict(_get(raw, "asyncValidators") or {}),
        http_validators=http_validators,
    )


def _coerce_http_validator(spec: Any) -> HttpValidatorSpec:
    if isinstance(spec, HttpValidatorSpec):
        return spec
    if isinstance(spec, Mapping):
        return HttpValidatorSpec(
            request=_get(spec, "request"),
            on_success=_get(spec, "onSuccess"),
            on_error=_get(spec, "onError"),
            debounce_ms=int(_get(spec, "debounceMs", DEFAULT_HTTP_DEBOUNCE_MS)),
        )
    return HttpValidatorSpec(
        request=getattr(spec, "request"),
        on_success=getattr(spec, "on_success"),
        on_error=getattr(spec, "on_error", None),
        debounce_ms=int(getattr(spec, "debounce_ms", DEFAULT_HTTP_DEBOUNCE_MS)),
    )


class _ConfigCompiler:
    def __init__(self, functions: CustomFnConfig) -> None:
        self.functions = functions
        self.expression_functions = resolve_functions(functions.custom_functions)
        self.issues: list[ConfigIssue] = []
        self.schemas: dict[str, SchemaDefinition] = {}
        self._raw_schemas: dict[str, Mapping[str, Any]] = {}
        self._resolving: list[str] = []

    def issue(self, kind: str, path: str, message: str) -> None:
        self.issues.append(ConfigIssue(kind=kind, path=path, message=message))

    # expressions

    def compile_program(
        self,
        expression: Any,
        path: str,
        allowed_names: set[str] = EXPRESSION_NAMES,
    ) -> ExpressionProgram | None:
        if not isinstance(expression, str) or not expression.strip():
            self.issue("malformed_expression", path, "expression must be a non-empty string")
            return None
        try:
            program = compile_expression(expression, functions=self.expression_functions)
        except UnsafeExpressionError as exc:
            self.issue("malformed_expression", path, f"{exc} in '{expression}'")
            return None
        unknown = extract_expression_variables(expression) - allowed_names - set(self.expression_functions)
        if unknown:
            self.issue(
                "malformed_expression",
                path,
                f"unknown name(s) {', '.join(sorted(unknown))} in '{expression}'",
            )
            return None
        return program

    def compile_regex(self, raw: Any, path: str) -> re.Pattern[str] | None:
        if isinstance(raw, re.Pattern):
            return raw
        try:
            return re.compile(str(raw))
        except re.error as exc:
            self.issue("malformed_expression", path, f"invalid regular expression: {exc}")
            return None

    # conditions

    def condition(self, raw: Any, path: str) -> Condition:
        if isinstance(raw, bool):
            return raw
        if isinstance(raw, (FieldValueCondition, FormValueCondition, AndCondition, OrCondition,
                            JavascriptCondition, CustomCondition, AsyncCondition, HttpCondition)):
            return raw
        if not isinstance(raw, Mapping):
            self.issue("invalid_condition", path, "condition must be a boolean or a mapping")
            return False

        kind = raw.get("type")
        if kind in {"fieldValue", "formValue"}:
            operator = raw.get("operator")
            if operator not in OPERATORS:
                self.issue("invalid_condition", path, f"unknown operator '{operator}'")
            pattern = self.compile_regex(raw.get("value"), path) if operator == "matches" else None
            if kind == "fieldValue":
                field_path = _get(raw, "fieldPath")
                if not field_path:
                    self.issue("invalid_condition", path, "fieldValue condition requires fieldPath")
                return FieldValueCondition(field_path=field_path, operator=operator, value=raw.get("value"), pattern=pattern)
            return FormValueCondition(operator=operator, value=raw.get("value"), pattern=pattern)

        if kind in {"and", "or"}:
            items = raw.get("conditions") or []
            if not isinstance(items, (list, tuple)):
                self.issue("invalid_condition", path, f"'{kind}' requires a list of conditions")
                items = []
            compiled = tuple(self.condition(item, f"{path}.conditions[{index}]") for index, item in enumerate(items))
            return AndCondition(conditions=compiled) if kind == "and" else OrCondition(conditions=compiled)

        if kind == "javascript":
            expression = raw.get("expression")
            return JavascriptCondition(expression=expression, program=self.compile_program(expression, path))

        if kind == "custom":
            name = raw.get("expression") or _get(raw, "functionName")
            if name not in self.functions.custom_functions:
                self.issue("unregistered_function", path, f"custom function '{name}' is not registered")
            return CustomCondition(expression=name)

        if kind == "async":
            name = _get(raw, "asyncFunctionName")
            if name not in self.functions.async_conditions:
                self.issue("unregistered_function", path, f"async condition '{name}' is not registered")
            depends_on = _get(raw, "dependsOn")
            return AsyncCondition(
                async_function_name=str(name),
                pending_value=bool(_get(raw, "pendingValue", DEFAULT_PENDING_VALUE)),
                depends_on=tuple(depends_on) if depends_on is not None else None,
                debounce_ms=int(_get(raw, "debounceMs", DEFAULT_ASYNC_DEBOUNCE_MS)),
            )

        if kind == "http":
            return self.http_condition(raw, path)

        self.issue("invalid_condition", path, f"unknown condition type '{kind}'")
        return False

    def http_condition(self, raw: Mapping[str, Any], path: str) -> HttpCondition:
        spec = raw.get("http")
        if not isinstance(spec, Mapping) or not spec.get("url"):
            self.issue("invalid_condition", path, "http condition requires http.url")
            spec = {"url": ""}
        request = self.http_request(spec, f"{path}.http")
        response_expression = _get(raw, "responseExpression")
        response_program = None
        if response_expression is not None:
            response_program = self.compile_program(
                response_expression,
                f"{path}.responseExpression",
                allowed_names={"response"},
            )
        return HttpCondition(
            http=request,
            response_expression=response_expression,
            response_program=response_program,
            pending_value=bool(_get(raw, "pendingValue", DEFAULT_PENDING_VALUE)),
        )

    def http_request(self, spec: Mapping[str, Any], path: str) -> HttpRequestSpec:
        method = str(spec.get("method") or "GET").upper()
        if method not in HTTP_METHODS:
            self.issue("invalid_condition", path, f"unsupported HTTP method '{method}'")
        query_params = dict(_get(spec, "queryParams") or {})
        evaluate_body = bool(_get(spec, "evaluateBodyExpressions", False))
        programs: dict[str, ExpressionProgram] = {}
        for name, expression in query_params.items():
            if isinstance(expression, str):
                program = self.compile_program(expression, f"{path}.queryParams.{name}")
                if program is not None:
                    programs[f"query.{name}"] = program
        body = spec.get("body")
        if evaluate_body and body is not None:
            for body_path, expression in _iter_string_leaves(body):
                program = self.compile_program(expression, f"{path}.body.{body_path}")
                if program is not None:
                    programs[f"body.{body_path}"] = program
        return HttpRequestSpec(
            url=str(spec.get("url") or ""),
            method=method,
            query_params=query_params,
            body=body,
            headers={str(k): str(v) for k, v in dict(spec.get("headers") or {}).items()},
            evaluate_body_expressions=evaluate_body,
            debounce_ms=int(_get(spec, "debounceMs", DEFAULT_HTTP_DEBOUNCE_MS)),
            cache_duration_ms=int(_get(spec, "cacheDurationMs", DEFAULT_CACHE_DURATION_MS)),
            programs=programs,
        )

    # validators and logic

    def validator(self, raw: Any, path: str) -> ValidatorConfig | None:
        if not isinstance(raw, Mapping) or raw.get("type") not in VALIDATOR_TYPES:
            kind = raw.get("type") if isinstance(raw, Mapping) else raw
            self.issue("invalid_validator", path, f"unknown validator type '{kind}'")
            return None
        kind = raw["type"]
        config = ValidatorConfig(
            type=kind,
            value=raw.get("value"),
            expression=raw.get("expression"),
            error_message=_get(raw, "errorMessage"),
            validation_messages=dict(_get(raw, "validationMessages") or {}),
            function_name=_get(raw, "functionName"),
            kind=raw.get("kind"),
            params=dict(raw.get("params") or {}),
        )
        if raw.get("when") is not None:
            config.when = self.condition(raw["when"], f"{path}.when")

        if kind in {"min", "max", "minLength", "maxLength"}:
            if config.expression is not None:
                config.program = self.compile_program(config.expression, f"{path}.expression")
            elif not isinstance(config.value, (int, float)) or isinstance(config.value, bool):
                self.issue("invalid_validator", path, f"'{kind}' validator requires a numeric value")
        elif kind == "pattern":
            if config.expression is not None:
                config.program = self.compile_program(config.expression, f"{path}.expression")
            elif config.value is None:
                self.issue("invalid_validator", path, "'pattern' validator requires a value")
            else:
                config.pattern = self.compile_regex(config.value, f"{path}.value")
        elif kind == "custom":
            if config.expression is not None:
                config.program = self.compile_program(config.expression, f"{path}.expression")
                for param, expression in dict(_get(raw, "errorParams") or {}).items():
                    program = self.compile_program(expression, f"{path}.errorParams.{param}")
                    if program is not None:
                        config.error_params[param] = program
            elif config.function_name is None:
                self.issue("invalid_validator", path, "custom validator requires expression or functionName")
            elif config.function_name not in self.functions.validators:
                self.issue("unregistered_function", path, f"validator '{config.function_name}' is not registered")
        elif kind == "customAsync":
            if config.function_name not in self.functions.async_validators:
                self.issue(
                    "unregistered_function", path, f"async validator '{config.function_name}' is not registered"
                )
        elif kind == "customHttp":
            if config.function_name not in self.functions.http_validators:
                self.issue(
                    "unregistered_function", path, f"http validator '{config.function_name}' is not registered"
                )
        return config

    def logic(self, raw: Any, path: str) -> LogicConfig | None:
        if not isinstance(raw, Mapping) or raw.get("type") not in LOGIC_TYPES:
            kind = raw.get("type") if isinstance(raw, Mapping) else raw
            self.issue("invalid_logic", path, f"unknown logic type '{kind}'")
            return None
        condition = raw.get("condition", True)
        config = LogicConfig(
            type=raw["type"],
            condition=self.condition(condition if condition is not None else True, f"{path}.condition"),
            error_message=_get(raw, "errorMessage"),
            value=raw.get("value"),
            expression=raw.get("expression"),
            function_name=_get(raw, "functionName"),
        )
        if config.type != "derivation":
            return config
        if _get(raw, "asyncFunctionName") is not None or raw.get("http") is not None:
            self.deferred_derivation(raw, config, path)
        elif config.expression is not None:
            config.program = self.compile_program(config.expression, f"{path}.expression")
        elif config.function_name is not None:
            if config.function_name not in self.functions.custom_functions:
                self.issue(
                    "unregistered_function", path, f"custom function '{config.function_name}' is not registered"
                )
        elif "value" not in raw:
            self.issue(
                "invalid_logic",
                path,
                "derivation requires value, expression, functionName, asyncFunctionName or http",
            )
        return config

    def deferred_derivation(self, raw: Mapping[str, Any], config: LogicConfig, path: str) -> None:
        name = _get(raw, "asyncFunctionName")
        if name is not None:
            depends_on = _get(raw, "dependsOn")
            if depends_on is not None:
                config.depends_on = tuple(str(item) for item in depends_on)
            config.async_function_name = str(name)
            config.debounce_ms = int(_get(raw, "debounceMs", DEFAULT_DERIVATION_DEBOUNCE_MS))
            if name not in self.functions.async_derivations:
                self.issue("unregistered_function", path, f"async derivation '{name}' is not registered")
            return
        spec = raw.get("http")
        if not isinstance(spec, Mapping) or not spec.get("url"):
            self.issue("invalid_logic", path, "http derivation requires http.url")
            spec = {"url": ""}
        config.http = self.http_request(spec, f"{path}.http")
        config.debounce_ms = config.http.debounce_ms
        config.response_expression = _get(raw, "responseExpression")
        if config.response_expression is None:
            self.issue("invalid_logic", path, "http derivation requires responseExpression")
            return
        config.response_program = self.compile_program(
            config.response_expression,
            f"{path}.responseExpression",
            allowed_names={"response"},
        )

    # schemas

    def register_schemas(self, raw_schemas: Any) -> None:
        for index, raw in enumerate(raw_schemas or []):
            name = raw.get("name") if isinstance(raw, Mapping) else None
            if not name:
                self.issue("invalid_schema", f"schemas[{index}]", "schema definition requires a name")
                continue
            if name in self._raw_schemas:
                self.issue("invalid_schema", f"schemas[{index}]", f"duplicate schema name '{name}'")
                continue
            self._raw_schemas[name] = raw
        for name in self._raw_schemas:
            self.schema_by_name(name, f"schemas.{name}")

    def schema_by_name(self, name: str, path: str) -> SchemaDefinition | None:
        if name in self.schemas:
            return self.schemas[name]
        raw = self._raw_schemas.get(name)
        if raw is None:
            self.issue("unresolved_schema", path, f"schema '{name}' is not defined")
            return None
        if name in self._resolving:
            cycle = " -> ".join([*self._resolving, name])
            self.issue("invalid_schema", path, f"schema cycle {cycle}")
            return None
        self._resolving.append(name)
        try:
            definition = self.schema_definition(raw, f"schemas.{name}")
        finally:
            self._resolving.pop()
        self.schemas[name] = definition
        return definition

    def schema_definition(self, raw: Mapping[str, Any], path: str) -> SchemaDefinition:
        definition = SchemaDefinition(
            name=str(raw.get("name") or "<inline>"),
            description=raw.get("description"),
            path_pattern=_get(raw, "pathPattern"),
        )
        definition.validators = [
            item
            for index, entry in enumerate(raw.get("validators") or [])
            if (item := self.validator(entry, f"{path}.validators[{index}]")) is not None
        ]
        definition.logic = [
            item
            for index, entry in enumerate(raw.get("logic") or [])
            if (item := self.logic(entry, f"{path}.logic[{index}]")) is not None
        ]
        definition.sub_schemas = [
            item
            for index, entry in enumerate(_get(raw, "subSchemas") or [])
            if (item := self.schema_application(entry, f"{path}.subSchemas[{index}]")) is not None
        ]
        return definition

    def schema_application(self, raw: Any, path: str) -> SchemaApplicationConfig | None:
        if isinstance(raw, str):
            raw = {"type": "apply", "schema": raw}
        if not isinstance(raw, Mapping):
            self.issue("invalid_schema", path, "schema application must be a name or mapping")
            return None
        if "type" not in raw and "name" in raw:
            raw = {"type": "apply", "schema": raw}
        kind = raw.get("type", "apply")
        if kind not in SCHEMA_APPLICATION_TYPES:
            self.issue("invalid_schema", path, f"unknown schema application type '{kind}'")
            return None
        target = raw.get("schema")
        if isinstance(target, str):
            schema = self.schema_by_name(target, path)
        elif isinstance(target, Mapping):
            schema = self.schema_definition(target, f"{path}.schema")
        else:
            self.issue("invalid_schema", path, "schema application requires a schema name or definition")
            schema = None
        if schema is None:
            return None

        application = SchemaApplicationConfig(type=kind, schema=schema)
        if kind == "applyWhen":
            if raw.get("condition") is None:
                self.issue("invalid_schema", path, "applyWhen requires a condition")
            else:
                application.condition = self.condition(raw["condition"], f"{path}.condition")
        elif kind == "applyWhenValue":
            predicate = _get(raw, "typePredicate")
            if predicate not in TYPE_PREDICATES and predicate not in self.functions.custom_functions:
                self.issue(
                    "unregistered_function",
                    path,
                    f"type predicate '{predicate}' is neither a built-in type nor a registered function",
                )
            application.type_predicate = predicate
        return application

    # fields

    def fields(self, raw_fields: Any, path: str, seen: set[str]) -> list[FieldDef]:
        if not isinstance(raw_fields, (list, tuple)):
            self.issue("invalid_field", path or "fields", "fields must be a list")
            return []
        result = []
        for index, raw in enumerate(raw_fields):
            compiled = self.field(raw, path, index, seen)
            if compiled is not None:
                result.append(compiled)
        return result

    def field(self, raw: Any, parent_path: str, index: int, seen: set[str]) -> FieldDef | None:
        location = f"{parent_path}[{index}]" if parent_path else f"fields[{index}]"
        if not isinstance(raw, Mapping):
            self.issue("invalid_field", location, "field definition must be a mapping")
            return None
        kind = raw.get("type")
        key = raw.get("key")
        if kind not in FIELD_TYPES:
            self.issue("invalid_field", location, f"unknown field type '{kind}'")
            return None
        if not key or not isinstance(key, str):
            self.issue("invalid_field", location, "field requires a string key")
            return None
        if "." in key:
            self.issue("invalid_field", location, f"field key '{key}' must not contain '.'")
        if key in seen:
            self.issue("duplicate_key", location, f"duplicate key '{key}' in the same scope")
        seen.add(key)

        path = f"{parent_path}.{key}" if parent_path else key
        field_def = FieldDef(
            key=key,
            type=kind,
            props=dict(raw.get("props") or {}),
            validation_messages=dict(_get(raw, "validationMessages") or {}),
            value=raw.get("value"),
            label=raw.get("label"),
            required=bool(raw.get("required", False)),
            hidden=bool(raw.get("hidden", False)),
            disabled=bool(raw.get("disabled", False)),
            readonly=bool(raw.get("readonly", False)),
            options=list(raw.get("options") or []),
            min=raw.get("min"),
            max=raw.get("max"),
            col=raw.get("col"),
        )
        field_def.validators = [
            item
            for position, entry in enumerate(raw.get("validators") or [])
            if (item := self.validator(entry, f"{path}.validators[{position}]")) is not None
        ]
        # min/max field shorthands behave like validators declared first
        shorthands = [
            ValidatorConfig(type=bound, value=raw[bound])
            for bound in ("min", "max")
            if isinstance(raw.get(bound), (int, float)) and not isinstance(raw.get(bound), bool)
        ]
        field_def.validators = shorthands + field_def.validators
        field_def.logic = [
            item
            for position, entry in enumerate(raw.get("logic") or [])
            if (item := self.logic(entry, f"{path}.logic[{position}]")) is not None
        ]
        field_def.schemas = [
            item
            for position, entry in enumerate(raw.get("schemas") or [])
            if (item := self.schema_application(entry, f"{path}.schemas[{position}]")) is not None
        ]
        for position, application in enumerate(field_def.schemas):
            if application.type == "applyEach" and kind != "array":
                self.issue("invalid_schema", f"{path}.schemas[{position}]", "applyEach requires an array field")
        if kind in CONTAINER_TYPES:
            # row/page children share the parent's key scope
            child_seen = seen if kind in LAYOUT_TYPES else set()
            field_def.fields = self.fields(raw.get("fields") or [], path, child_seen)
        elif raw.get("fields"):
            self.issue("invalid_field", location, f"'{kind}' fields cannot contain nested fields")
        return field_def


def _iter_string_leaves(value: Any, prefix: str = ""):
    if isinstance(value, str):
        yield prefix, value
    elif isinstance(value, Mapping):
        for key, item in value.items():
            yield from _iter_string_leaves(item, f"{prefix}.{key}" if prefix else str(key))


def _compile(
    raw: Mapping[str, Any],
    custom_fn_config: CustomFnConfig | Mapping[str, Any] | None,
) -> tuple[FormConfig | None, list[ConfigIssue]]:
    if not isinstance(raw, Mapping):
        return None, [ConfigIssue("invalid_field", "", "form config must be a mapping")]
    functions = coerce_custom_fn_config(_get(raw, "customFnConfig")).merged(
        coerce_custom_fn_config(custom_fn_config) if custom_fn_config is not None else None
    )
    compiler = _ConfigCompiler(functions)
    compiler.register_schemas(raw.get("schemas"))
    fields = compiler.fields(raw.get("fields") or [], "", set())
    config = FormConfig(
        fields=fields,
        schemas=compiler.schemas,
        default_props=dict(_get(raw, "defaultProps") or {}),
        default_validation_messages=dict(_get(raw, "defaultValidationMessages") or {}),
        custom_fn_config=functions,
        external_data=dict(_get(raw, "externalData") or {}),
    )
    return config, compiler.issues


def parse_form_config(
    raw: Mapping[str, Any],
    custom_fn_config: CustomFnConfig | Mapping[str, Any] | None = None,
) -> FormConfig:
    """Compile a raw form config, raising ``ConfigurationError`` on any issue."""
    config, issues = _compile(raw, custom_fn_config)
    if issues or config is None:
        logger.warning(
            "config_invalid",
            extra={"issue_count": len(issues), "kinds": sorted({issue.kind for issue in issues})},
        )
        raise ConfigurationError(issues)
    return config


def validate_form_config(
    raw: Mapping[str, Any],
    custom_fn_config: CustomFnConfig | Mapping[str, Any] | None = None,
) -> list[ConfigIssue]:
    """Return every configuration issue without raising."""
    _, issues = _compile(raw, custom_fn_config)
    return issues


def parse_condition(
    raw: Any,
    custom_fn_config: CustomFnConfig | Mapping[str, Any] | None = None,
    *,
    strict: bool = False,
) -> Condition:
    """Compile a single condition.

    With ``strict`` any issue raises ``ConfigurationError``; otherwise
    unknown function names are tolerated so ad-hoc evaluation can still
    report them at call time.
    """
    compiler = _ConfigCompiler(coerce_custom_fn_config(custom_fn_config))
    condition = compiler.condition(raw, "condition")
    issues = compiler.issues if strict else [i for i in compiler.issues if i.kind != "unregistered_function"]
    if issues:
        raise ConfigurationError(issues)
    return condition
