"""Runtime form: a tree of field nodes with reactive state.

``DynamicForm`` compiles a config once, holds the whole form value in a
single signal and builds one ``FieldNode`` per field definition (plus one
per array item). Every piece of per-field state is a ``Computed`` over that
signal, so reading ``form.field("a").hidden`` always reflects the latest
value without any explicit refresh step. Async and HTTP conditions feed
their results back through resolver signals.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Iterator, Mapping
from dataclasses import replace
from functools import partial
from typing import Any, Callable

import httpx

from .async_conditions import NO_RESULT, AsyncConditionResolver, DeferredResolver
from .conditions import ConditionEvaluationError, EvaluationContext, evaluate_condition, get_path, iter_deferred, split_path
from .config import (
    AsyncCondition,
    Condition,
    CustomFnConfig,
    FieldDef,
    FormConfig,
    HttpCondition,
    LogicConfig,
    ValidatorConfig,
    coerce_custom_fn_config,
    parse_form_config,
)
from .derivations import AsyncDerivationResolver, HttpDerivationResolver
from .expressions import resolve_functions
from .http_conditions import DEFAULT_HTTP_TIMEOUT_SECONDS, HttpConditionCache, HttpConditionResolver
from .logic import Gate, apply_multiple_logic, derive_value
from .schemas import apply_schema
from .signals import Computed, Effect, Signal, batch, untracked
from .validation import (
    ASYNC_VALIDATOR_TYPES,
    AsyncValidatorResolver,
    HttpValidatorResolver,
    MessageResolver,
    ValidationError,
    run_pipeline,
)

EVALUATION_ERROR_POLICIES = ("raise", "false")
STATE_KINDS = ("hidden", "disabled", "required", "readonly")

logger = logging.getLogger(__name__)


def set_path(root: Any, parts: list[str], value: Any) -> Any:
    """Return a copy of ``root`` with ``value`` written at ``parts``."""
    if not parts:
        return value
    head, rest = parts[0], parts[1:]
    if isinstance(root, list) and head.isdigit():
        items = list(root)
        index = int(head)
        while len(items) <= index:
            items.append(None)
        items[index] = set_path(items[index], rest, value)
        return items
    base = dict(root) if isinstance(root, Mapping) else {}
    base[head] = set_path(base.get(head), rest, value)
    return base


def merge_values(base: Any, patch: Any) -> Any:
    if isinstance(base, Mapping) and isinstance(patch, Mapping):
        merged = dict(base)
        for key, value in patch.items():
            merged[key] = merge_values(base.get(key), value)
        return merged
    return copy.deepcopy(patch)


def default_value(fields: list[FieldDef]) -> dict[str, Any]:
    value: dict[str, Any] = {}
    for field_def in fields:
        if field_def.is_layout:
            value.update(default_value(field_def.fields))
        elif field_def.type == "group":
            value[field_def.key] = merge_values(default_value(field_def.fields), field_def.value or {})
        elif field_def.type == "array":
            value[field_def.key] = copy.deepcopy(field_def.value) if isinstance(field_def.value, list) else []
        elif field_def.has_value:
            value[field_def.key] = copy.deepcopy(field_def.value)
    return value


class FieldNode:
    """Reactive state for one field, container or array item."""

    def __init__(
        self,
        form: DynamicForm,
        field_def: FieldDef,
        parent: FieldNode | None,
        *,
        index: int | None = None,
    ) -> None:
        self.form = form
        self.field_def = field_def
        self.parent = parent
        self.key = str(index) if index is not None else field_def.key
        self.index: Signal[int] | None = Signal(index, name="index") if index is not None else None
        self.children: list[FieldNode] = []
        self.items: Signal[list[FieldNode]] | None = None
        self.messages = MessageResolver(field_def.validation_messages, form.config.default_validation_messages)
        self.disposed = False

        self._state_sources: dict[str, list[Callable[[], bool]]] = {kind: [] for kind in STATE_KINDS}
        self._required_messages: list[tuple[Callable[[], bool], str]] = []
        self._validators: list[ValidatorConfig] = []
        self._gates: dict[int, Gate | None] = {}
        self._condition_resolvers: dict[int, DeferredResolver] = {}
        self._validator_resolvers: dict[int, DeferredResolver] = {}
        self._derivation_resolvers: list[DeferredResolver] = []
        self._effects: list[Effect] = []
        self._item_schemas: list[Callable[[FieldNode], None]] = []

        label = self.path
        self.context: Computed[EvaluationContext] = Computed(self._build_context, name=f"context:{label}")
        self.hidden: Computed[bool] = Computed(partial(self._state, "hidden"), name=f"hidden:{label}")
        self.disabled: Computed[bool] = Computed(partial(self._state, "disabled"), name=f"disabled:{label}")
        self.required: Computed[bool] = Computed(partial(self._state, "required"), name=f"required:{label}")
        self.readonly: Computed[bool] = Computed(partial(self._state, "readonly"), name=f"readonly:{label}")
        self.errors: Computed[list[ValidationError]] = Computed(self._errors, name=f"errors:{label}")
        self.pending: Computed[bool] = Computed(self._pending, name=f"pending:{label}")

    # structure

    @property
    def is_item(self) -> bool:
        return self.index is not None

    @property
    def is_array(self) -> bool:
        return self.field_def.type == "array" and not self.is_item

    @property
    def is_layout(self) -> bool:
        return self.field_def.is_layout and not self.is_item

    def _segments(self, tracked: bool) -> list[str]:
        parts = self.parent._segments(tracked) if self.parent is not None else []
        if self.index is not None:
            return [*parts, str(self.index() if tracked else self.index.peek())]
        if self.field_def.is_layout:
            return parts
        return [*parts, self.key]

    @property
    def path(self) -> str:
        return ".".join(self._segments(tracked=False))

    def _item_scope(self) -> FieldNode | None:
        node: FieldNode | None = self
        while node is not None:
            if node.is_item:
                return node
            node = node.parent
        return None

    def build(self) -> None:
        if self.field_def.is_container and not self.is_array:
            for child_def in self.field_def.fields:
                child = FieldNode(self.form, child_def, self)
                self.children.append(child)
                child.build()
        if not self.is_item:
            self._install_rules()
        if self.is_array:
            self.items = Signal([], name=f"items:{self.path}")
            self._effects.append(Effect(self._reconcile_items, name=f"items:{self.path}"))

    def _install_rules(self) -> None:
        apply_multiple_logic(self.field_def.logic, self)
        for validator in self.field_def.validators:
            self.add_validator(validator)
        for application in self.field_def.schemas:
            apply_schema(application, self)

    def iter_nodes(self) -> Iterator[FieldNode]:
        yield self
        for child in self.children:
            yield from child.iter_nodes()
        if self.items is not None:
            for item in self.items.peek():
                yield from item.iter_nodes()

    # values

    def value(self) -> Any:
        return get_path(self.form.value_signal(), ".".join(self._segments(tracked=True)))

    def _build_context(self) -> EvaluationContext:
        root = self.form.value_signal()
        segments = self._segments(tracked=True)
        item = self._item_scope()
        array_index = None
        array_path = None
        form_value = root
        if item is not None:
            item_segments = item._segments(tracked=True)
            form_value = get_path(root, ".".join(item_segments))
            array_index = item.index() if item.index is not None else None
            array_path = ".".join(item_segments[:-1])
        return EvaluationContext(
            field_value=get_path(root, ".".join(segments)),
            form_value=form_value,
            field_path=".".join(segments),
            custom_functions=self.form.custom_fn_config.custom_functions,
            logger=logger,
            root_form_value=root,
            array_index=array_index,
            array_path=array_path,
            external_data=self.form.external_data,
            expression_functions=self.form.expression_functions,
        )

    # conditions

    def evaluate(self, condition: Condition) -> bool:
        ctx = self.context()
        try:
            return evaluate_condition(condition, ctx, resolve_deferred=self._read_resolver)
        except ConditionEvaluationError:
            if self.form.evaluation_error_policy == "raise":
                raise
            logger.warning("condition_evaluation_failed", exc_info=True, extra={"field_path": ctx.field_path})
            return False

    def _read_resolver(self, condition: AsyncCondition | HttpCondition) -> bool:
        resolver = self._condition_resolvers.get(id(condition))
        if resolver is None:
            return condition.pending_value
        return bool(resolver.current())

    def track_deferred(self, condition: Condition | None) -> None:
        if condition is None:
            return
        for deferred in iter_deferred(condition):
            if id(deferred) in self._condition_resolvers:
                continue
            resolver = self.form._condition_resolver(deferred, self.path)
            self._condition_resolvers[id(deferred)] = resolver
            self._watch(resolver)

    def _watch(self, resolver: DeferredResolver, active: Callable[[], bool] | None = None) -> None:
        def _feed() -> None:
            if active is not None and not active():
                return
            ctx = self.context()
            untracked(lambda: resolver.update(ctx))

        self.form._register_resolver(resolver, _feed)
        self._effects.append(Effect(_feed, name=f"{resolver.kind}:{self.path}"))

    # logic

    def add_state_source(self, kind: str, source: Callable[[], bool], message: str | None = None) -> None:
        self._state_sources[kind].append(source)
        if kind == "required" and message:
            self._required_messages.append((source, message))

    def add_derivation(self, config: LogicConfig, active: Callable[[], bool]) -> None:
        if config.deferred:
            resolver = self.form._derivation_resolver(config, self.path)
            self._derivation_resolvers.append(resolver)
            self._watch(resolver, active)
            self._effects.append(Effect(partial(self._apply_resolved, resolver), name=f"derive:{self.path}"))
            return

        def _derive() -> None:
            if not active():
                return
            value = derive_value(config, self.context())
            path = self.path
            untracked(lambda: self.form.set_value(path, value))

        self._effects.append(Effect(_derive, name=f"derive:{self.path}"))

    def _apply_resolved(self, resolver: DeferredResolver) -> None:
        if resolver.pending():
            return
        value = resolver.current()
        if value is NO_RESULT:
            return
        path = self.path

        def _write() -> None:
            if self.form.get_value(path) != value:
                self.form.set_value(path, value)

        untracked(_write)

    def _state(self, kind: str) -> bool:
        if kind in {"hidden", "disabled"} and self.parent is not None and getattr(self.parent, kind)():
            return True
        if not self.is_item and getattr(self.field_def, kind):
            return True
        if any(source() for source in self._state_sources[kind]):
            return True
        if kind == "required":
            return any(config.type == "required" and self._is_active(config) for config in self._validators)
        return False

    # validation

    def add_validator(self, config: ValidatorConfig, gate: Gate | None = None) -> None:
        bound = replace(config)
        self._validators.append(bound)
        self._gates[id(bound)] = gate
        self.track_deferred(bound.when)
        if bound.type in ASYNC_VALIDATOR_TYPES:
            resolver = self.form._validator_resolver(bound, self)
            self._validator_resolvers[id(bound)] = resolver
            self._watch(resolver, active=lambda: self._validation_enabled() and self._is_active(bound))

    def _is_active(self, config: ValidatorConfig) -> bool:
        gate = self._gates.get(id(config))
        if gate is not None and not gate():
            return False
        return config.when is None or self.evaluate(config.when)

    def _validation_enabled(self) -> bool:
        return not self.hidden() and not self.disabled()

    def _deferred_error(self, config: ValidatorConfig) -> ValidationError | None:
        resolver = self._validator_resolvers[id(config)]
        if resolver.pending():
            return None
        return resolver.current()

    def _errors(self) -> list[ValidationError]:
        if not self._validation_enabled():
            return []
        required = self.required()
        required_message = next((message for source, message in self._required_messages if source()), None)
        return run_pipeline(
            self._validators,
            self.context(),
            self.messages,
            required=required,
            is_active=self._is_active,
            deferred=self._deferred_error,
            functions=self.form.custom_fn_config.validators,
            required_message=required_message,
        )

    def _pending(self) -> bool:
        if not self._validation_enabled():
            return False
        return any(
            self._validator_resolvers[id(config)].pending()
            for config in self._validators
            if id(config) in self._validator_resolvers and self._is_active(config)
        )

    # arrays

    def add_item_schema(self, install: Callable[[FieldNode], None]) -> None:
        self._item_schemas.append(install)
        if self.items is not None:
            for item in self.items.peek():
                install(item)

    def _build_item(self, index: int) -> FieldNode:
        item = FieldNode(self.form, self.field_def, self, index=index)
        for child_def in self.field_def.fields:
            child = FieldNode(self.form, child_def, item)
            item.children.append(child)
            child.build()
        for install in self._item_schemas:
            install(item)
        return item

    def _item_signal(self) -> Signal[list[FieldNode]]:
        if self.items is None:
            raise TypeError(f"field '{self.path}' is not an array")
        return self.items

    def _reconcile_items(self) -> None:
        value = self.value()
        length = len(value) if isinstance(value, list) else 0
        items_signal = self._item_signal()
        items = items_signal.peek()
        if len(items) == length:
            return

        def _resize() -> list[FieldNode]:
            if len(items) < length:
                return [*items, *(self._build_item(index) for index in range(len(items), length))]
            for stale in items[length:]:
                stale.dispose()
            return items[:length]

        items_signal.set(untracked(_resize))

    def insert_item(self, index: int) -> FieldNode:
        items_signal = self._item_signal()
        items = list(items_signal.peek())
        item = untracked(lambda: self._build_item(index))
        items.insert(index, item)
        for position, node in enumerate(items):
            node.index.set(position)
        items_signal.set(items)
        return item

    def remove_item(self, index: int) -> None:
        items_signal = self._item_signal()
        items = list(items_signal.peek())
        removed = items.pop(index)
        removed.dispose()
        for position, node in enumerate(items):
            node.index.set(position)
        items_signal.set(items)

    def dispose(self) -> None:
        if self.disposed:
            return
        self.disposed = True
        for effect in self._effects:
            effect.dispose()
        for resolver in [
            *self._condition_resolvers.values(),
            *self._validator_resolvers.values(),
            *self._derivation_resolvers,
        ]:
            self.form._unregister_resolver(resolver)
        for child in self.children:
            child.dispose()
        if self.items is not None:
            for item in self.items.peek():
                item.dispose()
        for cell in (self.context, self.hidden, self.disabled, self.required, self.readonly, self.errors, self.pending):
            cell.dispose()


class FieldState:
    """Read-only view of one field's live state."""

    def __init__(self, node: FieldNode) -> None:
        self._node = node

    @property
    def path(self) -> str:
        return self._node.path

    @property
    def hidden(self) -> bool:
        return self._node.hidden()

    @property
    def disabled(self) -> bool:
        return self._node.disabled()

    @property
    def required(self) -> bool:
        return self._node.required()

    @property
    def readonly(self) -> bool:
        return self._node.readonly()

    @property
    def errors(self) -> list[ValidationError]:
        return self._node.errors()

    @property
    def pending(self) -> bool:
        return self._node.pending()

    @property
    def valid(self) -> bool:
        return not self.errors and not self.pending

    @property
    def value(self) -> Any:
        return self._node.value()

    def snapshot(self) -> dict[str, Any]:
        return {
            "hidden": self.hidden,
            "disabled": self.disabled,
            "required": self.required,
            "readonly": self.readonly,
            "errors": [error.to_dict() for error in self.errors],
            "value": self.value,
            "pending": self.pending,
        }

    def __repr__(self) -> str:
        return f"FieldState({self.path!r})"


class DynamicForm:
    def __init__(
        self,
        config: FormConfig | Mapping[str, Any],
        *,
        custom_fn_config: CustomFnConfig | Mapping[str, Any] | None = None,
        value: Mapping[str, Any] | None = None,
        http_client: Any = None,
        cache: HttpConditionCache | None = None,
        external_data: Mapping[str, Any] | None = None,
        evaluation_error_policy: str = "raise",
        http_timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ) -> None:
        if evaluation_error_policy not in EVALUATION_ERROR_POLICIES:
            raise ValueError(f"evaluation_error_policy must be one of {', '.join(EVALUATION_ERROR_POLICIES)}")
        if isinstance(config, FormConfig):
            if custom_fn_config is not None:
                config = replace(
                    config,
                    custom_fn_config=config.custom_fn_config.merged(coerce_custom_fn_config(custom_fn_config)),
                )
        else:
            config = parse_form_config(config, custom_fn_config)
        self.config = config
        self.custom_fn_config = config.custom_fn_config
        self.expression_functions = resolve_functions(self.custom_fn_config.custom_functions)
        self.external_data = {**config.external_data, **dict(external_data or {})}
        self.evaluation_error_policy = evaluation_error_policy
        self.cache = cache if cache is not None else HttpConditionCache()
        self.http_timeout = http_timeout
        self._client = http_client
        self._owns_client = False
        self._resolvers: dict[DeferredResolver, Callable[[], None]] = {}

        self._defaults = default_value(config.fields)
        self.value_signal: Signal[dict[str, Any]] = Signal(
            merge_values(self._defaults, dict(value or {})), name="form"
        )
        self.roots: list[FieldNode] = []
        with batch():
            for field_def in config.fields:
                node = FieldNode(self, field_def, None)
                self.roots.append(node)
                node.build()
        logger.info(
            "form_created",
            extra={"field_count": len(config.fields), "resolver_count": len(self._resolvers)},
        )

    # resolvers

    def _http_client(self) -> Any:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.http_timeout)
            self._owns_client = True
        return self._client

    def _condition_resolver(self, condition: AsyncCondition | HttpCondition, field_path: str) -> DeferredResolver:
        if isinstance(condition, HttpCondition):
            return HttpConditionResolver(condition, self._http_client(), self.cache, field_path=field_path)
        function = self.custom_fn_config.async_conditions[condition.async_function_name]
        return AsyncConditionResolver(condition, function, field_path=field_path)

    def _derivation_resolver(self, config: LogicConfig, field_path: str) -> DeferredResolver:
        if config.http is not None:
            return HttpDerivationResolver(config, self._http_client(), self.cache, field_path=field_path)
        function = self.custom_fn_config.async_derivations[config.async_function_name or ""]
        return AsyncDerivationResolver(config, function, field_path=field_path)

    def _validator_resolver(self, config: ValidatorConfig, node: FieldNode) -> DeferredResolver:
        name = config.function_name or ""
        if config.type == "customHttp":
            spec = self.custom_fn_config.http_validators[name]
            return HttpValidatorResolver(config, spec, self._http_client(), node.messages, field_path=node.path)
        function = self.custom_fn_config.async_validators[name]
        return AsyncValidatorResolver(config, function, node.messages, field_path=node.path)

    def _register_resolver(self, resolver: DeferredResolver, feed: Callable[[], None]) -> None:
        self._resolvers[resolver] = feed

    def _unregister_resolver(self, resolver: DeferredResolver) -> None:
        resolver.close()
        self._resolvers.pop(resolver, None)

    # values

    def value(self) -> dict[str, Any]:
        return self.value_signal()

    def get_value(self, path: str) -> Any:
        return get_path(self.value_signal.peek(), path)

    def set_value(self, path: str, value: Any) -> None:
        self.value_signal.set(set_path(self.value_signal.peek(), split_path(path), copy.deepcopy(value)))

    def patch_value(self, patch: Mapping[str, Any]) -> None:
        self.value_signal.set(merge_values(self.value_signal.peek(), patch))

    def reset(self, value: Mapping[str, Any] | None = None) -> None:
        self.value_signal.set(merge_values(self._defaults, dict(value or {})))

    def _array_node(self, path: str) -> FieldNode:
        node = self._find(path)
        if node is None or not node.is_array:
            raise KeyError(f"'{path}' is not an array field")
        return node

    def add_array_item(self, path: str, item: Any = None, index: int | None = None) -> FieldState:
        node = self._array_node(path)
        current = list(get_path(self.value_signal.peek(), node.path) or [])
        position = len(current) if index is None else max(0, min(index, len(current)))
        if item is None:
            item = default_value(node.field_def.fields)
        current.insert(position, copy.deepcopy(item))
        with batch():
            self.set_value(node.path, current)
            created = node.insert_item(position)
        return FieldState(created)

    def remove_array_item(self, path: str, index: int) -> None:
        node = self._array_node(path)
        current = list(get_path(self.value_signal.peek(), node.path) or [])
        if not 0 <= index < len(current):
            raise IndexError(f"no item {index} in '{path}'")
        del current[index]
        with batch():
            self.set_value(node.path, current)
            node.remove_item(index)

    # state

    def _find(self, path: str) -> FieldNode | None:
        return _find_node(self.roots, split_path(path))

    def field(self, path: str) -> FieldState:
        node = self._find(path)
        if node is None:
            raise KeyError(f"no field at '{path}'")
        return FieldState(node)

    def iter_nodes(self) -> Iterator[FieldNode]:
        for root in self.roots:
            yield from root.iter_nodes()

    def fields(self) -> list[FieldState]:
        return [
            FieldState(node)
            for node in self.iter_nodes()
            if not node.is_layout and (node.field_def.has_value or node.is_item or node.field_def.is_container)
        ]

    @property
    def pending(self) -> bool:
        return any(node.pending() for node in self.iter_nodes())

    def errors(self) -> dict[str, list[dict[str, str]]]:
        result: dict[str, list[dict[str, str]]] = {}
        for node in self.iter_nodes():
            errors = node.errors()
            if errors:
                result.setdefault(node.path, []).extend(error.to_dict() for error in errors)
        return result

    @property
    def valid(self) -> bool:
        return not self.pending and not self.errors()

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {state.path: state.snapshot() for state in self.fields()}

    # lifecycle

    async def settle(self, timeout: float | None = None) -> None:
        """Wait until no async or HTTP resolver has work in flight."""

        async def _drain() -> None:
            for resolver, feed in list(self._resolvers.items()):
                if resolver.stalled:
                    untracked(feed)
            while True:
                await asyncio.sleep(0)
                tasks = [
                    resolver.task
                    for resolver in list(self._resolvers)
                    if resolver.task is not None and not resolver.task.done()
                ]
                if not tasks:
                    return
                await asyncio.gather(*tasks, return_exceptions=True)

        if timeout is None:
            await _drain()
        else:
            await asyncio.wait_for(_drain(), timeout)

    async def aclose(self) -> None:
        for resolver in list(self._resolvers):
            resolver.close()
        for root in self.roots:
            root.dispose()
        self._resolvers.clear()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
            self._owns_client = False


def _find_node(nodes: list[FieldNode], parts: list[str]) -> FieldNode | None:
    if not parts:
        return None
    for node in nodes:
        if node.is_layout:
            found = _find_node(node.children, parts)
            if found is not None:
                return found
            continue
        if node.key != parts[0]:
            continue
        rest = parts[1:]
        if not rest:
            return node
        if node.is_array:
            if not rest[0].isdigit() or node.items is None:
                return None
            items = node.items.peek()
            index = int(rest[0])
            if index >= len(items):
                return None
            if len(rest) == 1:
                return items[index]
            return _find_node(items[index].children, rest[1:])
        return _find_node(node.children, rest)
    return None
