from __future__ import annotations

import ast
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable

SENSITIVE_VARIABLE_MARKERS = ("password", "secret", "token", "key", "credential", "auth")

logger = logging.getLogger(__name__)


def _contains(container: Any, item: Any) -> bool:
    if container is None:
        return False
    try:
        return item in container
    except TypeError:
        return False


def _startswith(value: Any, prefix: Any) -> bool:
    return isinstance(value, str) and value.startswith(str(prefix))


def _endswith(value: Any, suffix: Any) -> bool:
    return isinstance(value, str) and value.endswith(str(suffix))


def _lower(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value


def _upper(value: Any) -> Any:
    return value.upper() if isinstance(value, str) else value


def _length(value: Any) -> int:
    if value is None:
        return 0
    return len(value)


ALLOWED_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "abs": abs,
    "ceil": math.ceil,
    "floor": math.floor,
    "len": _length,
    "max": max,
    "min": min,
    "round": round,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "contains": _contains,
    "startswith": _startswith,
    "endswith": _endswith,
    "lower": _lower,
    "upper": _upper,
}

CONSTANT_ALIASES: dict[str, Any] = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": None,
    "True": True,
    "False": False,
    "None": None,
}

ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.BinOp,
    ast.UnaryOp,
    ast.Compare,
    ast.IfExp,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.List,
    ast.Tuple,
    ast.Attribute,
    ast.Subscript,
    ast.Slice,
    ast.And,
    ast.Or,
    ast.Not,
    ast.Add,
    ast.Sub,
    ast.Mult,
    ast.Div,
    ast.FloorDiv,
    ast.Mod,
    ast.USub,
    ast.UAdd,
    ast.Eq,
    ast.NotEq,
    ast.Gt,
    ast.GtE,
    ast.Lt,
    ast.LtE,
    ast.In,
    ast.NotIn,
    ast.Is,
    ast.IsNot,
    ast.Call,
)


class UnsafeExpressionError(ValueError):
    """Raised when the expression includes unsafe syntax."""


@dataclass(slots=True, frozen=True)
class ExpressionProgram:
    """Validated, compiled expression that can be reused safely."""

    source: str
    code: Any


class ValueView:
    """Read-only view over a mapping that also resolves attribute access.

    Lets expressions such as ``formValue.address.city`` walk nested form
    values. Missing keys resolve to ``None`` instead of raising, and keys
    that collide with mapping method names (``items``, ``keys``) still
    resolve to form values.
    """

    __slots__ = ("_data",)

    def __init__(self, data: Mapping[str, Any]) -> None:
        object.__setattr__(self, "_data", data)

    def __getattribute__(self, name: str) -> Any:
        if name.startswith("_"):
            return object.__getattribute__(self, name)
        return wrap_value(object.__getattribute__(self, "_data").get(name))

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("expression values are read-only")

    def __getitem__(self, key: str) -> Any:
        return wrap_value(self._data[key])

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __eq__(self, other: Any) -> bool:
        return dict(self._data) == unwrap_value(other)

    def __bool__(self) -> bool:
        return True

    def __repr__(self) -> str:
        return f"ValueView({self._data!r})"


def wrap_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        return ValueView(value)
    return value


def unwrap_value(value: Any) -> Any:
    if isinstance(value, ValueView):
        return value._data
    if isinstance(value, list):
        return [unwrap_value(item) for item in value]
    return value


def _unwrapping(function: Callable[..., Any]) -> Callable[..., Any]:
    def _call(*args: Any) -> Any:
        return function(*(unwrap_value(arg) for arg in args))

    return _call


class _ReferencedVariableVisitor(ast.NodeVisitor):
    def __init__(self) -> None:
        self.referenced_variables: set[str] = set()

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id not in CONSTANT_ALIASES:
            self.referenced_variables.add(node.id)


def extract_expression_variables(expression: str) -> set[str]:
    tree = ast.parse(expression, mode="eval")
    visitor = _ReferencedVariableVisitor()
    visitor.visit(tree)
    return visitor.referenced_variables


def _validate_ast(tree: ast.AST, allowed_function_names: set[str]) -> None:
    for node in ast.walk(tree):
        if not isinstance(node, ALLOWED_NODES):
            raise UnsafeExpressionError(f"Unsupported expression node: {type(node).__name__}")
        if isinstance(node, ast.Name) and node.id.startswith("_"):
            raise UnsafeExpressionError(f"Name '{node.id}' is not accessible")
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise UnsafeExpressionError(f"Property '{node.attr}' is not accessible")
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in allowed_function_names:
                raise UnsafeExpressionError("Unsupported function call")
            if node.keywords:
                raise UnsafeExpressionError("Keyword arguments are not supported")


def resolve_functions(extra_functions: Mapping[str, Callable[..., Any]] | None = None) -> dict[str, Callable[..., Any]]:
    functions = dict(ALLOWED_FUNCTIONS)
    if extra_functions:
        functions.update({name: _unwrapping(function) for name, function in extra_functions.items()})
    return functions


def compile_expression(
    expression: str,
    functions: Mapping[str, Callable[..., Any]] | None = None,
    extra_functions: Mapping[str, Callable[..., Any]] | None = None,
) -> ExpressionProgram:
    resolved_functions = functions if functions is not None else resolve_functions(extra_functions)
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as exc:
        raise UnsafeExpressionError(f"Invalid expression syntax: {exc.msg}") from exc
    _validate_ast(tree, set(resolved_functions))
    return ExpressionProgram(source=expression, code=compile(tree, "<expression>", "eval"))


def evaluate_program(
    program: ExpressionProgram,
    context: Mapping[str, Any],
    functions: Mapping[str, Callable[..., Any]] | None = None,
    extra_functions: Mapping[str, Callable[..., Any]] | None = None,
) -> Any:
    resolved_functions = functions if functions is not None else resolve_functions(extra_functions)
    scope = {**CONSTANT_ALIASES, **{name: wrap_value(value) for name, value in context.items()}}
    result = eval(program.code, {"__builtins__": {}, **resolved_functions}, scope)
    return unwrap_value(result)


def _contains_sensitive_marker(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in SENSITIVE_VARIABLE_MARKERS)


def safe_snapshot_value(variable_name: str, value: Any) -> Any:
    if _contains_sensitive_marker(variable_name):
        return "<redacted>"

    if value is None or isinstance(value, bool | int | float):
        return value

    if isinstance(value, str):
        return value if len(value) <= 160 else f"{value[:157]}..."

    if isinstance(value, (list, tuple)):
        if len(value) > 10:
            return f"<sequence len={len(value)}>"
        if all(item is None or isinstance(item, bool | int | float | str) for item in value):
            return [safe_snapshot_value(variable_name, item) for item in value]
        return f"<sequence len={len(value)}>"

    if isinstance(value, Mapping):
        return f"<mapping keys={len(value)}>"

    return f"<object type={type(value).__name__}>"
