"""Template resolution and the restricted expression evaluator.

Node configuration may reference run context with ``{{path.to.value}}``
templates, and logic nodes evaluate small boolean/comparison expressions such
as ``sender_phone == '+1555' && priority != 'low'``. Expressions are parsed
with :mod:`ast` and walked against a whitelist; nothing is ever handed to
``eval``.
"""

from __future__ import annotations

import ast
import json
import operator
import re
from functools import lru_cache
from typing import Any, Callable, Iterable, Mapping

from .errors import ExpressionError

MAX_EXPRESSION_LENGTH = 1000

_TEMPLATE_RE = re.compile(r"\{\{([^}]+)\}\}")
_SINGLE_TEMPLATE_RE = re.compile(r"^\{\{([^}]+)\}\}$")
_INDEX_RE = re.compile(r"\[(\d+)\]")

# One pass over the source: string literals are kept verbatim, templates are
# swapped for reference names and JS operators for their Python spelling.
_TOKEN_RE = re.compile(
    r"""('(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")"""
    r"""|\{\{([^}]+)\}\}"""
    r"""|(===|!==|&&|\|\||!(?!=))"""
)
_JS_OPERATORS = {
    "===": "==",
    "!==": "!=",
    "&&": " and ",
    "||": " or ",
    "!": " not ",
}
_JS_LITERALS = {"true": True, "false": False, "null": None, "undefined": None}


# ----------------------------------------------------------------------
# Identifiers
def sanitize_name(name: str) -> str:
    """Turn a user supplied variable name into a safe identifier.

    ``"First Name"`` becomes ``"first_name"`` and ``"1st-value"`` becomes
    ``"_1st_value"``.
    """
    if not name:
        return name
    cleaned = name.strip()
    cleaned = re.sub(r"\s+", "_", cleaned)
    cleaned = re.sub(r"[^a-zA-Z0-9_]", "_", cleaned)
    cleaned = re.sub(r"^(\d)", r"_\1", cleaned)
    cleaned = re.sub(r"_+", "_", cleaned)
    return cleaned.lower()


# ----------------------------------------------------------------------
# Templates
def resolve_path(path: str, data: Mapping[str, Any]) -> Any:
    """Resolve a dotted path such as ``trigger.items[0].name`` against ``data``."""
    current: Any = data
    for part in path.strip().split("."):
        if current is None:
            return None
        key = _INDEX_RE.sub("", part)
        if key:
            current = current.get(key) if isinstance(current, Mapping) else None
        for index in _INDEX_RE.findall(part):
            if not isinstance(current, (list, tuple)):
                return None
            idx = int(index)
            current = current[idx] if idx < len(current) else None
    return current


def resolve_template(template: Any, data: Mapping[str, Any]) -> Any:
    """Substitute ``{{…}}`` references inside ``template``.

    A template that consists of a single reference keeps the referenced
    value's type; mixed templates are rendered to a string.
    """
    if not isinstance(template, str):
        return template

    single = _SINGLE_TEMPLATE_RE.match(template)
    if single:
        return _lookup(single.group(1), data)

    def _render(match: re.Match) -> str:
        value = _lookup(match.group(1), data)
        if value is None:
            return ""
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return str(value)

    return _TEMPLATE_RE.sub(_render, template)


def resolve_config(
    config: Any, data: Mapping[str, Any], skip: Iterable[str] = ()
) -> Any:
    """Deep-resolve templates in ``config``; top-level keys in ``skip`` are left raw."""
    skipped = set(skip)
    if isinstance(config, Mapping):
        return {
            key: value if key in skipped else resolve_config(value, data)
            for key, value in config.items()
        }
    if isinstance(config, list):
        return [resolve_config(item, data) for item in config]
    return resolve_template(config, data)


def _lookup(path: str, data: Mapping[str, Any]) -> Any:
    value = resolve_path(path, data)
    if value is None:
        # Fall back to the flattened scope so ``{{sender_phone}}`` works too.
        value = resolve_path(path, build_scope(data))
    return value


# ----------------------------------------------------------------------
# Scope
def build_scope(data: Mapping[str, Any]) -> dict[str, Any]:
    """Flatten run context into the namespace seen by expressions.

    Every top-level context entry is visible by name, and the public keys of
    every node output are lifted to the top level. Later outputs shadow
    earlier ones because context preserves execution order.
    """
    scope: dict[str, Any] = dict(data)
    for value in data.values():
        if isinstance(value, Mapping):
            for key, inner in value.items():
                if isinstance(key, str) and not key.startswith("_"):
                    scope[key] = inner
    return scope


# ----------------------------------------------------------------------
# Comparison helpers
def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_number(value: Any) -> float | None:
    if _is_number(value):
        return float(value)
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip()) if value.strip() else 0.0
        except ValueError:
            return None
    return None


def loose_equals(left: Any, right: Any) -> bool:
    """Type-coercing equality: ``"1" == 1`` and ``True == "1"`` hold."""
    if left is None or right is None:
        return left is None and right is None
    if type(left) is type(right):
        return left == right
    if isinstance(left, (str, int, float, bool)) and isinstance(
        right, (str, int, float, bool)
    ):
        lnum, rnum = _to_number(left), _to_number(right)
        if lnum is not None and rnum is not None:
            return lnum == rnum
        return str(left) == str(right)
    return left == right


def _ordered(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(left: Any, right: Any) -> bool:
        if _is_number(left) != _is_number(right):
            lnum, rnum = _to_number(left), _to_number(right)
            if lnum is not None and rnum is not None:
                return op(lnum, rnum)
        return op(left, right)

    return compare


def _contains(container: Any, item: Any) -> bool:
    if container is None:
        return False
    if isinstance(container, str):
        return str(item) in container
    return item in container


# ----------------------------------------------------------------------
# Evaluator
_SAFE_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "lower": lambda s: str(s).lower(),
    "upper": lambda s: str(s).upper(),
    "contains": _contains,
}

_STRING_METHODS: dict[str, Callable[..., Any]] = {
    "lower": str.lower,
    "upper": str.upper,
    "strip": str.strip,
    "startswith": str.startswith,
    "endswith": str.endswith,
    "toLowerCase": str.lower,
    "toUpperCase": str.upper,
    "trim": str.strip,
    "startsWith": str.startswith,
    "endsWith": str.endswith,
    "includes": lambda s, sub: sub in s,
}


class ExpressionEvaluator:
    """Evaluate restricted boolean/comparison expressions over run context."""

    binary_ops: dict[type, Callable[[Any, Any], Any]] = {
        ast.Add: operator.add,
        ast.Sub: operator.sub,
        ast.Mult: operator.mul,
        ast.Div: operator.truediv,
        ast.FloorDiv: operator.floordiv,
        ast.Mod: operator.mod,
    }
    comparisons: dict[type, Callable[[Any, Any], bool]] = {
        ast.Eq: loose_equals,
        ast.NotEq: lambda a, b: not loose_equals(a, b),
        ast.Lt: _ordered(operator.lt),
        ast.LtE: _ordered(operator.le),
        ast.Gt: _ordered(operator.gt),
        ast.GtE: _ordered(operator.ge),
        ast.In: lambda a, b: _contains(b, a),
        ast.NotIn: lambda a, b: not _contains(b, a),
        ast.Is: operator.is_,
        ast.IsNot: operator.is_not,
    }
    unary_ops: dict[type, Callable[[Any], Any]] = {
        ast.Not: operator.not_,
        ast.USub: operator.neg,
        ast.UAdd: operator.pos,
    }

    def evaluate(self, expression: str, data: Mapping[str, Any]) -> Any:
        if not isinstance(expression, str) or not expression.strip():
            raise ExpressionError("Expression must be a non-empty string", str(expression))
        if len(expression) > MAX_EXPRESSION_LENGTH:
            raise ExpressionError("Expression is too long", expression[:50])

        source, references = _normalize(expression)
        scope = build_scope(data)
        for name, value in _JS_LITERALS.items():
            scope.setdefault(name, value)
        for index, path in enumerate(references):
            scope[f"__ref_{index}"] = _lookup(path, data)

        tree = _parse(source, expression)
        try:
            return self._eval(tree.body, scope)
        except ExpressionError as exc:
            if not exc.expression:
                exc.expression = expression
            raise
        except (TypeError, ValueError, ZeroDivisionError, IndexError, KeyError) as exc:
            raise ExpressionError(f"Expression evaluation failed: {exc}", expression) from exc

    # ------------------------------------------------------------------
    def _eval(self, node: ast.AST, scope: Mapping[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            if node.id.startswith("__") and not node.id.startswith("__ref_"):
                raise ExpressionError(f"Name '{node.id}' is not allowed")
            if node.id in scope:
                return scope[node.id]
            raise ExpressionError(f"Name '{node.id}' is not defined")

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result: Any = True
                for value in node.values:
                    result = self._eval(value, scope)
                    if not result:
                        return result
                return result
            result = False
            for value in node.values:
                result = self._eval(value, scope)
                if result:
                    return result
            return result

        if isinstance(node, ast.Compare):
            left = self._eval(node.left, scope)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, scope)
                compare = self.comparisons.get(type(op))
                if compare is None:
                    raise ExpressionError(f"Unsupported comparison: {type(op).__name__}")
                if not compare(left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.BinOp):
            op = self.binary_ops.get(type(node.op))
            if op is None:
                raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
            return op(self._eval(node.left, scope), self._eval(node.right, scope))

        if isinstance(node, ast.UnaryOp):
            op = self.unary_ops.get(type(node.op))
            if op is None:
                raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
            return op(self._eval(node.operand, scope))

        if isinstance(node, ast.IfExp):
            if self._eval(node.test, scope):
                return self._eval(node.body, scope)
            return self._eval(node.orelse, scope)

        if isinstance(node, ast.Attribute):
            if node.attr.startswith("_"):
                raise ExpressionError(f"Attribute '{node.attr}' is not allowed")
            obj = self._eval(node.value, scope)
            if isinstance(obj, Mapping):
                return obj.get(node.attr)
            if node.attr == "length" and isinstance(obj, (str, list, tuple)):
                return len(obj)
            if obj is None:
                return None
            raise ExpressionError(f"Attribute access '{node.attr}' is not allowed")

        if isinstance(node, ast.Subscript):
            obj = self._eval(node.value, scope)
            key = self._eval(node.slice, scope)
            if obj is None:
                return None
            if isinstance(obj, Mapping):
                return obj.get(key)
            if isinstance(obj, (list, tuple, str)) and isinstance(key, int):
                return obj[key] if -len(obj) <= key < len(obj) else None
            raise ExpressionError("Unsupported subscript")

        if isinstance(node, ast.Call):
            return self._eval_call(node, scope)

        if isinstance(node, (ast.List, ast.Tuple)):
            return [self._eval(item, scope) for item in node.elts]

        if isinstance(node, ast.Dict):
            return {
                self._eval(k, scope): self._eval(v, scope)
                for k, v in zip(node.keys, node.values)
                if k is not None
            }

        raise ExpressionError(f"Unsupported expression element: {type(node).__name__}")

    def _eval_call(self, node: ast.Call, scope: Mapping[str, Any]) -> Any:
        if node.keywords:
            raise ExpressionError("Keyword arguments are not allowed")
        args = [self._eval(arg, scope) for arg in node.args]

        if isinstance(node.func, ast.Name):
            func = _SAFE_FUNCTIONS.get(node.func.id)
            if func is None:
                raise ExpressionError(f"Function '{node.func.id}' is not allowed")
            return func(*args)

        if isinstance(node.func, ast.Attribute):
            method = _STRING_METHODS.get(node.func.attr)
            if method is None:
                raise ExpressionError(f"Method '{node.func.attr}' is not allowed")
            target = self._eval(node.func.value, scope)
            if target is None:
                return None
            if not isinstance(target, str):
                raise ExpressionError(f"Method '{node.func.attr}' requires a string")
            return method(target, *args)

        raise ExpressionError("Unsupported call")


def _normalize(expression: str) -> tuple[str, list[str]]:
    references: list[str] = []

    def _replace(match: re.Match) -> str:
        literal, template, js_op = match.groups()
        if literal is not None:
            return literal
        if template is not None:
            references.append(template.strip())
            return f"__ref_{len(references) - 1}"
        return _JS_OPERATORS[js_op]

    return _TOKEN_RE.sub(_replace, expression).strip(), references


@lru_cache(maxsize=1024)
def _parse_cached(source: str) -> ast.Expression:
    return ast.parse(source, mode="eval")


def _parse(source: str, expression: str) -> ast.Expression:
    try:
        return _parse_cached(source)
    except SyntaxError as exc:
        raise ExpressionError(f"Syntax error in expression: {exc.msg}", expression) from exc


_default_evaluator = ExpressionEvaluator()


def evaluate(expression: str, data: Mapping[str, Any]) -> Any:
    """Evaluate ``expression`` against run context ``data``."""
    return _default_evaluator.evaluate(expression, data)
