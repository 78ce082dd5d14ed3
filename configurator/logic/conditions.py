"""
Rule condition trees.

Rule conditions arrive as Directus-style filter objects::

    {"_and": [{"frame_thickness": {"_eq": 1}}, {"accessories": {"_in": [1, 2]}}]}

They are parsed once into a small AST (And / Or / Compare) and evaluated by
a total function: evaluation never raises, whatever the context holds.

Leaf semantics:
- a field missing from the context makes the comparison false, for every
  operator
- both sides are compared as numbers when both coerce to numbers
- a list in the context (multi-select field) is compared by membership
- ``a.b`` paths walk nested dicts first, then fall back to the flattened
  ``a_b`` key
"""

import operator as op
from dataclasses import dataclass
from typing import Any, Union

from configurator.errors import ConditionParseError


@dataclass(frozen=True)
class Compare:
    op: str
    field: str
    value: Any


@dataclass(frozen=True)
class And:
    children: tuple = ()


@dataclass(frozen=True)
class Or:
    children: tuple = ()


Condition = Union[And, Or, Compare]

_ORDERING = {"_gt": op.gt, "_gte": op.ge, "_lt": op.lt, "_lte": op.le}
OPERATORS = frozenset({
    "_eq", "_neq", "_in", "_nin", "_contains", "_ncontains", "_empty", "_nempty",
    *_ORDERING,
})

_MISSING = object()


# =============================================================================
# PARSING
# =============================================================================

def parse_condition(raw) -> Condition:
    """Parse a filter object into an AST.

    Raises:
        ConditionParseError: not an object, unknown operator, or a logical
            operator whose value is not a list of objects.
    """
    if not isinstance(raw, dict):
        raise ConditionParseError(f"Condition must be an object, got {type(raw).__name__}")
    return _parse_object(raw, prefix="")


def _parse_object(obj: dict, prefix: str) -> Condition:
    parts = []
    for key, value in obj.items():
        if key in ("_and", "_or"):
            if not isinstance(value, list):
                raise ConditionParseError(f"'{key}' expects a list of conditions")
            children = []
            for child in value:
                if not isinstance(child, dict):
                    raise ConditionParseError(f"'{key}' entries must be objects")
                children.append(_parse_object(child, prefix))
            parts.append(And(tuple(children)) if key == "_and" else Or(tuple(children)))
        elif key.startswith("_"):
            raise ConditionParseError(f"Unknown operator '{key}'")
        else:
            parts.append(_parse_field(prefix + key, value))

    if len(parts) == 1:
        return parts[0]
    return And(tuple(parts))


def _parse_field(path: str, value) -> Condition:
    if not isinstance(value, dict):
        if isinstance(value, list):
            return Compare("_in", path, tuple(value))
        return Compare("_eq", path, value)

    if not value:
        raise ConditionParseError(f"Empty condition for field '{path}'")

    op_keys = [k for k in value if k.startswith("_")]
    if op_keys and len(op_keys) != len(value):
        raise ConditionParseError(f"Field '{path}' mixes operators and nested fields")

    if not op_keys:
        # Nested relation: {"product_line": {"sku_code": {"_eq": "X"}}}
        return _parse_object(value, prefix=path + ".")

    leaves = []
    for key, literal in value.items():
        if key not in OPERATORS:
            raise ConditionParseError(f"Unknown operator '{key}' on field '{path}'")
        if key in ("_in", "_nin"):
            literal = tuple(literal) if isinstance(literal, (list, tuple)) else (literal,)
        leaves.append(Compare(key, path, literal))
    return leaves[0] if len(leaves) == 1 else And(tuple(leaves))


# =============================================================================
# EVALUATION
# =============================================================================

def _to_number(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _same(a, b) -> bool:
    na, nb = _to_number(a), _to_number(b)
    if na is not None and nb is not None:
        return na == nb
    return a == b or (a is not None and b is not None and str(a) == str(b))


def _is_empty(value) -> bool:
    return value is None or value == "" or (isinstance(value, (list, tuple, dict)) and len(value) == 0)


def _resolve(context: dict, path: str):
    if path in context:
        return context[path]
    if "." in path:
        current: Any = context
        for part in path.split("."):
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                current = _MISSING
                break
        if current is not _MISSING:
            return current
        flat = path.replace(".", "_")
        if flat in context:
            return context[flat]
    return _MISSING


def _compare_scalar(operator: str, actual, literal) -> bool:
    if operator == "_eq":
        return _same(actual, literal)
    if operator == "_neq":
        return not _same(actual, literal)
    if operator == "_in":
        return any(_same(actual, v) for v in literal)
    if operator == "_nin":
        return not any(_same(actual, v) for v in literal)
    if operator in ("_contains", "_ncontains"):
        found = actual is not None and literal is not None and str(literal) in str(actual)
        return found if operator == "_contains" else not found
    if operator in _ORDERING:
        na, nb = _to_number(actual), _to_number(literal)
        if na is None or nb is None:
            return False
        return _ORDERING[operator](na, nb)
    return False


def _compare_list(operator: str, actual: list, literal) -> bool:
    if operator in ("_eq", "_contains"):
        return any(_same(a, literal) for a in actual)
    if operator in ("_neq", "_ncontains"):
        return not any(_same(a, literal) for a in actual)
    if operator == "_in":
        return any(_same(a, v) for a in actual for v in literal)
    if operator == "_nin":
        return not any(_same(a, v) for a in actual for v in literal)
    if operator in _ORDERING:
        return any(_compare_scalar(operator, a, literal) for a in actual)
    return False


def evaluate(condition: Condition, context: dict) -> bool:
    """Evaluate a parsed condition against a flat context. Never raises."""
    if isinstance(condition, And):
        return all(evaluate(c, context) for c in condition.children)
    if isinstance(condition, Or):
        return any(evaluate(c, context) for c in condition.children)

    actual = _resolve(context, condition.field)
    if actual is _MISSING:
        return False
    if condition.op == "_empty":
        return _is_empty(actual) == _truthy(condition.value)
    if condition.op == "_nempty":
        return (not _is_empty(actual)) == _truthy(condition.value)
    if isinstance(actual, (list, tuple, set)):
        return _compare_list(condition.op, list(actual), condition.value)
    return _compare_scalar(condition.op, actual, condition.value)


def _truthy(value) -> bool:
    # `{"_empty": true}` and the bare `{"_empty": null}` both mean "is empty"
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() not in ("false", "0", "")
    return bool(value)


def describe(condition: Condition) -> str:
    """Human readable rendering, used in logs and rule descriptions."""
    if isinstance(condition, And):
        if not condition.children:
            return "always"
        return " AND ".join(_group(c) for c in condition.children)
    if isinstance(condition, Or):
        return " OR ".join(_group(c) for c in condition.children)
    symbol = {
        "_eq": "=", "_neq": "!=", "_gt": ">", "_gte": ">=", "_lt": "<", "_lte": "<=",
        "_in": "in", "_nin": "not in", "_contains": "contains", "_ncontains": "does not contain",
    }.get(condition.op)
    if symbol is None:
        return f"{condition.field} is {'empty' if condition.op == '_empty' else 'not empty'}"
    value = list(condition.value) if isinstance(condition.value, tuple) else condition.value
    return f"{condition.field} {symbol} {value!r}"


def _group(condition: Condition) -> str:
    text = describe(condition)
    if isinstance(condition, (And, Or)) and len(condition.children) > 1:
        return f"({text})"
    return text
