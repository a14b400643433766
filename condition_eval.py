"""Trigger condition evaluator.

A trigger carries a flat list of ``{field, operator, value}`` conditions that
are ANDed together. ``field`` is a dotted path resolved against the event
payload first and then against the event envelope (``entity_id``,
``entity_type``, ``type``).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Iterable, List


OPERATORS = (
    "equals",
    "not_equals",
    "contains",
    "greater_than",
    "less_than",
    "in",
    "not_in",
)

logger = logging.getLogger("fieldflow.conditions")

_MISSING = object()


@dataclass
class ConditionSchemaError(Exception):
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.message} (path={self.path})" if self.path else self.message


def validate_condition(cond: Any, path: str = "$") -> None:
    if not isinstance(cond, dict):
        raise ConditionSchemaError("condition must be object", path)
    field = cond.get("field")
    if not isinstance(field, str) or not field.strip():
        raise ConditionSchemaError("field must be non-empty string", f"{path}.field")
    operator = cond.get("operator")
    if operator not in OPERATORS:
        raise ConditionSchemaError(f"unknown operator: {operator}", f"{path}.operator")
    if operator in {"in", "not_in"}:
        value = cond.get("value")
        if not isinstance(value, (list, str)):
            raise ConditionSchemaError("in/not_in value must be list", f"{path}.value")


def _lookup(data: Any, path: str) -> Any:
    if not isinstance(data, dict):
        return _MISSING
    if path in data:
        return data[path]
    current: Any = data
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def resolve_field(context: dict, field: str) -> Any:
    payload = context.get("payload") if isinstance(context.get("payload"), dict) else {}
    value = _lookup(payload, field)
    if value is _MISSING:
        value = _lookup(context, field)
    return None if value is _MISSING else value


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if value is None:
        return []
    return [value]


def _equals(left: Any, right: Any) -> bool:
    if left == right:
        return True
    if isinstance(left, bool) or isinstance(right, bool):
        return str(left).lower() == str(right).lower()
    lnum, rnum = _as_number(left), _as_number(right)
    if lnum is not None and rnum is not None and (isinstance(left, str) != isinstance(right, str)):
        return lnum == rnum
    return False


def _compare(left: Any, right: Any, op: str) -> bool:
    lnum, rnum = _as_number(left), _as_number(right)
    if lnum is not None and rnum is not None:
        return lnum > rnum if op == "greater_than" else lnum < rnum
    if isinstance(left, str) and isinstance(right, str):
        # ISO dates compare correctly as strings
        return left > right if op == "greater_than" else left < right
    return False


def eval_condition(cond: dict, context: dict) -> bool:
    operator = cond.get("operator")
    field = cond.get("field")
    if not isinstance(field, str):
        return False
    left = resolve_field(context, field)
    right = cond.get("value")

    if operator == "equals":
        return _equals(left, right)
    if operator == "not_equals":
        return not _equals(left, right)
    if operator == "contains":
        if isinstance(left, str) and right is not None:
            return str(right) in left
        if isinstance(left, list):
            return any(_equals(item, right) for item in left)
        return False
    if operator in {"greater_than", "less_than"}:
        if left is None or right is None:
            return False
        return _compare(left, right, operator)
    if operator in {"in", "not_in"}:
        found = any(_equals(left, item) for item in _as_list(right)) if left is not None else False
        return found if operator == "in" else not found

    logger.warning("condition_unknown_operator operator=%s field=%s", operator, field)
    return False


def eval_conditions(conditions: Iterable[dict] | None, context: dict) -> bool:
    for cond in conditions or []:
        if not isinstance(cond, dict) or not eval_condition(cond, context):
            return False
    return True
