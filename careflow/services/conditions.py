"""
Evaluation of rule condition maps against event payloads.

A condition map is ``{field: condition}``. ``condition`` is either a bare
value (equality) or ``{"operator": ..., "value": ...}`` with one of
``equals``, ``not_equals``, ``contains``, ``greater_than``, ``less_than``.
All conditions must hold; an empty map always matches.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

logger = logging.getLogger("conditions")

OPERATORS = {"equals", "not_equals", "contains", "greater_than", "less_than"}


def _loose_equal(left: Any, right: Any) -> bool:
    if left == right:
        return True
    if left is None or right is None:
        return False
    # "3" and 3 arrive from different producers for the same field.
    return str(left) == str(right)


def _compare(left: Any, right: Any, op: str) -> bool:
    try:
        if op == "greater_than":
            return left > right
        return left < right
    except TypeError:
        try:
            lf, rf = float(left), float(right)
        except (TypeError, ValueError):
            return False
        return lf > rf if op == "greater_than" else lf < rf


def check_condition(value: Any, condition: Any) -> bool:
    if not isinstance(condition, Mapping) or "operator" not in condition:
        return _loose_equal(value, condition)

    op = condition.get("operator")
    expected = condition.get("value")
    if op == "equals":
        return _loose_equal(value, expected)
    if op == "not_equals":
        return not _loose_equal(value, expected)
    if op == "contains":
        if value is None:
            return False
        if isinstance(value, str):
            return str(expected) in value
        try:
            return expected in value
        except TypeError:
            return False
    if op in {"greater_than", "less_than"}:
        if value is None or expected is None:
            return False
        return _compare(value, expected, op)
    logger.warning("Unknown condition operator=%s", op)
    return False


def matches(conditions: Optional[Mapping[str, Any]], payload: Optional[Mapping[str, Any]]) -> bool:
    if not conditions:
        return True
    data = payload or {}
    for field, condition in conditions.items():
        if not check_condition(data.get(field), condition):
            return False
    return True
