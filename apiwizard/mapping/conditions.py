from __future__ import annotations
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from apiwizard.config.models import FieldCondition

logger = logging.getLogger(__name__)


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, dict)):
        return len(value) == 0
    return False


def _compare(op: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def _check(value: Any, expected: Any) -> bool:
        left, right = _to_number(value), _to_number(expected)
        if left is None or right is None:
            return False
        return op(left, right)
    return _check


def _contains(value: Any, expected: Any) -> bool:
    if isinstance(value, list):
        return expected in value
    return _text(expected) in _text(value)


def _regex_match(value: Any, expected: Any) -> bool:
    try:
        return re.search(_text(expected), _text(value)) is not None
    except re.error as exc:
        logger.warning("Invalid condition regex %r: %s", expected, exc)
        return False


def _one_of(value: Any, expected: Any) -> bool:
    return isinstance(expected, list) and value in expected


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": lambda v, e: v == e,
    "not_equals": lambda v, e: v != e,
    "contains": _contains,
    "not_contains": lambda v, e: not _contains(v, e),
    "starts_with": lambda v, e: _text(v).startswith(_text(e)),
    "ends_with": lambda v, e: _text(v).endswith(_text(e)),
    "greater_than": _compare(lambda a, b: a > b),
    "less_than": _compare(lambda a, b: a < b),
    "greater_than_or_equal": _compare(lambda a, b: a >= b),
    "less_than_or_equal": _compare(lambda a, b: a <= b),
    "is_empty": lambda v, e: _is_empty(v),
    "is_not_empty": lambda v, e: not _is_empty(v),
    "in": _one_of,
    "not_in": lambda v, e: isinstance(e, list) and v not in e,
    "regex_match": _regex_match,
}


def evaluate(operator: str, value: Any, expected: Any) -> bool:
    """Apply one comparison operator. Numeric operators are False on non-numbers."""
    check = OPERATORS.get(operator)
    if check is None:
        raise ValueError(f"Unsupported condition operator: {operator}")
    return check(value, expected)


def first_match(
    conditions: List[FieldCondition],
    subjects: List[Any],
) -> Tuple[bool, Any]:
    """
    Evaluate `conditions` in order against the matching `subjects` entry.

    Returns (True, condition.result) for the first condition that holds,
    (False, None) when none do. The result is used as-is, not transformed.
    """
    for condition, subject in zip(conditions, subjects):
        if evaluate(condition.operator, subject, condition.value):
            return True, condition.result
    return False, None
