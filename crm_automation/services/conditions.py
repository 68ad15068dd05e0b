import math
from typing import Any, Mapping, Sequence

from crm_automation.schemas.automation import ConditionV1


def matches(entity: Mapping[str, Any], conditions: Sequence[ConditionV1] | None) -> bool:
    """True when every condition holds against the entity snapshot.

    An empty condition list always matches. Fields missing from the
    snapshot read as None.
    """
    for condition in conditions or ():
        actual = entity.get(condition.field)
        if not _condition_matches(actual, operator=condition.operator, expected=condition.value):
            return False
    return True


def _condition_matches(actual: Any, *, operator: str, expected: Any) -> bool:
    if operator == "equals":
        return _equals(actual, expected)
    if operator == "not_equals":
        return not _equals(actual, expected)
    if operator == "contains":
        # A null needle never matches.
        if expected is None:
            return False
        return _as_text(expected) in _as_text(actual)

    if operator in {"gt", "lt", "gte", "lte"}:
        left = _to_number(actual)
        right = _to_number(expected)
        # NaN compares false against everything.
        if operator == "gt":
            return left > right
        if operator == "lt":
            return left < right
        if operator == "gte":
            return left >= right
        return left <= right

    if operator == "in":
        return isinstance(expected, list) and any(_equals(actual, item) for item in expected)
    if operator == "not_in":
        return isinstance(expected, list) and not any(_equals(actual, item) for item in expected)

    if operator == "is_empty":
        return not actual
    if operator == "is_not_empty":
        return bool(actual)
    return False


def _equals(left: Any, right: Any) -> bool:
    # True == 1 in Python; a JSON boolean must not match a number.
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _to_number(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return math.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan
