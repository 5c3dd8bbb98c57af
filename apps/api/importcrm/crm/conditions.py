"""Condition operators for pipeline rules.

Operators are plain ``(actual, expected) -> bool`` callables registered by name, so a new
operator is one decorated function. Field values are looked up with dot paths into the
evaluation scope (deal fields plus ``pipeline``, ``stage``, ``from_stage`` and
``metadata``).
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping, Sequence
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

logger = logging.getLogger("importcrm.rules.engine")

ConditionOperator = Callable[[Any, Any], bool]

_MISSING = object()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConditionRegistry:
    def __init__(self) -> None:
        self._operators: dict[str, ConditionOperator] = {}

    def register(self, name: str) -> Callable[[ConditionOperator], ConditionOperator]:
        def decorator(func: ConditionOperator) -> ConditionOperator:
            self._operators[name] = func
            return func

        return decorator

    def get(self, name: str) -> ConditionOperator | None:
        return self._operators.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._operators

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._operators))

    def evaluate(self, name: str, actual: Any, expected: Any) -> bool:
        operator = self._operators.get(name)
        if operator is None:
            logger.warning("rule_condition_operator_unknown", extra={"reason": name})
            return False
        try:
            return bool(operator(actual, expected))
        except (TypeError, ValueError, InvalidOperation):
            return False


condition_registry = ConditionRegistry()


def resolve_field(scope: Mapping[str, Any], path: str) -> Any:
    current: Any = scope
    for segment in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(segment, _MISSING)
        else:
            current = getattr(current, segment, _MISSING)
        if current is _MISSING:
            return None
    return current


def _normalize(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return value
    return value


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (Sequence, Mapping, set)) and not isinstance(value, (bytes, bytearray)):
        return len(value) == 0
    return False


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def days_since(value: Any) -> float | None:
    moment = _as_datetime(value)
    if moment is None:
        return None
    return (utcnow() - moment).total_seconds() / 86400


@condition_registry.register("equals")
def _equals(actual: Any, expected: Any) -> bool:
    return _normalize(actual) == _normalize(expected)


@condition_registry.register("not_equals")
def _not_equals(actual: Any, expected: Any) -> bool:
    return _normalize(actual) != _normalize(expected)


@condition_registry.register("greater_than")
def _greater_than(actual: Any, expected: Any) -> bool:
    return actual is not None and _normalize(actual) > _normalize(expected)


@condition_registry.register("less_than")
def _less_than(actual: Any, expected: Any) -> bool:
    return actual is not None and _normalize(actual) < _normalize(expected)


@condition_registry.register("greater_or_equal")
def _greater_or_equal(actual: Any, expected: Any) -> bool:
    return actual is not None and _normalize(actual) >= _normalize(expected)


@condition_registry.register("less_or_equal")
def _less_or_equal(actual: Any, expected: Any) -> bool:
    return actual is not None and _normalize(actual) <= _normalize(expected)


@condition_registry.register("in")
def _in(actual: Any, expected: Any) -> bool:
    if not isinstance(expected, (list, tuple, set)):
        return False
    normalized = _normalize(actual)
    return any(normalized == _normalize(item) for item in expected)


@condition_registry.register("not_in")
def _not_in(actual: Any, expected: Any) -> bool:
    if not isinstance(expected, (list, tuple, set)):
        return False
    return not _in(actual, expected)


@condition_registry.register("contains")
def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str) and isinstance(expected, str):
        return expected.lower() in actual.lower()
    if isinstance(actual, (list, tuple, set)):
        return expected in actual
    return False


@condition_registry.register("not_contains")
def _not_contains(actual: Any, expected: Any) -> bool:
    if actual is None:
        return True
    return not _contains(actual, expected)


@condition_registry.register("is_empty")
def _is_empty_operator(actual: Any, expected: Any) -> bool:
    return _is_empty(actual)


@condition_registry.register("is_not_empty")
def _is_not_empty_operator(actual: Any, expected: Any) -> bool:
    return not _is_empty(actual)


@condition_registry.register("days_ago_greater_than")
def _days_ago_greater_than(actual: Any, expected: Any) -> bool:
    elapsed = days_since(actual)
    return elapsed is not None and elapsed > float(expected)


@condition_registry.register("days_ago_less_than")
def _days_ago_less_than(actual: Any, expected: Any) -> bool:
    elapsed = days_since(actual)
    return elapsed is not None and elapsed < float(expected)


def combine_results(matches: Sequence[bool], logical_operators: Sequence[str]) -> bool:
    """Fold results left to right; ``logical_operators[i - 1]`` joins ``matches[i]``.

    An empty list matches.
    """
    if not matches:
        return True
    combined = matches[0]
    for index in range(1, len(matches)):
        joiner = logical_operators[index - 1] if index - 1 < len(logical_operators) else "AND"
        if joiner == "OR":
            combined = combined or matches[index]
        else:
            combined = combined and matches[index]
    return combined
