# nexa/rules/evaluator.py
from __future__ import annotations

import logging
from datetime import datetime, time
from typing import Any, List, Optional, Sequence

from .errors import RuleDisabled
from .types import (
    WEEKDAYS,
    Condition,
    ConditionOperator,
    DayOfWeekCondition,
    DeviceStateCondition,
    Evaluation,
    EvaluationContext,
    Rule,
    SensorValueCondition,
    TimeRangeCondition,
)

log = logging.getLogger("automation")

# marker for "no value available for this condition"
_MISSING = object()


class RuleEvaluator:
    """
    Decides whether a rule should run.

    Conditions are ANDed and checked in declared order; the first one that
    is false (or cannot be resolved) blocks the rule and the rest are not
    looked at. Missing values never raise: the condition is simply false
    and its index is reported in `unresolved`.
    """

    def evaluate(self, rule: Rule, context: EvaluationContext) -> Evaluation:
        if not rule.enabled:
            raise RuleDisabled(rule.id)

        unresolved: List[int] = []

        for idx, cond in enumerate(rule.conditions):
            actual = self._resolve(cond, context)
            if actual is _MISSING:
                unresolved.append(idx)
                log.debug(
                    "rule %s: condition #%d (%s) unresolved, no value in context",
                    rule.id,
                    idx,
                    cond.type.value,
                )
                return Evaluation(
                    should_run=False,
                    actions=[],
                    blocking_condition=idx,
                    unresolved=unresolved,
                )

            if not self.check(cond, actual):
                log.debug(
                    "rule %s: condition #%d (%s %s %r) is false for %r",
                    rule.id,
                    idx,
                    cond.type.value,
                    cond.operator.value,
                    cond.value,
                    actual,
                )
                return Evaluation(
                    should_run=False,
                    actions=[],
                    blocking_condition=idx,
                    unresolved=unresolved,
                )

        log.debug("rule %s: %d condition(s) hold", rule.id, len(rule.conditions))
        return Evaluation(should_run=True, actions=list(rule.actions), unresolved=unresolved)

    # ------------------------------------------------------------------
    def check(self, cond: Condition, actual: Any) -> bool:
        """Apply the condition's operator to an already resolved value."""
        try:
            if isinstance(cond, TimeRangeCondition):
                return _check_time(cond.operator, actual, cond.value)
            if isinstance(cond, DayOfWeekCondition):
                return _check_day(cond.operator, actual, cond.value)
            return _compare(cond.operator, actual, cond.value)
        except (TypeError, ValueError):
            # comparison not possible -> condition is false
            return False

    # ------------------------------------------------------------------
    def _resolve(self, cond: Condition, context: EvaluationContext) -> Any:
        if isinstance(cond, DeviceStateCondition):
            value = context.device_states.get(cond.device_id)
            return _MISSING if value is None else value

        if isinstance(cond, SensorValueCondition):
            value = context.sensor_values.get(cond.sensor_id)
            return _MISSING if value is None else value

        now = context.now or datetime.now().astimezone()

        if isinstance(cond, TimeRangeCondition):
            return now.time().replace(second=0, microsecond=0, tzinfo=None)

        if isinstance(cond, DayOfWeekCondition):
            return WEEKDAYS[now.weekday()]

        return _MISSING


# ----------------------------------------------------------------------
# comparisons
# ----------------------------------------------------------------------
def _as_number(v: Any) -> float:
    if isinstance(v, bool):
        raise TypeError("bool is not a number")
    if isinstance(v, (int, float)):
        return float(v)
    if isinstance(v, str):
        return float(v.strip().replace(",", "."))
    raise TypeError(f"not a number: {v!r}")


def _pair(value: Any) -> Sequence[Any]:
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise ValueError("between expects [low, high]")
    return value


def _equals(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str) and isinstance(expected, str):
        return actual.strip().lower() == expected.strip().lower()
    try:
        return _as_number(actual) == _as_number(expected)
    except (TypeError, ValueError):
        return actual == expected


def _compare(op: ConditionOperator, actual: Any, expected: Any) -> bool:
    if op == ConditionOperator.EQUALS:
        return _equals(actual, expected)
    if op == ConditionOperator.GREATER_THAN:
        return _as_number(actual) > _as_number(expected)
    if op == ConditionOperator.LESS_THAN:
        return _as_number(actual) < _as_number(expected)
    if op == ConditionOperator.BETWEEN:
        low, high = _pair(expected)
        return _as_number(low) <= _as_number(actual) <= _as_number(high)
    return False


def _as_time(v: Any) -> time:
    if isinstance(v, time):
        return v.replace(second=0, microsecond=0, tzinfo=None)
    if isinstance(v, str):
        return time.fromisoformat(v.strip()).replace(second=0, microsecond=0)
    raise TypeError(f"not a time of day: {v!r}")


def _check_time(op: ConditionOperator, actual: time, expected: Any) -> bool:
    if op == ConditionOperator.EQUALS:
        return actual == _as_time(expected)
    if op == ConditionOperator.GREATER_THAN:
        return actual > _as_time(expected)
    if op == ConditionOperator.LESS_THAN:
        return actual < _as_time(expected)
    if op == ConditionOperator.BETWEEN:
        start, end = (_as_time(x) for x in _pair(expected))
        if start <= end:
            return start <= actual <= end
        # window over midnight
        return actual >= start or actual <= end
    return False


def _day_set(value: Any) -> Optional[set]:
    if isinstance(value, str):
        return {value.strip().lower()[:3]}
    if isinstance(value, (list, tuple, set, frozenset)):
        return {str(d).strip().lower()[:3] for d in value}
    return None


def _check_day(op: ConditionOperator, actual: str, expected: Any) -> bool:
    if op != ConditionOperator.EQUALS:
        return False
    days = _day_set(expected)
    return bool(days) and actual in days
