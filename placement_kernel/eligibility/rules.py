"""
Eligibility rules — one stateless evaluator per condition variant.

Rules only depend on the condition and the run context. A context value of
the wrong shape is a TypeMismatch, recovered locally as "not eligible":
context is assembled from outside data and may legitimately be malformed.
"""

import re
from datetime import datetime, timezone
from numbers import Real
from typing import Any, Awaitable, Callable, ClassVar, Dict, List, Optional, Type

import structlog
from croniter import croniter

from placement_kernel.errors import TypeMismatch
from placement_kernel.models.conditions import (
    AllOf,
    AnyOf,
    AnySegment,
    BooleanFlag,
    Condition,
    Constant,
    CronSchedule,
    Not,
    NumericComparison,
    RecurringTimePattern,
    SetMembership,
    StringMatch,
    TimeRange,
)

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]
NestedEvaluator = Callable[[Condition, Dict[str, Any]], Awaitable[bool]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _stringify(value: Any) -> str:
    # Match how JSON config spells booleans.
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class Rule:
    """Evaluates one condition variant against a context."""

    condition_type: ClassVar[Type[Any]]

    def supports(self, condition: Any) -> bool:
        return isinstance(condition, self.condition_type)

    async def evaluate(self, condition: Any, context: Dict[str, Any]) -> bool:
        try:
            return await self._evaluate(condition, context)
        except TypeMismatch as e:
            logger.debug(
                "eligibility.type_mismatch",
                rule=type(self).__name__,
                key=e.key,
                expected=e.expected,
                actual=e.actual_type,
            )
            return False

    async def _evaluate(self, condition: Any, context: Dict[str, Any]) -> bool:
        raise NotImplementedError


class ConstantRule(Rule):
    condition_type = Constant

    async def _evaluate(self, condition: Constant, context: Dict[str, Any]) -> bool:
        return condition.value


class TimeRangeRule(Rule):
    """Checks that the current UTC time falls within [start, end)."""

    condition_type = TimeRange

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or utc_now

    async def _evaluate(self, condition: TimeRange, context: Dict[str, Any]) -> bool:
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        eligible = condition.start <= now < condition.end
        logger.debug(
            "eligibility.time_range",
            now=now.isoformat(),
            start=condition.start.isoformat(),
            end=condition.end.isoformat(),
            eligible=eligible,
        )
        return eligible


class SetMembershipRule(Rule):
    condition_type = SetMembership

    async def _evaluate(self, condition: SetMembership, context: Dict[str, Any]) -> bool:
        value = context.get(condition.key)
        if value is None:
            logger.debug("eligibility.set_membership.missing", key=condition.key)
            return False
        eligible = _stringify(value) in condition.allowed_values
        logger.debug(
            "eligibility.set_membership", key=condition.key, value=value, eligible=eligible
        )
        return eligible


class AnySegmentRule(Rule):
    """User segments from context must overlap the required segments."""

    condition_type = AnySegment

    async def _evaluate(self, condition: AnySegment, context: Dict[str, Any]) -> bool:
        raw = context.get(condition.key)
        if not isinstance(raw, (list, tuple, set, frozenset)):
            raise TypeMismatch(condition.key, "collection of strings", raw)
        segments = {s for s in raw if isinstance(s, str)}
        eligible = not segments.isdisjoint(condition.required_segments)
        logger.debug(
            "eligibility.any_segment",
            key=condition.key,
            segments=sorted(segments),
            eligible=eligible,
        )
        return eligible


class BooleanFlagRule(Rule):
    condition_type = BooleanFlag

    async def _evaluate(self, condition: BooleanFlag, context: Dict[str, Any]) -> bool:
        value = context.get(condition.key)
        if not isinstance(value, bool):
            raise TypeMismatch(condition.key, "bool", value)
        return value == condition.required_value


class NumericComparisonRule(Rule):
    condition_type = NumericComparison

    async def _evaluate(self, condition: NumericComparison, context: Dict[str, Any]) -> bool:
        value = context.get(condition.key)
        # bool is an int subclass but never a number here
        if isinstance(value, bool) or not isinstance(value, Real):
            raise TypeMismatch(condition.key, "number", value)
        eligible = condition.comparator.compare(value, condition.threshold)
        logger.debug(
            "eligibility.numeric_comparison",
            key=condition.key,
            value=value,
            comparator=condition.comparator.value,
            threshold=condition.threshold,
            eligible=eligible,
        )
        return eligible


class StringMatchRule(Rule):
    condition_type = StringMatch

    async def _evaluate(self, condition: StringMatch, context: Dict[str, Any]) -> bool:
        value = context.get(condition.key)
        if value is None:
            logger.debug("eligibility.string_match.missing", key=condition.key)
            return False
        flags = 0 if condition.case_sensitive else re.IGNORECASE
        return re.search(condition.pattern, _stringify(value), flags) is not None


class RecurringTimePatternRule(Rule):
    """Weekly window evaluated in the clock's timezone."""

    condition_type = RecurringTimePattern

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or utc_now

    async def _evaluate(self, condition: RecurringTimePattern, context: Dict[str, Any]) -> bool:
        now = self._clock()
        current = now.time()
        weekday = now.weekday()

        if not condition.crosses_midnight:
            in_window = condition.time_start <= current < condition.time_end
        elif current >= condition.time_start:
            in_window = True
        elif current < condition.time_end:
            # Early-morning tail of a window that opened yesterday
            in_window = True
            weekday = (weekday - 1) % 7
        else:
            in_window = False

        if in_window and condition.days_of_week:
            in_window = weekday in {day.weekday for day in condition.days_of_week}

        logger.debug(
            "eligibility.recurring_time_pattern",
            now=now.isoformat(),
            start=condition.time_start.isoformat(),
            end=condition.time_end.isoformat(),
            eligible=in_window,
        )
        return in_window


class CronScheduleRule(Rule):
    condition_type = CronSchedule

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or utc_now

    async def _evaluate(self, condition: CronSchedule, context: Dict[str, Any]) -> bool:
        try:
            return croniter.match(condition.expression, self._clock())
        except (ValueError, KeyError):
            # Invalid cron expression: inactive
            logger.warning("eligibility.cron_schedule.invalid", expression=condition.expression)
            return False


class AllOfRule(Rule):
    """AND combinator. Children evaluated in order, stops at the first false."""

    condition_type = AllOf

    def __init__(self, evaluate_nested: NestedEvaluator):
        self._evaluate_nested = evaluate_nested

    async def _evaluate(self, condition: AllOf, context: Dict[str, Any]) -> bool:
        for child in condition.conditions:
            if not await self._evaluate_nested(child, context):
                logger.debug("eligibility.all_of.failed", condition=child.kind)
                return False
        return True


class AnyOfRule(Rule):
    """OR combinator. Children evaluated in order, stops at the first true."""

    condition_type = AnyOf

    def __init__(self, evaluate_nested: NestedEvaluator):
        self._evaluate_nested = evaluate_nested

    async def _evaluate(self, condition: AnyOf, context: Dict[str, Any]) -> bool:
        for child in condition.conditions:
            if await self._evaluate_nested(child, context):
                return True
        return False


class NotRule(Rule):
    condition_type = Not

    def __init__(self, evaluate_nested: NestedEvaluator):
        self._evaluate_nested = evaluate_nested

    async def _evaluate(self, condition: Not, context: Dict[str, Any]) -> bool:
        return not await self._evaluate_nested(condition.condition, context)


def create_standard_rules(
    evaluate_nested: NestedEvaluator,
    clock: Optional[Clock] = None,
) -> List[Rule]:
    """
    All built-in rules. Combinators recurse through ``evaluate_nested``,
    normally the owning resolver's ``evaluate``.
    """
    return [
        ConstantRule(),
        TimeRangeRule(clock),
        SetMembershipRule(),
        AnySegmentRule(),
        BooleanFlagRule(),
        NumericComparisonRule(),
        StringMatchRule(),
        RecurringTimePatternRule(clock),
        CronScheduleRule(clock),
        AllOfRule(evaluate_nested),
        AnyOfRule(evaluate_nested),
        NotRule(evaluate_nested),
    ]
