"""
Eligibility conditions — a closed, tree-shaped tagged union.

Every variant carries a ``kind`` discriminator so condition trees round-trip
through JSON (remote config, payload metadata) without a custom parser.
Conditions are pure data: evaluation lives in ``placement_kernel.eligibility``.
"""

import re
from datetime import datetime, time, timezone
from enum import Enum
from typing import Annotated, Any, FrozenSet, List, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from placement_kernel.errors import MalformedConditionError


class Comparator(str, Enum):
    LT = "lt"
    LTE = "lte"
    GT = "gt"
    GTE = "gte"
    EQ = "eq"
    NEQ = "neq"

    def compare(self, value: float, threshold: float) -> bool:
        if self is Comparator.LT:
            return value < threshold
        if self is Comparator.LTE:
            return value <= threshold
        if self is Comparator.GT:
            return value > threshold
        if self is Comparator.GTE:
            return value >= threshold
        if self is Comparator.EQ:
            return value == threshold
        return value != threshold


class DayOfWeek(str, Enum):
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"

    @property
    def weekday(self) -> int:
        """Index matching ``datetime.weekday()`` (Monday is 0)."""
        return list(DayOfWeek).index(self)

    @classmethod
    def parse(cls, value: str) -> "DayOfWeek":
        lowered = value.strip().lower()
        for day in cls:
            if lowered in (day.value, day.value[:3]):
                return day
        raise ValueError(f"Invalid day: {value}")


class _ConditionBase(BaseModel):
    model_config = ConfigDict(frozen=True)


class Constant(_ConditionBase):
    kind: Literal["constant"] = "constant"
    value: bool


class TimeRange(_ConditionBase):
    """Now must fall within [start, end) in UTC."""

    kind: Literal["time_range"] = "time_range"
    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @model_validator(mode="after")
    def _start_before_end(self) -> "TimeRange":
        if self.start >= self.end:
            raise ValueError("time_range start must be before end")
        return self


class SetMembership(_ConditionBase):
    kind: Literal["set_membership"] = "set_membership"
    key: str
    allowed_values: FrozenSet[str]


class AnySegment(_ConditionBase):
    kind: Literal["any_segment"] = "any_segment"
    key: str
    required_segments: FrozenSet[str]


class BooleanFlag(_ConditionBase):
    kind: Literal["boolean_flag"] = "boolean_flag"
    key: str
    required_value: bool = True


class NumericComparison(_ConditionBase):
    kind: Literal["numeric_comparison"] = "numeric_comparison"
    key: str
    threshold: Union[int, float]
    comparator: Comparator


class StringMatch(_ConditionBase):
    kind: Literal["string_match"] = "string_match"
    key: str
    pattern: str
    case_sensitive: bool = True

    @field_validator("pattern")
    @classmethod
    def _compiles(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as e:
            raise ValueError(f"Invalid regular expression {value!r}: {e}") from e
        return value


class RecurringTimePattern(_ConditionBase):
    """
    Weekly recurring window, e.g. Monday-Friday 09:00-17:00.

    Start is inclusive, end exclusive. When ``time_end`` is before
    ``time_start`` the window crosses midnight and the hours after midnight
    belong to the day the window opened on. An empty ``days_of_week`` means
    every day.
    """

    kind: Literal["recurring_time_pattern"] = "recurring_time_pattern"
    time_start: time
    time_end: time
    days_of_week: FrozenSet[DayOfWeek] = frozenset()

    @field_validator("days_of_week", mode="before")
    @classmethod
    def _parse_days(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple, set, frozenset)):
            return frozenset(
                DayOfWeek.parse(v) if isinstance(v, str) else v for v in value
            )
        return value

    @property
    def crosses_midnight(self) -> bool:
        return self.time_end < self.time_start


class CronSchedule(_ConditionBase):
    """Eligible during every minute matched by a cron expression."""

    kind: Literal["cron_schedule"] = "cron_schedule"
    expression: str


class AllOf(_ConditionBase):
    kind: Literal["all_of"] = "all_of"
    conditions: List["Condition"] = []


class AnyOf(_ConditionBase):
    kind: Literal["any_of"] = "any_of"
    conditions: List["Condition"] = []


class Not(_ConditionBase):
    kind: Literal["not"] = "not"
    condition: "Condition"


Condition = Annotated[
    Union[
        Constant,
        TimeRange,
        SetMembership,
        AnySegment,
        BooleanFlag,
        NumericComparison,
        StringMatch,
        RecurringTimePattern,
        CronSchedule,
        AllOf,
        AnyOf,
        Not,
    ],
    Field(discriminator="kind"),
]

AllOf.model_rebuild()
AnyOf.model_rebuild()
Not.model_rebuild()

CONDITION_TYPES = (
    Constant,
    TimeRange,
    SetMembership,
    AnySegment,
    BooleanFlag,
    NumericComparison,
    StringMatch,
    RecurringTimePattern,
    CronSchedule,
    AllOf,
    AnyOf,
    Not,
)

_condition_adapter = TypeAdapter(Condition)


def parse_condition(data: Any) -> "Condition":
    """Validate a JSON-like mapping into a condition tree."""
    try:
        return _condition_adapter.validate_python(data)
    except ValidationError as e:
        raise MalformedConditionError(f"Invalid condition: {e}") from e
