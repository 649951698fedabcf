"""Placement kernel data models."""

from placement_kernel.models.conditions import (
    CONDITION_TYPES,
    AllOf,
    AnyOf,
    AnySegment,
    BooleanFlag,
    Comparator,
    Condition,
    Constant,
    CronSchedule,
    DayOfWeek,
    Not,
    NumericComparison,
    RecurringTimePattern,
    SetMembership,
    StringMatch,
    TimeRange,
    parse_condition,
)
from placement_kernel.models.content import Item, Option, Payload, materialize
from placement_kernel.models.engine import EngineConfig, EngineStatus
from placement_kernel.models.history import HistoryEntry, HistoryEvent
from placement_kernel.models.state import MutableState, Slot, State

__all__ = [
    "AllOf",
    "AnyOf",
    "AnySegment",
    "BooleanFlag",
    "CONDITION_TYPES",
    "Comparator",
    "Condition",
    "Constant",
    "CronSchedule",
    "DayOfWeek",
    "EngineConfig",
    "EngineStatus",
    "HistoryEntry",
    "HistoryEvent",
    "Item",
    "MutableState",
    "Not",
    "NumericComparison",
    "Option",
    "Payload",
    "RecurringTimePattern",
    "SetMembership",
    "Slot",
    "State",
    "StringMatch",
    "TimeRange",
    "materialize",
    "parse_condition",
]
