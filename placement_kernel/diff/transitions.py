"""State transitions — what changed between two published snapshots."""

from datetime import datetime
from functools import cached_property
from typing import Dict, List, Optional

from placement_kernel.models.content import Item
from placement_kernel.models.state import Slot, State


class SlotDiff:
    """Changes on one surface."""

    def __init__(self, surface: str, old: Slot, new: Slot):
        self.surface = surface
        self.old = old
        self.new = new

        old_active = old.active.id if old.active else None
        new_active = new.active.id if new.active else None
        old_queue = {item.id for item in old.queue}
        new_queue = {item.id for item in new.queue}

        self.activated: List[Item] = (
            [new.active] if new.active is not None and new_active != old_active else []
        )
        self.deactivated: List[Item] = (
            [old.active] if old.active is not None and new_active != old_active else []
        )
        self.enqueued: List[Item] = [i for i in new.queue if i.id not in old_queue]
        self.dequeued: List[Item] = [i for i in old.queue if i.id not in new_queue]

    @property
    def is_empty(self) -> bool:
        return not (self.activated or self.deactivated or self.enqueued or self.dequeued)

    def to_dict(self) -> dict:
        return {
            "surface": self.surface,
            "activated": [i.id for i in self.activated],
            "deactivated": [i.id for i in self.deactivated],
            "enqueued": [i.id for i in self.enqueued],
            "dequeued": [i.id for i in self.dequeued],
        }


class StateDiff:
    def __init__(self, slot_diffs: Dict[str, SlotDiff]):
        self.slot_diffs = slot_diffs

    @classmethod
    def compute(cls, old: State, new: State) -> "StateDiff":
        diffs = {}
        for surface in list(old.slots) + [s for s in new.slots if s not in old.slots]:
            diff = SlotDiff(surface, old.slot(surface), new.slot(surface))
            if not diff.is_empty:
                diffs[surface] = diff
        return cls(diffs)

    @property
    def is_empty(self) -> bool:
        return not self.slot_diffs

    @property
    def activated(self) -> List[Item]:
        return [i for d in self.slot_diffs.values() for i in d.activated]

    @property
    def deactivated(self) -> List[Item]:
        return [i for d in self.slot_diffs.values() for i in d.deactivated]

    def for_surface(self, surface: str) -> Optional[SlotDiff]:
        return self.slot_diffs.get(surface)


class StateTransition:
    """A committed change from one snapshot to the next."""

    def __init__(self, old: State, new: State, timestamp: datetime):
        self.old = old
        self.new = new
        self.timestamp = timestamp

    @cached_property
    def diff(self) -> StateDiff:
        return StateDiff.compute(self.old, self.new)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "changes": [d.to_dict() for d in self.diff.slot_diffs.values()],
        }
