"""
Structural equality for items, slots and states.

Used by the sync guard to decide whether a candidate replaces the item in
state, and by the engine to decide whether a run changed anything.
"""

from typing import Any, Dict, Optional, Sequence

from placement_kernel.models.content import Item, Option
from placement_kernel.models.state import Slot, State


def items_same(old: Item, new: Item) -> bool:
    """Identity fields: id, surface, variant, priority and option."""
    if old.id != new.id:
        return False
    if old.surface != new.surface:
        return False
    if old.variant != new.variant:
        return False
    if old.priority != new.priority:
        return False
    return old.option == new.option


def options_equal(old: Option, new: Option) -> bool:
    return (
        old.stage == new.stage
        and old.max_impressions == new.max_impressions
        and old.cooldown_minutes == new.cooldown_minutes
        and old.is_dismissible == new.is_dismissible
        and old.always_on_if_eligible == new.always_on_if_eligible
    )


def _deep_equal(old: Any, new: Any) -> bool:
    if isinstance(old, dict) and isinstance(new, dict):
        return metadata_equal(old, new)
    if isinstance(old, (list, tuple)) and isinstance(new, (list, tuple)):
        return len(old) == len(new) and all(_deep_equal(a, b) for a, b in zip(old, new))
    # 1 == True in Python; metadata treats them as different values
    if isinstance(old, bool) != isinstance(new, bool):
        return False
    return old == new


def metadata_equal(old: Dict[str, Any], new: Dict[str, Any]) -> bool:
    """Same key set and deep-equal values."""
    if old.keys() != new.keys():
        return False
    return all(_deep_equal(old[key], new[key]) for key in old)


def items_equal(old: Item, new: Item) -> bool:
    """Identity, option fields and metadata all match."""
    return (
        items_same(old, new)
        and options_equal(old.option, new.option)
        and metadata_equal(old.metadata, new.metadata)
    )


def _optional_items_equal(old: Optional[Item], new: Optional[Item]) -> bool:
    if old is None or new is None:
        return old is None and new is None
    return items_equal(old, new)


def item_lists_equal(old: Sequence[Item], new: Sequence[Item]) -> bool:
    return len(old) == len(new) and all(items_equal(a, b) for a, b in zip(old, new))


def slots_equal(old: Slot, new: Slot) -> bool:
    return (
        old.surface == new.surface
        and _optional_items_equal(old.active, new.active)
        and item_lists_equal(old.queue, new.queue)
    )


def states_equal(old: State, new: State) -> bool:
    """A surface missing from one state equals an empty slot in the other."""
    for surface in set(old.slots) | set(new.slots):
        if not slots_equal(old.slot(surface), new.slot(surface)):
            return False
    return True
