"""
Per-surface scheduling state.

``State`` is the immutable snapshot the engine publishes. ``MutableState`` is
the transient builder handed from guard to guard during one run; it is the
only legal way to change slot structure, and it refuses mutation once the
engine has released it.
"""

from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict

from placement_kernel.errors import BuilderReleasedError
from placement_kernel.models.content import Item


def _item_dict(item: Item) -> dict:
    return {"id": item.id, **item.model_dump(mode="json")}


class Slot(BaseModel):
    """One surface: an active item plus an ordered queue behind it."""

    model_config = ConfigDict(frozen=True)

    surface: str
    active: Optional[Item] = None
    queue: Tuple[Item, ...] = ()

    @classmethod
    def empty(cls, surface: str) -> "Slot":
        return cls(surface=surface)

    @property
    def is_empty(self) -> bool:
        return self.active is None and not self.queue

    @property
    def items(self) -> List[Item]:
        """Active item first, then the queue."""
        return ([self.active] if self.active is not None else []) + list(self.queue)

    def to_dict(self) -> dict:
        return {
            "surface": self.surface,
            "active": _item_dict(self.active) if self.active else None,
            "queue": [_item_dict(item) for item in self.queue],
        }


def _dedupe(items: Iterable[Item], exclude: Optional[str] = None) -> Tuple[Item, ...]:
    """Keep the first occurrence of each item id, skipping ``exclude``."""
    seen: Set[str] = set()
    if exclude is not None:
        seen.add(exclude)
    result = []
    for item in items:
        if item.id in seen:
            continue
        seen.add(item.id)
        result.append(item)
    return tuple(result)


class _StateView:
    """Read accessors shared by the snapshot and the builder."""

    _slots: Mapping[str, Slot]

    @property
    def slots(self) -> Mapping[str, Slot]:
        return MappingProxyType(self._slots)

    @property
    def surfaces(self) -> List[str]:
        return list(self._slots)

    def slot(self, surface: str) -> Slot:
        return self._slots.get(surface) or Slot.empty(surface)

    def active(self, surface: str) -> Optional[Item]:
        return self.slot(surface).active

    def queue(self, surface: str) -> Tuple[Item, ...]:
        return self.slot(surface).queue

    @property
    def active_items(self) -> List[Item]:
        return [s.active for s in self._slots.values() if s.active is not None]

    def contains_id(self, item_id: str, surface: Optional[str] = None) -> bool:
        slots = [self.slot(surface)] if surface is not None else self._slots.values()
        return any(item.id == item_id for s in slots for item in s.items)

    def to_dict(self) -> dict:
        return {"slots": [slot.to_dict() for slot in self._slots.values()]}


class State(_StateView):
    """Immutable snapshot of every surface's slot."""

    def __init__(self, slots: Optional[Mapping[str, Slot]] = None):
        self._slots = MappingProxyType(dict(slots or {}))

    @classmethod
    def empty(cls) -> "State":
        return cls()

    def mutate(self) -> "MutableState":
        """A fresh builder seeded from this snapshot."""
        return MutableState(self._slots)

    def __repr__(self) -> str:
        return f"State({dict(self._slots)!r})"


class MutableState(_StateView):
    """
    Builder for the next snapshot. Owned by exactly one guard at a time.

    Invariant: an item id appears at most once across active + queue per
    surface. Setters drop duplicates rather than raising.
    """

    def __init__(self, slots: Optional[Mapping[str, Slot]] = None):
        self._slots: Dict[str, Slot] = dict(slots or {})
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        """End this builder's lifetime; later mutations raise."""
        self._released = True

    def _check_owned(self) -> None:
        if self._released:
            raise BuilderReleasedError(
                "State builder was released by the engine and can no longer be mutated"
            )

    def set_active(self, surface: str, item: Item, keep_queue: bool = False) -> Slot:
        """
        Make ``item`` the active item of ``surface``.

        By default the queue is cleared; with ``keep_queue`` the existing queue
        is preserved (minus ``item`` itself).
        """
        self._check_owned()
        current = self.slot(surface)
        queue = _dedupe(current.queue, exclude=item.id) if keep_queue else ()
        slot = Slot(surface=surface, active=item, queue=queue)
        self._slots[surface] = slot
        return slot

    def set_queue(self, surface: str, items: Iterable[Item]) -> Slot:
        self._check_owned()
        current = self.slot(surface)
        exclude = current.active.id if current.active is not None else None
        slot = Slot(surface=surface, active=current.active, queue=_dedupe(items, exclude))
        self._slots[surface] = slot
        return slot

    def enqueue(self, surface: str, item: Item) -> Slot:
        """Append to the queue, or make active if the surface is idle."""
        self._check_owned()
        current = self.slot(surface)
        if current.active is None:
            return self.set_active(surface, item, keep_queue=True)
        return self.set_queue(surface, list(current.queue) + [item])

    def clear_active(self, surface: str) -> Slot:
        """Drop the active item and promote the head of the queue, if any."""
        self._check_owned()
        current = self.slot(surface)
        if current.queue:
            slot = Slot(surface=surface, active=current.queue[0], queue=current.queue[1:])
        else:
            slot = Slot.empty(surface)
        self._slots[surface] = slot
        return slot

    def clear_surface(self, surface: str) -> Slot:
        """Leave ``surface`` present but empty so later guards see it was touched."""
        self._check_owned()
        slot = Slot.empty(surface)
        self._slots[surface] = slot
        return slot

    def remove_surface(self, surface: str) -> Optional[Slot]:
        self._check_owned()
        return self._slots.pop(surface, None)

    def remove_where(
        self,
        predicate: Callable[[Item], bool],
        surface: Optional[str] = None,
    ) -> Set[str]:
        """
        Remove matching items from active and queue positions.

        A removed active item is replaced by the first surviving queued item.
        Returns the surfaces that changed.
        """
        self._check_owned()
        changed: Set[str] = set()
        targets = [surface] if surface is not None else list(self._slots)
        for name in targets:
            slot = self._slots.get(name)
            if slot is None:
                continue
            active = slot.active
            active_removed = active is not None and predicate(active)
            queue = [item for item in slot.queue if not predicate(item)]
            if not active_removed and len(queue) == len(slot.queue):
                continue
            if active_removed:
                active = queue.pop(0) if queue else None
            self._slots[name] = Slot(surface=name, active=active, queue=tuple(queue))
            changed.add(name)
        return changed

    def freeze(self) -> State:
        return State(self._slots)

    def __repr__(self) -> str:
        return f"MutableState({self._slots!r}, released={self._released})"
