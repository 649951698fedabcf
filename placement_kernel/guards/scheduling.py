"""Scheduling guard — rank candidates per surface into active + queue."""

from typing import Any, Dict, List, Sequence

import structlog

from placement_kernel.guards.base import Guard
from placement_kernel.models.content import Item
from placement_kernel.models.history import HistoryEntry
from placement_kernel.models.state import MutableState
from placement_kernel.storage.base import ItemStorage

logger = structlog.get_logger(__name__)


def schedule_order(item: Item) -> tuple:
    """
    Sort key: priority descending, then staged items by stage ascending,
    then unstaged items. Python's sort is stable, so ties keep input order.
    """
    has_stage = item.stage is not None
    return (-item.priority, 0 if has_stage else 1, item.stage if has_stage else 0)


def group_by_surface(items: Sequence[Item]) -> Dict[str, List[Item]]:
    grouped: Dict[str, List[Item]] = {}
    for item in items:
        grouped.setdefault(item.surface, []).append(item)
    return grouped


class SchedulingGuard(Guard):
    """
    Places every candidate: per surface, the best-ranked item becomes
    active and the rest queue behind it in rank order.

    Surfaces with no candidates are left as they are; pair with
    SyncStateGuard to clear those.
    """

    async def __call__(
        self,
        storage: ItemStorage,
        history: Sequence[HistoryEntry],
        state: MutableState,
        candidates: Sequence[Item],
        context: Dict[str, Any],
    ) -> MutableState:
        for surface, items in group_by_surface(candidates).items():
            ranked = sorted(items, key=schedule_order)
            state.set_active(surface, ranked[0])
            state.set_queue(surface, ranked[1:])
            logger.debug(
                "scheduling.surface_scheduled",
                surface=surface,
                active=ranked[0].id,
                queued=len(ranked) - 1,
            )
        return state
