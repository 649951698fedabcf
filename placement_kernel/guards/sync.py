"""
Sync guard — reconcile what is already placed with the fresh candidate set.

Items no longer among the candidates are dropped. Items whose content
changed are swapped for the candidate's version. Unchanged items stay as
they are, in place. A surface left with nothing is cleared.
"""

from typing import Any, Callable, Dict, Optional, Sequence

import structlog

from placement_kernel.diff.equality import items_equal
from placement_kernel.engine.channel import Signal
from placement_kernel.guards.base import Guard
from placement_kernel.models.content import Item
from placement_kernel.models.history import HistoryEntry
from placement_kernel.models.state import MutableState
from placement_kernel.storage.base import ItemStorage

logger = structlog.get_logger(__name__)

ContentsEqual = Callable[[Item, Item], bool]


class SyncStateGuard(Guard):
    """Keeps placed items in step with the candidate list, keyed by item id."""

    def __init__(
        self,
        contents_equal: ContentsEqual = items_equal,
        refresh: Optional[Signal] = None,
    ):
        super().__init__(refresh=refresh)
        self.contents_equal = contents_equal

    async def __call__(
        self,
        storage: ItemStorage,
        history: Sequence[HistoryEntry],
        state: MutableState,
        candidates: Sequence[Item],
        context: Dict[str, Any],
    ) -> MutableState:
        by_id = {candidate.id: candidate for candidate in candidates}

        for surface in state.surfaces:
            current = state.slot(surface).items
            if not current:
                continue

            synced = []
            changed = False
            for item in current:
                match = by_id.get(item.id)
                if match is None:
                    logger.debug("sync.item_removed", surface=surface, item_id=item.id)
                    changed = True
                elif not self.contents_equal(item, match):
                    logger.debug("sync.item_updated", surface=surface, item_id=item.id)
                    synced.append(match)
                    changed = True
                else:
                    synced.append(item)

            if not changed:
                continue
            if not synced:
                state.clear_surface(surface)
                logger.debug("sync.surface_cleared", surface=surface)
            else:
                state.set_active(surface, synced[0])
                state.set_queue(surface, synced[1:])

        return state
