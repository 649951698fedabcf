"""
Ineligibility removal guard — evict placed items that stopped qualifying.

Place it last in the pipeline. Earlier guards may keep state structure
intact (sync, impression policy); this guard catches items whose conditions
flipped since they were placed, e.g. a time window that just closed.

Evaluation happens in a single first pass over every slot, each distinct
item id exactly once, before anything moves. A queued item promoted to
active keeps the verdict it got in that pass; it is not re-checked.
"""

from typing import Any, Dict, Optional, Sequence, Set

import structlog

from placement_kernel.eligibility.resolver import EligibilityResolver
from placement_kernel.engine.channel import Signal
from placement_kernel.guards.base import Guard
from placement_kernel.models.content import Item
from placement_kernel.models.history import HistoryEntry
from placement_kernel.models.state import MutableState
from placement_kernel.storage.base import ItemStorage

logger = structlog.get_logger(__name__)


class RemoveIneligibleGuard(Guard):
    def __init__(self, resolver: EligibilityResolver, refresh: Optional[Signal] = None):
        super().__init__(refresh=refresh)
        self.resolver = resolver

    async def _ineligible_ids(self, state: MutableState, context: Dict[str, Any]) -> Set[str]:
        checked: Set[str] = set()
        ineligible: Set[str] = set()
        for surface in state.surfaces:
            for item in state.slot(surface).items:
                if item.id in checked:
                    continue
                checked.add(item.id)
                if not await self.resolver.is_eligible(item, context):
                    ineligible.add(item.id)
        return ineligible

    async def __call__(
        self,
        storage: ItemStorage,
        history: Sequence[HistoryEntry],
        state: MutableState,
        candidates: Sequence[Item],
        context: Dict[str, Any],
    ) -> MutableState:
        ineligible = await self._ineligible_ids(state, context)
        if not ineligible:
            return state

        changed = state.remove_where(lambda item: item.id in ineligible)
        for surface in sorted(changed):
            active = state.active(surface)
            logger.info(
                "removal.surface_pruned",
                surface=surface,
                active=active.id if active else None,
                queued=len(state.queue(surface)),
            )
        return state
