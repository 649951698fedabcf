"""Eligibility scheduling guard — show every eligible candidate, no queueing."""

from typing import Any, Dict, Optional, Sequence

from placement_kernel.eligibility.resolver import EligibilityResolver
from placement_kernel.engine.channel import Signal
from placement_kernel.guards.base import Guard
from placement_kernel.models.content import Item
from placement_kernel.models.history import HistoryEntry
from placement_kernel.models.state import MutableState
from placement_kernel.storage.base import ItemStorage


class EligibilitySchedulingGuard(Guard):
    """
    Filters candidates through the resolver and makes each eligible item
    active on its surface. When several eligible candidates share a surface,
    the last one in candidate order wins.
    """

    def __init__(self, resolver: EligibilityResolver, refresh: Optional[Signal] = None):
        super().__init__(refresh=refresh)
        self.resolver = resolver

    async def __call__(
        self,
        storage: ItemStorage,
        history: Sequence[HistoryEntry],
        state: MutableState,
        candidates: Sequence[Item],
        context: Dict[str, Any],
    ) -> MutableState:
        eligible = [c for c in candidates if await self.resolver.is_eligible(c, context)]
        for item in eligible:
            state.set_active(item.surface, item)
        return state
