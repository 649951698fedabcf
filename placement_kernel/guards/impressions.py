"""
Impression policy guard — enforce per-option caps, cooldowns and dismissal.

Reads storage only; the host records impressions and dismissals. An item is
blocked when:
  - its impression count has reached ``max_impressions``
  - it was last shown less than ``cooldown_minutes`` ago
  - it is dismissible and was dismissed (for ``cooldown_minutes`` when set,
    otherwise until its counters are cleared)

Blocked items leave the state; a blocked active item is replaced by the
first queued item that survives.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Sequence, Set

import structlog

from placement_kernel.eligibility.rules import Clock, utc_now
from placement_kernel.engine.channel import Signal
from placement_kernel.guards.base import Guard
from placement_kernel.models.content import Item
from placement_kernel.models.history import HistoryEntry
from placement_kernel.models.state import MutableState
from placement_kernel.storage.base import ItemStorage

logger = structlog.get_logger(__name__)


def _aware(at: datetime) -> datetime:
    return at if at.tzinfo is not None else at.replace(tzinfo=timezone.utc)


class ImpressionPolicyGuard(Guard):
    def __init__(self, clock: Optional[Clock] = None, refresh: Optional[Signal] = None):
        super().__init__(refresh=refresh)
        self._clock = clock or utc_now

    async def blocked_reason(
        self, storage: ItemStorage, item: Item, now: datetime
    ) -> Optional[str]:
        """Why ``item`` may not be shown right now, or None."""
        option = item.option
        key = (item.payload_id, item.surface, item.variant)

        if option.max_impressions is not None:
            count = await storage.get_impression_count(*key)
            if count >= option.max_impressions:
                return "max_impressions"

        cooldown = (
            timedelta(minutes=option.cooldown_minutes)
            if option.cooldown_minutes is not None
            else None
        )

        if cooldown is not None:
            last_shown = await storage.get_last_shown_at(*key)
            if last_shown is not None and now < _aware(last_shown) + cooldown:
                return "cooldown"

        if option.is_dismissible:
            dismissed_at = await storage.get_dismissed(*key)
            if dismissed_at is not None:
                if cooldown is None or now < _aware(dismissed_at) + cooldown:
                    return "dismissed"

        return None

    async def __call__(
        self,
        storage: ItemStorage,
        history: Sequence[HistoryEntry],
        state: MutableState,
        candidates: Sequence[Item],
        context: Dict[str, Any],
    ) -> MutableState:
        now = self._clock()
        checked: Set[str] = set()
        blocked: Set[str] = set()

        for surface in state.surfaces:
            for item in state.slot(surface).items:
                if item.id in checked:
                    continue
                checked.add(item.id)
                reason = await self.blocked_reason(storage, item, now)
                if reason is not None:
                    blocked.add(item.id)
                    logger.debug("impressions.blocked", item_id=item.id, reason=reason)

        if blocked:
            state.remove_where(lambda item: item.id in blocked)
        return state
