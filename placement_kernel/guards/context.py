"""Context facts guard — publish host facts into the run context."""

import inspect
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence, Union

from placement_kernel.engine.channel import Signal
from placement_kernel.guards.base import Guard
from placement_kernel.models.content import Item
from placement_kernel.models.history import HistoryEntry
from placement_kernel.models.state import MutableState
from placement_kernel.storage.base import ItemStorage

FactsProvider = Callable[[], Union[Mapping[str, Any], Awaitable[Mapping[str, Any]]]]


class ContextFactsGuard(Guard):
    """
    Calls ``provider`` once per run and writes its facts into the context,
    e.g. ``{"app_opened_count": 3}``, so later guards and rules can read
    them. Place it before the guards that consume the facts.
    """

    def __init__(self, provider: FactsProvider, refresh: Optional[Signal] = None):
        super().__init__(refresh=refresh)
        self.provider = provider

    async def __call__(
        self,
        storage: ItemStorage,
        history: Sequence[HistoryEntry],
        state: MutableState,
        candidates: Sequence[Item],
        context: Dict[str, Any],
    ) -> MutableState:
        facts = self.provider()
        if inspect.isawaitable(facts):
            facts = await facts
        context.update(facts)
        return state
