"""
Guard contract — one stage of the placement pipeline.

A guard receives the run's builder, reads candidates, history and storage,
mutates only the builder, and returns it (or a replacement builder) for the
next stage. It may read and write context facts. It must not keep the
builder after returning; the engine releases it at the end of the run.
"""

from typing import Any, Dict, Optional, Sequence

from placement_kernel.engine.channel import Signal
from placement_kernel.models.content import Item
from placement_kernel.models.history import HistoryEntry
from placement_kernel.models.state import MutableState
from placement_kernel.storage.base import ItemStorage


class Guard:
    """
    Base pipeline stage. The default implementation passes state through.

    ``refresh`` is an optional Signal; when it fires the engine re-runs the
    whole pipeline with the current candidates.
    """

    def __init__(self, refresh: Optional[Signal] = None):
        self.refresh = refresh

    @property
    def name(self) -> str:
        return type(self).__name__

    async def __call__(
        self,
        storage: ItemStorage,
        history: Sequence[HistoryEntry],
        state: MutableState,
        candidates: Sequence[Item],
        context: Dict[str, Any],
    ) -> MutableState:
        return state
