"""In-memory item storage for tests and short-lived processes."""

from datetime import datetime
from typing import Dict, Optional, Tuple

from placement_kernel.storage.base import ItemStorage

_Key = Tuple[str, str, str]


class _Counters:
    def __init__(self):
        self.impressions = 0
        self.last_shown_at: Optional[datetime] = None
        self.dismissed_at: Optional[datetime] = None


class InMemoryItemStorage(ItemStorage):
    """
    In-memory counter store.
    Production would use SqliteItemStorage or a remote backend.
    """

    def __init__(self):
        self._items: Dict[_Key, _Counters] = {}

    def _get(self, key: _Key) -> _Counters:
        return self._items.setdefault(key, _Counters())

    async def get_impression_count(self, item_id: str, surface: str, variant: str) -> int:
        counters = self._items.get((item_id, surface, variant))
        return counters.impressions if counters else 0

    async def set_impression_count(
        self, item_id: str, surface: str, variant: str, count: int
    ) -> None:
        self._get((item_id, surface, variant)).impressions = count

    async def get_last_shown_at(
        self, item_id: str, surface: str, variant: str
    ) -> Optional[datetime]:
        counters = self._items.get((item_id, surface, variant))
        return counters.last_shown_at if counters else None

    async def set_last_shown_at(
        self, item_id: str, surface: str, variant: str, at: Optional[datetime]
    ) -> None:
        self._get((item_id, surface, variant)).last_shown_at = at

    async def get_dismissed(
        self, item_id: str, surface: str, variant: str
    ) -> Optional[datetime]:
        counters = self._items.get((item_id, surface, variant))
        return counters.dismissed_at if counters else None

    async def set_dismissed(
        self, item_id: str, surface: str, variant: str, at: Optional[datetime]
    ) -> None:
        self._get((item_id, surface, variant)).dismissed_at = at

    async def clear_item(self, item_id: str, surface: str, variant: str) -> None:
        self._items.pop((item_id, surface, variant), None)

    def count(self) -> int:
        """Number of items with stored counters."""
        return len(self._items)
