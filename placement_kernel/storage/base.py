"""
Item Storage — persisted per-item counters consumed by guards.

Updated by: the host, when content is actually shown or dismissed
Queried by: guards enforcing impression caps, cooldowns and dismissal

Keys are (payload id, surface, variant). Methods are coroutines so a backend
may do real I/O; backend errors surface as StorageFailure.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional


class ItemStorage(ABC):
    """Storage contract used by guards."""

    @abstractmethod
    async def get_impression_count(self, item_id: str, surface: str, variant: str) -> int:
        ...

    @abstractmethod
    async def set_impression_count(
        self, item_id: str, surface: str, variant: str, count: int
    ) -> None:
        ...

    @abstractmethod
    async def get_last_shown_at(
        self, item_id: str, surface: str, variant: str
    ) -> Optional[datetime]:
        ...

    @abstractmethod
    async def set_last_shown_at(
        self, item_id: str, surface: str, variant: str, at: Optional[datetime]
    ) -> None:
        ...

    @abstractmethod
    async def get_dismissed(
        self, item_id: str, surface: str, variant: str
    ) -> Optional[datetime]:
        """When the item was dismissed, or None if it never was."""

    @abstractmethod
    async def set_dismissed(
        self, item_id: str, surface: str, variant: str, at: Optional[datetime]
    ) -> None:
        ...

    @abstractmethod
    async def clear_item(self, item_id: str, surface: str, variant: str) -> None:
        """Forget every counter for this item."""

    async def record_shown(
        self, item_id: str, surface: str, variant: str, at: datetime
    ) -> int:
        """Bump the impression count and last-shown time. Returns the new count."""
        count = await self.get_impression_count(item_id, surface, variant) + 1
        await self.set_impression_count(item_id, surface, variant, count)
        await self.set_last_shown_at(item_id, surface, variant, at)
        return count

    async def record_dismissed(
        self, item_id: str, surface: str, variant: str, at: datetime
    ) -> None:
        await self.set_dismissed(item_id, surface, variant, at)
