"""
SQLite item storage — counters that survive restarts.

One row per (item, surface, variant). Upserts keep the row count bounded by
the number of distinct items ever shown or dismissed.
"""

import sqlite3
from datetime import datetime
from typing import Any, Optional

from placement_kernel.errors import StorageFailure
from placement_kernel.storage.base import ItemStorage


def _to_text(at: Optional[datetime]) -> Optional[str]:
    return at.isoformat() if at else None


def _from_text(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SqliteItemStorage(ItemStorage):
    """
    Persistent counter store.
    Prototype: SQLite. Production: any backend implementing ItemStorage.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the counters table if it doesn't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS item_counters (
                item_id TEXT NOT NULL,
                surface TEXT NOT NULL,
                variant TEXT NOT NULL,
                impressions INTEGER NOT NULL DEFAULT 0,
                last_shown_at TEXT,
                dismissed_at TEXT,
                PRIMARY KEY (item_id, surface, variant)
            )
        """)
        self._conn.commit()

    def _read(self, column: str, item_id: str, surface: str, variant: str) -> Any:
        try:
            row = self._conn.execute(
                f"SELECT {column} FROM item_counters "
                "WHERE item_id = ? AND surface = ? AND variant = ?",
                (item_id, surface, variant),
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageFailure(f"Failed to read {column} for {item_id}: {e}") from e
        return row[column] if row else None

    def _write(self, column: str, value: Any, item_id: str, surface: str, variant: str) -> None:
        try:
            self._conn.execute(
                "INSERT INTO item_counters (item_id, surface, variant) VALUES (?, ?, ?) "
                "ON CONFLICT(item_id, surface, variant) DO NOTHING",
                (item_id, surface, variant),
            )
            self._conn.execute(
                f"UPDATE item_counters SET {column} = ? "
                "WHERE item_id = ? AND surface = ? AND variant = ?",
                (value, item_id, surface, variant),
            )
            self._conn.commit()
        except sqlite3.Error as e:
            raise StorageFailure(f"Failed to write {column} for {item_id}: {e}") from e

    async def get_impression_count(self, item_id: str, surface: str, variant: str) -> int:
        return self._read("impressions", item_id, surface, variant) or 0

    async def set_impression_count(
        self, item_id: str, surface: str, variant: str, count: int
    ) -> None:
        self._write("impressions", count, item_id, surface, variant)

    async def get_last_shown_at(
        self, item_id: str, surface: str, variant: str
    ) -> Optional[datetime]:
        return _from_text(self._read("last_shown_at", item_id, surface, variant))

    async def set_last_shown_at(
        self, item_id: str, surface: str, variant: str, at: Optional[datetime]
    ) -> None:
        self._write("last_shown_at", _to_text(at), item_id, surface, variant)

    async def get_dismissed(
        self, item_id: str, surface: str, variant: str
    ) -> Optional[datetime]:
        return _from_text(self._read("dismissed_at", item_id, surface, variant))

    async def set_dismissed(
        self, item_id: str, surface: str, variant: str, at: Optional[datetime]
    ) -> None:
        self._write("dismissed_at", _to_text(at), item_id, surface, variant)

    async def clear_item(self, item_id: str, surface: str, variant: str) -> None:
        try:
            self._conn.execute(
                "DELETE FROM item_counters WHERE item_id = ? AND surface = ? AND variant = ?",
                (item_id, surface, variant),
            )
            self._conn.commit()
        except sqlite3.Error as e:
            raise StorageFailure(f"Failed to clear {item_id}: {e}") from e

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
