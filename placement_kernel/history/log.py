"""
History Log — append-only record of what was shown, dismissed or expired.

Behavioral Contract:
- Append-only. No entry is ever modified or deleted.
- Entries are read back in append order.
- Guards get read access; appends happen in the host when content is
  actually shown or dismissed.
"""

import sqlite3
from datetime import datetime
from typing import List, Optional

from placement_kernel.errors import StorageFailure
from placement_kernel.models.history import HistoryEntry, HistoryEvent


class HistoryLog:
    """
    Append-only history store.
    Prototype: SQLite. Production: any ordered event log.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the history table if it doesn't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS history (
                item_id TEXT NOT NULL,
                payload_id TEXT NOT NULL,
                surface TEXT NOT NULL,
                variant TEXT NOT NULL,
                event TEXT NOT NULL,
                timestamp TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_history_item_id ON history(item_id)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_history_surface ON history(surface)
        """)
        self._conn.commit()

    def append(self, entry: HistoryEntry) -> HistoryEntry:
        """Append one entry."""
        try:
            self._conn.execute(
                """
                INSERT INTO history (item_id, payload_id, surface, variant, event, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.item_id,
                    entry.payload_id,
                    entry.surface,
                    entry.variant,
                    entry.event.value,
                    entry.timestamp.isoformat(),
                ),
            )
            self._conn.commit()
        except sqlite3.Error as e:
            raise StorageFailure(f"Failed to append history entry: {e}") from e
        return entry

    def _deserialize(self, row: sqlite3.Row) -> HistoryEntry:
        return HistoryEntry(
            item_id=row["item_id"],
            payload_id=row["payload_id"],
            surface=row["surface"],
            variant=row["variant"],
            event=HistoryEvent(row["event"]),
            timestamp=datetime.fromisoformat(row["timestamp"]),
        )

    def _select(self, sql: str, params: tuple = ()) -> List[HistoryEntry]:
        try:
            rows = self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageFailure(f"Failed to read history: {e}") from e
        try:
            return [self._deserialize(r) for r in rows]
        except (KeyError, ValueError) as e:
            raise StorageFailure(f"Corrupt history row: {e}") from e

    def entries(self, limit: Optional[int] = None) -> List[HistoryEntry]:
        """All entries oldest first; with ``limit``, only the most recent ones."""
        if limit is None:
            return self._select("SELECT * FROM history ORDER BY rowid")
        rows = self._select(
            "SELECT * FROM history ORDER BY rowid DESC LIMIT ?", (limit,)
        )
        return list(reversed(rows))

    def query(
        self,
        item_id: Optional[str] = None,
        surface: Optional[str] = None,
        event: Optional[HistoryEvent] = None,
    ) -> List[HistoryEntry]:
        """Entries matching every given filter, oldest first."""
        clauses = []
        params = []
        if item_id is not None:
            clauses.append("item_id = ?")
            params.append(item_id)
        if surface is not None:
            clauses.append("surface = ?")
            params.append(surface)
        if event is not None:
            clauses.append("event = ?")
            params.append(event.value)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        return self._select(f"SELECT * FROM history {where}ORDER BY rowid", tuple(params))

    def count(self) -> int:
        """Total number of history entries."""
        try:
            row = self._conn.execute("SELECT COUNT(*) as cnt FROM history").fetchone()
        except sqlite3.Error as e:
            raise StorageFailure(f"Failed to count history: {e}") from e
        return row["cnt"]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
