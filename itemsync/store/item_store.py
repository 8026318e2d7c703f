"""Local SQLite storage for items and their sync status."""

import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator, Iterable
from datetime import datetime
from pathlib import Path
from typing import Any

from ..errors import LocalStoreError
from ..models import Item, SyncStatus

logger = logging.getLogger(__name__)

# SQL schema for the item database
SCHEMA = """
CREATE TABLE IF NOT EXISTS items (
    id TEXT PRIMARY KEY,
    text TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    due_date TEXT,
    priority INTEGER NOT NULL DEFAULT 0,
    is_completed INTEGER NOT NULL DEFAULT 0,
    sync_status TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_items_status ON items(sync_status);
"""

UPSERT_SQL = """
INSERT INTO items (
    id, text, description, due_date, priority, is_completed, sync_status, updated_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    text = excluded.text,
    description = excluded.description,
    due_date = excluded.due_date,
    priority = excluded.priority,
    is_completed = excluded.is_completed,
    sync_status = excluded.sync_status,
    updated_at = excluded.updated_at
"""

_COLUMNS = "id, text, description, due_date, priority, is_completed, sync_status"


def _row_to_item(row: sqlite3.Row) -> Item:
    return Item(
        id=row["id"],
        text=row["text"],
        description=row["description"],
        due_date=datetime.fromisoformat(row["due_date"]) if row["due_date"] else None,
        priority=row["priority"],
        is_completed=bool(row["is_completed"]),
        sync_status=SyncStatus(row["sync_status"]),
    )


def _item_params(item: Item) -> tuple:
    return (
        item.id,
        item.text,
        item.description,
        item.due_date.isoformat() if item.due_date else None,
        item.priority,
        int(item.is_completed),
        item.sync_status.value,
        datetime.now().isoformat(),
    )


class ItemStore:
    """SQLite-backed keyed table of items with change notification.

    Every write wakes the subscribers of :meth:`watch`, which then re-read
    the full list of active items. All item methods are coroutines so
    callers treat each store access as a suspension point.
    """

    def __init__(self, db_path: str | Path):
        """Initialize the item store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._watchers: set[asyncio.Event] = set()

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return

        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(SCHEMA)
            self._conn.commit()
        except sqlite3.Error as e:
            raise LocalStoreError(f"Cannot open item database {self.db_path}: {e}") from e

        logger.info(f"ItemStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure database connection exists."""
        if self._conn is None:
            self.connect()
        return self._conn

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        conn = self._ensure_connected()
        try:
            cursor = conn.execute(sql, tuple(params))
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise LocalStoreError(str(e)) from e
        return cursor

    def _query(self, sql: str, params: Iterable[Any] = ()) -> list[Item]:
        conn = self._ensure_connected()
        try:
            rows = conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as e:
            raise LocalStoreError(str(e)) from e
        return [_row_to_item(row) for row in rows]

    def _notify(self) -> None:
        """Wake every live query subscriber."""
        for event in self._watchers:
            event.set()

    # ==================== Queries ====================

    async def get_all_active(self) -> list[Item]:
        """Get all items that are not soft-deleted, in insertion order."""
        return self._query(
            f"SELECT {_COLUMNS} FROM items WHERE sync_status != ? ORDER BY rowid",
            (SyncStatus.PENDING_DELETE.value,),
        )

    async def watch(self) -> AsyncIterator[list[Item]]:
        """Live query over :meth:`get_all_active`.

        Yields the current list immediately, then a fresh full list after
        every change. Changes that land while the consumer is busy are
        coalesced into a single new snapshot.
        """
        changed = asyncio.Event()
        self._watchers.add(changed)
        try:
            yield await self.get_all_active()
            while True:
                await changed.wait()
                changed.clear()
                yield await self.get_all_active()
        finally:
            self._watchers.discard(changed)

    async def get(self, key: str) -> Item | None:
        """Get a single item by key, including soft-deleted ones."""
        items = self._query(f"SELECT {_COLUMNS} FROM items WHERE id = ?", (key,))
        return items[0] if items else None

    async def get_pending(self) -> list[Item]:
        """Get every item whose status is not Synced."""
        return self._query(
            f"SELECT {_COLUMNS} FROM items WHERE sync_status != ? ORDER BY rowid",
            (SyncStatus.SYNCED.value,),
        )

    # ==================== Writes ====================

    async def upsert(self, item: Item) -> None:
        """Insert the item, or replace every field of an existing row."""
        self._execute(UPSERT_SQL, _item_params(item))
        self._notify()

    async def update(self, item: Item) -> bool:
        """Replace an existing row. Returns False if the key is unknown."""
        params = _item_params(item)
        cursor = self._execute(
            """
            UPDATE items SET
                text = ?, description = ?, due_date = ?, priority = ?,
                is_completed = ?, sync_status = ?, updated_at = ?
            WHERE id = ?
            """,
            (*params[1:], params[0]),
        )
        if cursor.rowcount:
            self._notify()
        return cursor.rowcount > 0

    async def update_status(
        self,
        key: str,
        status: SyncStatus,
        expected: SyncStatus | None = None,
    ) -> bool:
        """Set the sync status of a row.

        Args:
            key: Item key.
            status: New status.
            expected: If given, only update when the row currently holds
                this status.

        Returns:
            True if a row was changed.
        """
        sql = "UPDATE items SET sync_status = ?, updated_at = ? WHERE id = ?"
        params: list[Any] = [status.value, datetime.now().isoformat(), key]
        if expected is not None:
            sql += " AND sync_status = ?"
            params.append(expected.value)

        cursor = self._execute(sql, params)
        if cursor.rowcount:
            self._notify()
        return cursor.rowcount > 0

    async def delete_by_key(self, key: str) -> bool:
        """Delete a row. Deleting an unknown key is a no-op."""
        cursor = self._execute("DELETE FROM items WHERE id = ?", (key,))
        if cursor.rowcount:
            self._notify()
        return cursor.rowcount > 0

    async def delete_by_key_if_status(self, key: str, status: SyncStatus) -> bool:
        """Delete a row only if it holds the given status."""
        cursor = self._execute(
            "DELETE FROM items WHERE id = ? AND sync_status = ?",
            (key, status.value),
        )
        if cursor.rowcount:
            self._notify()
        return cursor.rowcount > 0

    async def delete_all(self) -> int:
        """Delete every row."""
        cursor = self._execute("DELETE FROM items")
        self._notify()
        return cursor.rowcount

    async def replace_synced(
        self, items: list[Item], skip_keys: Iterable[str] = ()
    ) -> int:
        """Replace all synced rows with a fresh server listing.

        Rows holding a pending status and keys in ``skip_keys`` are kept
        as they are. Runs in one transaction.

        Returns:
            Number of rows written.
        """
        conn = self._ensure_connected()
        skip = set(skip_keys)

        try:
            pending = {
                row["id"]
                for row in conn.execute(
                    "SELECT id FROM items WHERE sync_status != ?",
                    (SyncStatus.SYNCED.value,),
                )
            }
            keep = pending | skip

            if skip:
                placeholders = ",".join("?" * len(skip))
                conn.execute(
                    f"DELETE FROM items WHERE sync_status = ? AND id NOT IN ({placeholders})",
                    (SyncStatus.SYNCED.value, *skip),
                )
            else:
                conn.execute(
                    "DELETE FROM items WHERE sync_status = ?",
                    (SyncStatus.SYNCED.value,),
                )

            written = 0
            for item in items:
                if item.id in keep:
                    continue
                conn.execute(UPSERT_SQL, _item_params(item.with_status(SyncStatus.SYNCED)))
                written += 1

            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise LocalStoreError(str(e)) from e

        self._notify()
        return written

    def get_stats(self) -> dict[str, Any]:
        """Get row counts per sync status."""
        conn = self._ensure_connected()

        cursor = conn.execute(
            "SELECT sync_status, COUNT(*) FROM items GROUP BY sync_status"
        )
        by_status = {row[0]: row[1] for row in cursor}

        return {
            "total_items": sum(by_status.values()),
            "items_by_status": by_status,
            "pending_items": sum(
                count for status, count in by_status.items()
                if status != SyncStatus.SYNCED.value
            ),
        }
