"""Durable tier implementations.

``SqliteStore`` catches ``aiosqlite.Error`` internally and degrades
gracefully: read failures return ``None`` (treated as a miss by the cache),
non-capacity write failures are logged and ignored. The one failure that does
cross the boundary is running out of space, raised as ``StorageFullError`` so
the cache can evict and retry.
"""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime

import aiosqlite
import structlog

from querycache.errors import StorageFullError

log = structlog.get_logger()

_CREATE_KV_TABLE = """
CREATE TABLE IF NOT EXISTS kv_store (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    updated_at  TEXT NOT NULL
)
"""


def _is_storage_full(exc: aiosqlite.Error) -> bool:
    if getattr(exc, "sqlite_errorcode", None) == sqlite3.SQLITE_FULL:
        return True
    return "database or disk is full" in str(exc)


class SqliteStore:
    """SQLite-backed key/value store implementing DurableStore."""

    def __init__(self, db: aiosqlite.Connection, max_entries: int | None = None) -> None:
        self._db = db
        self._max_entries = max_entries

    async def init_db(self) -> None:
        """Create the table and set WAL mode. Called once at startup."""
        await self._db.execute("PRAGMA journal_mode = WAL")
        await self._db.execute(_CREATE_KV_TABLE)
        await self._db.commit()

    async def get(self, key: str) -> str | None:
        """Read a value. Returns ``None`` on miss or read failure."""
        try:
            cursor = await self._db.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
            row = await cursor.fetchone()
            return None if row is None else row[0]
        except aiosqlite.Error:
            log.warning("store_read_error", key=key, exc_info=True)
            return None

    async def set(self, key: str, value: str) -> None:
        """Write a value. Raises ``StorageFullError`` when out of room."""
        try:
            if self._max_entries is not None:
                cursor = await self._db.execute(
                    "SELECT COUNT(*) FROM kv_store WHERE key != ?", (key,)
                )
                row = await cursor.fetchone()
                if row is not None and row[0] >= self._max_entries:
                    raise StorageFullError(
                        f"durable store holds {row[0]} of {self._max_entries} entries"
                    )
            await self._db.execute(
                "INSERT OR REPLACE INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, datetime.now(UTC).isoformat()),
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            if _is_storage_full(exc):
                raise StorageFullError(str(exc)) from exc
            log.warning("store_write_error", key=key, exc_info=True)

    async def remove(self, key: str) -> None:
        """Delete a value. Non-fatal on failure, no-op for unknown keys."""
        try:
            await self._db.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("store_delete_error", key=key, exc_info=True)

    async def list_keys(self) -> list[str]:
        """All stored keys. Returns an empty list on read failure."""
        try:
            cursor = await self._db.execute("SELECT key FROM kv_store ORDER BY key")
            rows = await cursor.fetchall()
            return [row[0] for row in rows]
        except aiosqlite.Error:
            log.warning("store_list_error", exc_info=True)
            return []


class MemoryStore:
    """Dict-backed DurableStore for tests and short-lived processes."""

    def __init__(self, max_entries: int | None = None) -> None:
        self._data: dict[str, str] = {}
        self._max_entries = max_entries

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        if (
            self._max_entries is not None
            and key not in self._data
            and len(self._data) >= self._max_entries
        ):
            raise StorageFullError(
                f"durable store holds {len(self._data)} of {self._max_entries} entries"
            )
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def list_keys(self) -> list[str]:
        return sorted(self._data)
