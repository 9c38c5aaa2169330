"""Unit-specific fixtures (no I/O beyond in-memory SQLite)."""

from __future__ import annotations

import aiosqlite
import pytest

from querycache.stores import SqliteStore


@pytest.fixture()
async def sqlite_store():
    """In-memory SQLite durable store for unit tests."""
    async with aiosqlite.connect(":memory:") as db:
        store = SqliteStore(db)
        await store.init_db()
        yield store
