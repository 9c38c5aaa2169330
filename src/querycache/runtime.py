"""Wiring: build a ready-to-use QueryCache from Settings."""

from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator, Callable
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

import aiosqlite
import structlog

from querycache.cache import QueryCache
from querycache.sources import HttpDataSource, build_http_client
from querycache.stores import SqliteStore

if TYPE_CHECKING:
    from querycache.config import Settings
    from querycache.protocols import DataSource

log = structlog.get_logger()

_IN_MEMORY_DB = ":memory:"


def resolve_db_path(db_path: str) -> str:
    """Expand ``~`` and create missing parent directories. ``:memory:`` passes through."""
    if db_path == _IN_MEMORY_DB:
        return db_path
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    return str(path)


@contextlib.asynccontextmanager
async def open_query_cache(
    settings: Settings,
    source: DataSource | None = None,
    *,
    clock: Callable[[], datetime] | None = None,
) -> AsyncIterator[QueryCache]:
    """Open the SQLite durable tier, pick a data source and start the sweeper.

    Without an explicit ``source`` an ``HttpDataSource`` is built from
    ``settings.source``; ``base_url`` must then be set.
    """
    if source is None and settings.source.base_url is None:
        raise ValueError("No data source: pass one or set source.base_url")

    db_path = resolve_db_path(settings.store.db_path)
    async with contextlib.AsyncExitStack() as stack:
        db = await stack.enter_async_context(aiosqlite.connect(db_path))
        store = SqliteStore(db, max_entries=settings.store.max_entries)
        await store.init_db()

        if source is None:
            client = await stack.enter_async_context(build_http_client(settings.source))
            source = HttpDataSource(
                client,
                settings.source.base_url,  # type: ignore[arg-type]
                id_field=settings.source.id_field,
            )

        if clock is None:
            cache = QueryCache.from_settings(settings.cache, source, store)
        else:
            cache = QueryCache.from_settings(settings.cache, source, store, clock=clock)
        await stack.enter_async_context(cache)
        log.info("query_cache_ready", db_path=db_path, source=type(source).__name__)
        yield cache
