"""Two-tier TTL cache for paginated collection reads.

Only first pages (``cursor is None``) are cached: keys that included the
cursor would multiply with pagination depth. Lookups try the memory tier,
then the durable tier (backfilling memory on a hit), then the data source,
whose result is written through to both tiers.

Every upstream read is bounded: the requested page size is clamped to
``[1, MAX_PAGE_SIZE]`` and the source is asked for one extra record, which is
trimmed off and only used to decide ``has_more``.

Durable tier failures never reach the caller. A ``StorageFullError`` on write
triggers an oldest-first eviction pass and a single retry; if that also fails
the entry lives in memory only. Data source failures always reach the caller
and leave both tiers untouched.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import math
from collections import Counter
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, ValidationError
from pydantic_core import PydanticSerializationError

from querycache.errors import DataSourceError, ErrorCode, InvalidOptionsError, StorageFullError
from querycache.models.cache import CACHE_VERSION, CacheEntry, CacheStats, EntryMetadata, Page
from querycache.models.query import (
    DEFAULT_TTL,
    CacheConfig,
    PageRequest,
    QueryOptions,
    parse_cache_config,
    parse_options,
)

if TYPE_CHECKING:
    from querycache.config import CacheSettings
    from querycache.protocols import DataSource, DurableStore

log = structlog.get_logger()

MAX_PAGE_SIZE = 100
ALL_KEYS = "*"

_EPOCH = datetime.min.replace(tzinfo=UTC)


def clamp_read(raw_page_size: int) -> int:
    """Bound a requested page size to ``[1, MAX_PAGE_SIZE]``."""
    return min(max(raw_page_size, 1), MAX_PAGE_SIZE)


def _tagged(value: Any) -> dict[str, str]:
    # Non-JSON values hash by type as well as by text.
    return {"__type__": type(value).__name__, "repr": str(value)}


def build_cache_key(collection_path: str, options: QueryOptions) -> str:
    """Deterministic key for a first-page read. The cursor is never part of it."""
    canonical = json.dumps(
        {
            "collection": collection_path,
            "page_size": clamp_read(options.page_size),
            "order_field": options.order_field,
            "order_direction": options.order_direction.value,
            "filters": [[f.field, f.op.value, f.value] for f in options.filters],
        },
        sort_keys=True,
        separators=(",", ":"),
        default=_tagged,
    )
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{collection_path}:{digest}"


def _collection_of(key: str) -> str:
    return key.rsplit(":", 1)[0]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class _EntryStamp(BaseModel):
    """Just enough of a serialised entry to order it for eviction."""

    written_at: datetime


class QueryCache:
    """Bounded, cached, paginated reads over a DataSource."""

    clamp_read = staticmethod(clamp_read)

    def __init__(
        self,
        source: DataSource,
        store: DurableStore,
        *,
        default_ttl: timedelta = DEFAULT_TTL,
        sweep_interval: timedelta = timedelta(seconds=60),
        eviction_fraction: float = 0.5,
        key_prefix: str = "querycache:",
        single_flight: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._source = source
        self._store = store
        self._default_ttl = default_ttl
        self._sweep_interval = sweep_interval
        self._eviction_fraction = eviction_fraction
        self._key_prefix = key_prefix
        self._single_flight = single_flight
        self._clock = clock

        self._memory: dict[str, CacheEntry] = {}
        self._inflight: dict[str, asyncio.Task[Page]] = {}
        self._counters: Counter[str] = Counter()
        self._sweep_task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(
        cls,
        settings: CacheSettings,
        source: DataSource,
        store: DurableStore,
        clock: Callable[[], datetime] = _utcnow,
    ) -> QueryCache:
        return cls(
            source,
            store,
            default_ttl=settings.default_ttl,
            sweep_interval=timedelta(seconds=settings.sweep_interval_seconds),
            eviction_fraction=settings.eviction_fraction,
            key_prefix=settings.key_prefix,
            single_flight=settings.single_flight,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def fetch_paginated(
        self,
        collection_path: str,
        options: QueryOptions | Mapping[str, Any] | None = None,
        cache_config: CacheConfig | Mapping[str, Any] | None = None,
    ) -> Page:
        """Return one page of ``collection_path``, from cache when allowed.

        Raises ``InvalidOptionsError`` before any I/O for malformed input and
        ``DataSourceError`` when the source fails.
        """
        if not isinstance(collection_path, str) or not collection_path.strip():
            raise InvalidOptionsError("collection_path must be a non-empty string")
        opts = parse_options(options)
        config = parse_cache_config(cache_config, self._default_ttl)
        page_size = self._clamp(collection_path, opts.page_size)

        if opts.cursor is not None:
            return await self._fetch_from_source(collection_path, opts, page_size)

        key = build_cache_key(collection_path, opts)
        if config.use_cache:
            # Memory hits must not suspend, so the tier is checked synchronously.
            cached = self._memory_lookup(key)
            if cached is None:
                cached = await self._durable_lookup(key)
            if cached is not None:
                return cached.model_copy(deep=True)
            self._counters["misses"] += 1
            log.debug("cache_miss", key=key, collection=collection_path)

        if self._single_flight:
            page = await self._fetch_shared(key, collection_path, opts, page_size, config.ttl)
        else:
            page = await self._fetch_and_store(key, collection_path, opts, page_size, config.ttl)
        return page.model_copy(deep=True)

    def cache_key(
        self, collection_path: str, options: QueryOptions | Mapping[str, Any] | None = None
    ) -> str:
        """The key ``fetch_paginated`` would use for these arguments."""
        return build_cache_key(collection_path, parse_options(options))

    def _clamp(self, collection_path: str, raw_page_size: int) -> int:
        page_size = clamp_read(raw_page_size)
        if page_size != raw_page_size:
            self._counters["clamped_requests"] += 1
            log.info(
                "page_size_clamped",
                collection=collection_path,
                requested=raw_page_size,
                clamped=page_size,
            )
        return page_size

    def _memory_lookup(self, key: str) -> Page | None:
        entry = self._memory.get(key)
        if entry is None:
            return None
        if entry.is_valid(self._clock()):
            self._counters["memory_hits"] += 1
            log.debug("cache_hit", key=key, tier="memory")
            return entry.payload
        del self._memory[key]
        log.debug("cache_stale", key=key, tier="memory")
        return None

    async def _durable_lookup(self, key: str) -> Page | None:
        durable_key = self._durable_key(key)
        raw = await self._store.get(durable_key)
        if raw is None:
            return None
        entry = self._decode(key, raw)
        if entry is None:
            await self._store.remove(durable_key)
            return None
        if not entry.is_valid(self._clock()):
            await self._store.remove(durable_key)
            log.debug("cache_stale", key=key, tier="durable")
            return None

        current = self._memory.get(key)
        if current is None or current.written_at < entry.written_at:
            self._memory[key] = entry
        self._counters["durable_hits"] += 1
        log.debug("cache_hit", key=key, tier="durable")
        return entry.payload

    def _decode(self, key: str, raw: str) -> CacheEntry | None:
        try:
            entry = CacheEntry.model_validate_json(raw)
        except ValidationError:
            log.warning("cache_entry_corrupt", key=key)
            return None
        if entry.version != CACHE_VERSION or entry.key != key:
            log.info("cache_entry_outdated", key=key, version=entry.version)
            return None
        return entry

    # ------------------------------------------------------------------
    # Upstream
    # ------------------------------------------------------------------

    async def _fetch_shared(
        self,
        key: str,
        collection_path: str,
        options: QueryOptions,
        page_size: int,
        ttl: timedelta,
    ) -> Page:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(
                self._fetch_and_store(key, collection_path, options, page_size, ttl),
                name=f"querycache-fetch:{key}",
            )
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._release_inflight(key, done))
        else:
            log.debug("cache_join_inflight", key=key)
        # Cancelling one caller must not cancel the fetch the others wait on.
        return await asyncio.shield(task)

    def _release_inflight(self, key: str, task: asyncio.Task[Page]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Mark retrieved so a fetch nobody awaits any more does not log at GC time.
            task.exception()

    async def _fetch_and_store(
        self,
        key: str,
        collection_path: str,
        options: QueryOptions,
        page_size: int,
        ttl: timedelta,
    ) -> Page:
        page = await self._fetch_from_source(collection_path, options, page_size)
        entry = CacheEntry(key=key, payload=page, written_at=self._clock(), ttl=ttl)
        self._memory[key] = entry
        await self._write_durable(entry)
        return page

    async def _fetch_from_source(
        self, collection_path: str, options: QueryOptions, page_size: int
    ) -> Page:
        limit = page_size + 1
        request = PageRequest.from_options(options, limit)
        self._counters["source_calls"] += 1
        try:
            records = list(await self._source.fetch_page(collection_path, request))
            has_more = len(records) > page_size
            items = records[:page_size]
            cursor = self._source.cursor_for(collection_path, items[-1]) if has_more else None
        except DataSourceError as exc:
            log.warning(
                "source_fetch_failed",
                collection=collection_path,
                code=exc.code.value,
                error=exc.message,
            )
            raise
        except Exception as exc:
            log.warning("source_fetch_failed", collection=collection_path, exc_info=True)
            raise DataSourceError(
                ErrorCode.SOURCE_FAILED, f"Fetching {collection_path!r} failed: {exc}"
            ) from exc

        log.info(
            "source_fetched",
            collection=collection_path,
            count=len(items),
            has_more=has_more,
            paged=options.cursor is not None,
        )
        return Page(items=items, cursor=cursor, has_more=has_more, requested_count=limit)

    # ------------------------------------------------------------------
    # Durable tier
    # ------------------------------------------------------------------

    def _durable_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    async def _durable_keys(self) -> list[str]:
        return [k for k in await self._store.list_keys() if k.startswith(self._key_prefix)]

    async def _write_durable(self, entry: CacheEntry) -> None:
        """Persist an entry. Never raises; the memory tier already holds it."""
        durable_key = self._durable_key(entry.key)
        try:
            value = entry.model_dump_json()
        except PydanticSerializationError:
            log.warning("durable_encode_failed", key=entry.key, exc_info=True)
            return

        try:
            await self._store.set(durable_key, value)
            return
        except StorageFullError as exc:
            log.warning("durable_write_failed", key=entry.key, attempt=1, error=exc.message)

        evicted = await self._evict_oldest()
        try:
            await self._store.set(durable_key, value)
        except StorageFullError as exc:
            log.warning(
                "durable_write_failed",
                key=entry.key,
                attempt=2,
                evicted=evicted,
                error=exc.message,
            )

    async def _evict_oldest(self) -> int:
        """Remove the oldest share of durable entries. Unreadable entries go first."""
        stamped: list[tuple[datetime, str]] = []
        for durable_key in await self._durable_keys():
            raw = await self._store.get(durable_key)
            written_at = _EPOCH
            if raw is not None:
                try:
                    written_at = _EntryStamp.model_validate_json(raw).written_at
                except ValidationError:
                    log.warning("cache_entry_corrupt", key=durable_key)
            stamped.append((written_at, durable_key))
        if not stamped:
            return 0

        stamped.sort()
        count = max(1, math.ceil(len(stamped) * self._eviction_fraction))
        for _, durable_key in stamped[:count]:
            await self._store.remove(durable_key)
        self._counters["evictions"] += count
        log.info("durable_evicted", count=count, remaining=len(stamped) - count)
        return count

    # ------------------------------------------------------------------
    # Invalidation and inspection
    # ------------------------------------------------------------------

    async def invalidate(self, key: str) -> None:
        """Drop one entry, or every entry with ``"*"``, from both tiers."""
        if key == ALL_KEYS:
            memory_cleared = len(self._memory)
            self._memory.clear()
            durable_keys = await self._durable_keys()
            for durable_key in durable_keys:
                await self._store.remove(durable_key)
            log.info(
                "cache_invalidated",
                key=ALL_KEYS,
                memory_cleared=memory_cleared,
                durable_cleared=len(durable_keys),
            )
            return

        self._memory.pop(key, None)
        await self._store.remove(self._durable_key(key))
        log.info("cache_invalidated", key=key)

    async def invalidate_collection(self, collection_path: str) -> int:
        """Drop every cached page of one collection. Returns the number of keys removed."""
        removed = {k for k in self._memory if _collection_of(k) == collection_path}
        for key in removed:
            del self._memory[key]

        prefix_len = len(self._key_prefix)
        for durable_key in await self._durable_keys():
            key = durable_key[prefix_len:]
            if _collection_of(key) == collection_path:
                await self._store.remove(durable_key)
                removed.add(key)

        log.info("cache_collection_invalidated", collection=collection_path, removed=len(removed))
        return len(removed)

    async def stats(self) -> CacheStats:
        durable_keys = await self._durable_keys()
        durable_bytes = 0
        for durable_key in durable_keys:
            raw = await self._store.get(durable_key)
            if raw is not None:
                durable_bytes += len(durable_key.encode("utf-8")) + len(raw.encode("utf-8"))
        return CacheStats(
            memory_entry_count=len(self._memory),
            durable_entry_count=len(durable_keys),
            durable_bytes=durable_bytes,
            **self._counters,
        )

    async def entry_metadata(self, key: str) -> EntryMetadata | None:
        """Describe a cached entry without serving or evicting it."""
        entry = self._memory.get(key)
        tier = "memory"
        if entry is None:
            raw = await self._store.get(self._durable_key(key))
            entry = self._decode(key, raw) if raw is not None else None
            tier = "durable"
        if entry is None:
            return None

        now = self._clock()
        return EntryMetadata(
            key=key,
            tier=tier,
            written_at=entry.written_at,
            age=now - entry.written_at,
            ttl=entry.ttl,
            expired=not entry.is_valid(now),
            item_count=len(entry.payload.items),
            version=entry.version,
        )

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------

    def sweep_expired(self) -> int:
        """Remove expired memory-tier entries. The durable tier is checked lazily."""
        now = self._clock()
        expired = [key for key, entry in self._memory.items() if not entry.is_valid(now)]
        for key in expired:
            del self._memory[key]
        if expired:
            log.info("cache_sweep_complete", removed=len(expired), remaining=len(self._memory))
        return len(expired)

    def start(self) -> None:
        """Launch the background sweep on the running event loop."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="querycache-sweep")

    async def _sweep_loop(self) -> None:
        interval = self._sweep_interval.total_seconds()
        while True:
            await asyncio.sleep(interval)
            self.sweep_expired()

    async def aclose(self) -> None:
        for fetch in list(self._inflight.values()):
            fetch.cancel()
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def __aenter__(self) -> QueryCache:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
