from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel

# Bump to make every previously persisted durable entry unreadable (treated as a miss).
CACHE_VERSION = "1"

Record = dict[str, Any]


class Page(BaseModel):
    """One bounded slice of a collection."""

    items: list[Record] = []
    cursor: str | None = None  # Opaque; None means there is no next page
    has_more: bool = False
    requested_count: int  # Limit actually sent upstream (clamped page size + 1)


class CacheEntry(BaseModel):
    """A cached first page, as held by either tier."""

    key: str
    payload: Page
    written_at: datetime
    ttl: timedelta
    version: str = CACHE_VERSION

    def is_valid(self, now: datetime) -> bool:
        return now - self.written_at < self.ttl


class CacheStats(BaseModel):
    memory_entry_count: int
    durable_entry_count: int
    # Approximate footprint: UTF-8 size of every namespaced durable key and value.
    durable_bytes: int = 0
    memory_hits: int = 0
    durable_hits: int = 0
    misses: int = 0
    source_calls: int = 0
    clamped_requests: int = 0
    evictions: int = 0


class EntryMetadata(BaseModel):
    """Inspection view of a cached entry without its payload."""

    key: str
    tier: Literal["memory", "durable"]
    written_at: datetime
    age: timedelta
    ttl: timedelta
    expired: bool
    item_count: int
    version: str
