from __future__ import annotations

from querycache.cache import ALL_KEYS, MAX_PAGE_SIZE, QueryCache, build_cache_key, clamp_read
from querycache.config import Settings
from querycache.errors import (
    DataSourceError,
    ErrorCode,
    InvalidOptionsError,
    QueryCacheError,
    StorageFullError,
)
from querycache.logs import configure_logging
from querycache.models import (
    CacheConfig,
    CacheStats,
    EntryMetadata,
    Filter,
    FilterOperator,
    OrderDirection,
    Page,
    PageRequest,
    QueryOptions,
)
from querycache.protocols import DataSource, DurableStore
from querycache.runtime import open_query_cache
from querycache.sources import HttpDataSource, MemoryDataSource
from querycache.stores import MemoryStore, SqliteStore

__all__ = [
    # cache
    "ALL_KEYS",
    "MAX_PAGE_SIZE",
    "QueryCache",
    "build_cache_key",
    "clamp_read",
    "open_query_cache",
    # models
    "CacheConfig",
    "CacheStats",
    "EntryMetadata",
    "Filter",
    "FilterOperator",
    "OrderDirection",
    "Page",
    "PageRequest",
    "QueryOptions",
    # collaborators
    "DataSource",
    "DurableStore",
    "HttpDataSource",
    "MemoryDataSource",
    "MemoryStore",
    "SqliteStore",
    # errors
    "DataSourceError",
    "ErrorCode",
    "InvalidOptionsError",
    "QueryCacheError",
    "StorageFullError",
    # setup
    "Settings",
    "configure_logging",
]
