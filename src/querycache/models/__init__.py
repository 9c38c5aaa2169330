from __future__ import annotations

from querycache.models.cache import (
    CACHE_VERSION,
    CacheEntry,
    CacheStats,
    EntryMetadata,
    Page,
    Record,
)
from querycache.models.query import (
    DEFAULT_PAGE_SIZE,
    DEFAULT_TTL,
    CacheConfig,
    Filter,
    FilterOperator,
    OrderDirection,
    PageRequest,
    QueryOptions,
    parse_cache_config,
    parse_options,
)

__all__ = [
    # cache
    "CACHE_VERSION",
    "CacheEntry",
    "CacheStats",
    "EntryMetadata",
    "Page",
    "Record",
    # query
    "DEFAULT_PAGE_SIZE",
    "DEFAULT_TTL",
    "CacheConfig",
    "Filter",
    "FilterOperator",
    "OrderDirection",
    "PageRequest",
    "QueryOptions",
    "parse_cache_config",
    "parse_options",
]
