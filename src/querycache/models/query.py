from __future__ import annotations

from collections.abc import Mapping
from datetime import timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from querycache.errors import InvalidOptionsError

DEFAULT_PAGE_SIZE = 50
DEFAULT_TTL = timedelta(hours=1)


class OrderDirection(StrEnum):
    ASC = "asc"
    DESC = "desc"


class FilterOperator(StrEnum):
    EQ = "=="
    NE = "!="
    LT = "<"
    LTE = "<="
    GT = ">"
    GTE = ">="
    IN = "in"
    NOT_IN = "not-in"
    ARRAY_CONTAINS = "array-contains"
    ARRAY_CONTAINS_ANY = "array-contains-any"


class Filter(BaseModel):
    """Single ``(field, operator, value)`` condition."""

    model_config = ConfigDict(extra="forbid")

    field: str
    op: FilterOperator
    value: Any = None

    @field_validator("field")
    @classmethod
    def validate_field(cls, v: str) -> str:
        if not v:
            raise ValueError("filter field must not be empty")
        return v


class QueryOptions(BaseModel):
    """Shape of a paginated read. ``page_size`` is clamped later, never rejected."""

    model_config = ConfigDict(extra="forbid")

    page_size: int = DEFAULT_PAGE_SIZE
    cursor: str | None = None
    order_field: str = "createdAt"
    order_direction: OrderDirection = OrderDirection.DESC
    # Order matters: some backends only accept filters in index order.
    filters: list[Filter] = []

    @field_validator("filters", mode="before")
    @classmethod
    def coerce_filter_tuples(cls, v: Any) -> Any:
        if not isinstance(v, (list, tuple)):
            return v
        coerced = []
        for item in v:
            if isinstance(item, tuple):
                if len(item) != 3:
                    raise ValueError(f"filter tuple must be (field, operator, value), got {item!r}")
                field, op, value = item
                item = {"field": field, "op": op, "value": value}
            coerced.append(item)
        return coerced


class CacheConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    use_cache: bool = True
    ttl: timedelta = DEFAULT_TTL

    @field_validator("ttl")
    @classmethod
    def validate_ttl(cls, v: timedelta) -> timedelta:
        if v <= timedelta(0):
            raise ValueError("ttl must be positive")
        return v


def parse_options(raw: QueryOptions | Mapping[str, Any] | None) -> QueryOptions:
    """Validate caller-supplied options, raising ``InvalidOptionsError`` on bad input."""
    if raw is None:
        return QueryOptions()
    if isinstance(raw, QueryOptions):
        return raw
    try:
        return QueryOptions.model_validate(dict(raw))
    except (ValidationError, TypeError, ValueError) as exc:
        raise InvalidOptionsError(f"Invalid query options: {exc}") from exc


def parse_cache_config(
    raw: CacheConfig | Mapping[str, Any] | None, default_ttl: timedelta = DEFAULT_TTL
) -> CacheConfig:
    if raw is None:
        return CacheConfig(ttl=default_ttl)
    if isinstance(raw, CacheConfig):
        return raw
    data = dict(raw)
    data.setdefault("ttl", default_ttl)
    try:
        return CacheConfig.model_validate(data)
    except (ValidationError, TypeError, ValueError) as exc:
        raise InvalidOptionsError(f"Invalid cache config: {exc}") from exc


class PageRequest(BaseModel):
    """Constraints handed to a data source for a single upstream read."""

    limit: int
    cursor: str | None = None
    order_field: str
    order_direction: OrderDirection
    filters: list[Filter] = []

    @classmethod
    def from_options(cls, options: QueryOptions, limit: int) -> PageRequest:
        return cls(
            limit=limit,
            cursor=options.cursor,
            order_field=options.order_field,
            order_direction=options.order_direction,
            filters=options.filters,
        )
