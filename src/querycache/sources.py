"""Data source implementations.

``HttpDataSource`` reads pages from a JSON listing endpoint:

    GET {base_url}/{collection_path}?limit=51&order_field=createdAt&order_direction=desc
        [&cursor=<token>][&filters=[["status","==","open"]]]
    -> {"items": [{...}, ...]}

``MemoryDataSource`` serves in-process record lists with the same contract.
"""

from __future__ import annotations

import asyncio
import json
import operator
from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from querycache.errors import DataSourceError, ErrorCode
from querycache.models.query import Filter, FilterOperator, OrderDirection

if TYPE_CHECKING:
    from querycache.config import SourceSettings
    from querycache.models.cache import Record
    from querycache.models.query import PageRequest

log = structlog.get_logger()

_STATUS_CODES: dict[int, ErrorCode] = {
    400: ErrorCode.FAILED_PRECONDITION,
    401: ErrorCode.PERMISSION_DENIED,
    403: ErrorCode.PERMISSION_DENIED,
    404: ErrorCode.COLLECTION_NOT_FOUND,
    412: ErrorCode.FAILED_PRECONDITION,
}


def build_http_client(settings: SourceSettings | None = None) -> httpx.AsyncClient:
    timeout = settings.timeout_seconds if settings is not None else 10.0
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout),
        follow_redirects=True,
        headers={"Accept": "application/json"},
    )


def encode_filters(filters: Sequence[Filter]) -> str:
    """Serialise filters as a JSON array of ``[field, op, value]`` triples."""
    return json.dumps([[f.field, f.op.value, f.value] for f in filters], default=str)


class HttpDataSource:
    """DataSource backed by a REST listing endpoint."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        id_field: str = "id",
    ) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._id_field = id_field

    def url_for(self, collection_path: str) -> str:
        return f"{self._base_url}/{collection_path.strip('/')}"

    async def fetch_page(self, collection_path: str, request: PageRequest) -> list[Record]:
        url = self.url_for(collection_path)
        params: dict[str, Any] = {
            "limit": request.limit,
            "order_field": request.order_field,
            "order_direction": request.order_direction.value,
        }
        if request.cursor is not None:
            params["cursor"] = request.cursor
        if request.filters:
            params["filters"] = encode_filters(request.filters)

        try:
            response = await self._client.get(url, params=params)
        except httpx.TimeoutException as exc:
            log.warning("source_timeout", url=url)
            raise DataSourceError(
                ErrorCode.SOURCE_UNAVAILABLE, f"Timed out fetching {collection_path!r}"
            ) from exc
        except httpx.HTTPError as exc:
            log.warning("source_transport_error", url=url, error=str(exc))
            raise DataSourceError(
                ErrorCode.SOURCE_UNAVAILABLE,
                f"Could not reach source for {collection_path!r}: {exc}",
            ) from exc

        if response.status_code >= 400:
            code = _STATUS_CODES.get(response.status_code, ErrorCode.SOURCE_UNAVAILABLE)
            raise DataSourceError(
                code, f"Source returned HTTP {response.status_code} for {collection_path!r}"
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise DataSourceError(
                ErrorCode.SOURCE_FAILED, f"Source returned invalid JSON for {collection_path!r}"
            ) from exc

        items = body.get("items") if isinstance(body, dict) else None
        if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
            raise DataSourceError(
                ErrorCode.SOURCE_FAILED,
                f"Source response for {collection_path!r} has no 'items' list of objects",
            )
        return items

    def cursor_for(self, collection_path: str, record: Record) -> str:
        try:
            return str(record[self._id_field])
        except KeyError:
            raise DataSourceError(
                ErrorCode.SOURCE_FAILED,
                f"Record in {collection_path!r} has no {self._id_field!r} field to page from",
            ) from None


# ---------------------------------------------------------------------------
# In-process source
# ---------------------------------------------------------------------------

_MISSING = object()

_COMPARATORS: dict[FilterOperator, Callable[[Any, Any], bool]] = {
    FilterOperator.EQ: operator.eq,
    FilterOperator.NE: operator.ne,
    FilterOperator.LT: operator.lt,
    FilterOperator.LTE: operator.le,
    FilterOperator.GT: operator.gt,
    FilterOperator.GTE: operator.ge,
    FilterOperator.IN: lambda actual, expected: actual in expected,
    FilterOperator.NOT_IN: lambda actual, expected: actual not in expected,
    FilterOperator.ARRAY_CONTAINS: lambda actual, expected: (
        isinstance(actual, list) and expected in actual
    ),
    FilterOperator.ARRAY_CONTAINS_ANY: lambda actual, expected: (
        isinstance(actual, list) and any(v in actual for v in expected)
    ),
}


def _matches(record: Record, flt: Filter) -> bool:
    actual = record.get(flt.field, _MISSING)
    if actual is _MISSING:
        return False
    try:
        return bool(_COMPARATORS[flt.op](actual, flt.value))
    except TypeError:
        # Incomparable types never match, as in document databases.
        return False


class MemoryDataSource:
    """DataSource over in-process record lists, keyed by collection path.

    Records lacking the order field are left out of ordered reads. Cursors are
    the string value of each record's ``id_field``.
    """

    def __init__(
        self,
        collections: Mapping[str, Sequence[Record]] | None = None,
        id_field: str = "id",
        latency: float = 0.0,
    ) -> None:
        self._collections: dict[str, list[Record]] = {
            path: list(records) for path, records in (collections or {}).items()
        }
        self._id_field = id_field
        self._latency = latency
        self.calls: list[tuple[str, PageRequest]] = []

    def put(self, collection_path: str, records: Sequence[Record]) -> None:
        self._collections[collection_path] = list(records)

    async def fetch_page(self, collection_path: str, request: PageRequest) -> list[Record]:
        self.calls.append((collection_path, request))
        await asyncio.sleep(self._latency)

        records = self._collections.get(collection_path)
        if records is None:
            raise DataSourceError(
                ErrorCode.COLLECTION_NOT_FOUND, f"Unknown collection {collection_path!r}"
            )

        selected = [
            r
            for r in records
            if request.order_field in r and all(_matches(r, f) for f in request.filters)
        ]
        try:
            selected.sort(
                key=lambda r: r[request.order_field],
                reverse=request.order_direction is OrderDirection.DESC,
            )
        except TypeError as exc:
            raise DataSourceError(
                ErrorCode.FAILED_PRECONDITION,
                f"Cannot order {collection_path!r} by {request.order_field!r}: mixed value types",
            ) from exc

        start = 0
        if request.cursor is not None:
            ids = [str(r.get(self._id_field)) for r in selected]
            try:
                start = ids.index(request.cursor) + 1
            except ValueError:
                raise DataSourceError(
                    ErrorCode.FAILED_PRECONDITION,
                    f"Cursor {request.cursor!r} does not belong to {collection_path!r}",
                ) from None

        return [dict(r) for r in selected[start : start + request.limit]]

    def cursor_for(self, collection_path: str, record: Record) -> str:
        return str(record[self._id_field])
