"""Interfaces QueryCache needs from its environment."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Sequence

    from querycache.models.cache import Record
    from querycache.models.query import PageRequest


@runtime_checkable
class DataSource(Protocol):
    """A paginated collection backend.

    ``fetch_page`` returns at most ``request.limit`` records in source order,
    starting immediately after ``request.cursor`` when one is given. It raises
    ``DataSourceError`` on backend failure.
    """

    async def fetch_page(self, collection_path: str, request: PageRequest) -> Sequence[Record]: ...

    def cursor_for(self, collection_path: str, record: Record) -> str:
        """Opaque token for the position right after ``record``."""
        ...


@runtime_checkable
class DurableStore(Protocol):
    """String key/value storage that survives process restarts.

    ``set`` raises ``StorageFullError`` when capacity is exhausted.
    """

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...

    async def list_keys(self) -> list[str]: ...
