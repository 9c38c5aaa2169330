"""Shared fixtures: a controllable clock, sample collections, and a wired cache."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from querycache.cache import QueryCache
from querycache.models.cache import Record
from querycache.sources import MemoryDataSource
from querycache.stores import MemoryStore


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def make_widgets(count: int = 5) -> list[Record]:
    """w1..wN, newest first under the default createdAt-descending order."""
    return [
        {"id": f"w{i}", "name": f"Widget {i}", "createdAt": count - i + 1}
        for i in range(1, count + 1)
    ]


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def widgets() -> list[Record]:
    return make_widgets()


@pytest.fixture()
def source(widgets: list[Record]) -> MemoryDataSource:
    return MemoryDataSource(
        {
            "widgets": widgets,
            "gadgets": [
                {"id": "g1", "createdAt": 2, "status": "open"},
                {"id": "g2", "createdAt": 1, "status": "closed"},
            ],
            "big": [{"id": f"b{i}", "createdAt": i} for i in range(150)],
        }
    )


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture()
def cache(source: MemoryDataSource, store: MemoryStore, clock: FakeClock) -> QueryCache:
    return QueryCache(source, store, clock=clock)
