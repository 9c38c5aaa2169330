"""Integration test fixtures.

Settings point the durable tier at an in-memory SQLite database unless a test
asks for a file-backed one via ``file_settings``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from querycache.config import Settings

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture()
def settings() -> Settings:
    return Settings(store={"db_path": ":memory:"})  # type: ignore[arg-type]


@pytest.fixture()
def file_settings(tmp_path: Path) -> Settings:
    db_path = tmp_path / "nested" / "dir" / "cache.db"
    return Settings(store={"db_path": str(db_path)})  # type: ignore[arg-type]
