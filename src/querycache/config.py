"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Constructor arguments
  2. Environment variables  (QUERYCACHE__CACHE__DEFAULT_TTL_SECONDS=600)
  3. querycache.yaml        (searched in cwd, then the platform config dir)
  4. Hardcoded defaults

The config file is optional. Every field has a default.
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel, ConfigDict, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

_DEFAULT_DATA_DIR = platformdirs.user_data_dir("querycache")
_DEFAULT_DB_PATH = str(Path(_DEFAULT_DATA_DIR) / "cache.db")


def _find_config_file() -> str | None:
    """Return the path of the first querycache.yaml found, or None."""
    candidates = [
        Path("querycache.yaml"),
        Path(platformdirs.user_config_dir("querycache")) / "querycache.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class CacheSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    default_ttl_seconds: float = 3600
    sweep_interval_seconds: float = 60
    eviction_fraction: float = 0.5
    key_prefix: str = "querycache:"
    single_flight: bool = True

    @field_validator("default_ttl_seconds", "sweep_interval_seconds")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than 0")
        return v

    @field_validator("eviction_fraction")
    @classmethod
    def validate_fraction(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("eviction_fraction must be in (0, 1]")
        return v

    @property
    def default_ttl(self) -> timedelta:
        return timedelta(seconds=self.default_ttl_seconds)


class StoreSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    db_path: str = _DEFAULT_DB_PATH
    max_entries: int | None = None


class SourceSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    base_url: str | None = None
    timeout_seconds: float = 10.0
    id_field: str = "id"


class LoggingSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: QUERYCACHE__STORE__MAX_ENTRIES=500
        env_prefix="QUERYCACHE__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    data_dir: str = _DEFAULT_DATA_DIR
    cache: CacheSettings = CacheSettings()
    store: StoreSettings = StoreSettings()
    source: SourceSettings = SourceSettings()
    logging: LoggingSettings = LoggingSettings()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
        **kwargs: Any,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,  # Constructor args (highest priority)
            env_settings,  # Environment variables
            YamlConfigSettingsSource(settings_cls),  # YAML file
            # dotenv and file secrets intentionally excluded
        )
