"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Constructor arguments
  2. Environment variables  (WEATHERCACHE__CACHE__TTL__FORECAST=900)
  3. weathercache.yaml      (searched in cwd, then the platform config dir)
  4. Hardcoded defaults

The config file is optional; every field has a default.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, PositiveInt
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from weathercache.models.cache import TTLConfig

_DEFAULT_DATA_DIR = platformdirs.user_data_dir("weathercache")
_DEFAULT_CONFIG_DIR = platformdirs.user_config_dir("weathercache")


def _find_config_file() -> str | None:
    """Return the path of the first weathercache.yaml found, or None."""
    candidates = [
        Path("weathercache.yaml"),
        Path(_DEFAULT_CONFIG_DIR) / "weathercache.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class CacheSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ttl: TTLConfig = TTLConfig()
    # Stale values are still served for this fraction of the TTL after expiry.
    grace_fraction: float = Field(default=0.25, ge=0.0)
    # prefetch() refreshes once this fraction of the TTL has elapsed.
    prefetch_fraction: float = Field(default=0.75, gt=0.0, le=1.0)
    sweep_interval_seconds: PositiveFloat = 300
    # None disables the bound; a stuck refresh then holds its key forever.
    refresh_timeout_seconds: PositiveFloat | None = 30


class AnalyticsSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_call_records: PositiveInt = 100
    flush_interval_seconds: PositiveFloat = 300


class SnapshotSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    backend: Literal["file", "sqlite", "none"] = "file"
    directory: str = _DEFAULT_DATA_DIR


class FetcherSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timeout_seconds: PositiveFloat = 10.0
    default_retry_after_seconds: PositiveInt = 60
    user_agent: str = "weathercache/0.1"


class WeatherApiSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    base_url: str = "https://api.weatherapi.com/v1"
    api_key: str = ""
    alerts_url: str = "https://api.weather.gov/alerts/active"
    max_prefetch_locations: PositiveInt = 10


class LoggingSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: WEATHERCACHE__SNAPSHOT__BACKEND=sqlite
        env_prefix="WEATHERCACHE__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
        extra="forbid",
    )

    cache: CacheSettings = CacheSettings()
    analytics: AnalyticsSettings = AnalyticsSettings()
    snapshot: SnapshotSettings = SnapshotSettings()
    fetcher: FetcherSettings = FetcherSettings()
    weather_api: WeatherApiSettings = WeatherApiSettings()
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
