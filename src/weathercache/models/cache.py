from __future__ import annotations

from enum import StrEnum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, PositiveFloat

T = TypeVar("T")


class Category(StrEnum):
    """Known classes of cached weather data. Each maps to a TTL."""

    CURRENT_WEATHER = "current_weather"
    FORECAST = "forecast"
    ALERTS = "alerts"
    SEARCH_RESULTS = "search_results"
    HISTORICAL = "historical"
    METADATA = "metadata"
    DEFAULT = "default"


class TTLConfig(BaseModel):
    """Per-category time-to-live, in seconds.

    Categories without their own field (``historical``, ``metadata``, or any
    free-form name) use ``default``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    current_weather: PositiveFloat = 15 * 60
    forecast: PositiveFloat = 30 * 60
    alerts: PositiveFloat = 10 * 60
    search_results: PositiveFloat = 24 * 60 * 60
    default: PositiveFloat = 10 * 60

    def ttl_for(self, category: str) -> float:
        name = str(category)
        if name in type(self).model_fields:
            return getattr(self, name)
        return self.default

    def merged(self, **overrides: float) -> TTLConfig:
        """Return a new config with ``overrides`` applied key-by-key (validated)."""
        return TTLConfig.model_validate({**self.model_dump(), **overrides})


class CacheEntry(BaseModel):
    """One cached value. Replaced on refresh, never mutated."""

    model_config = ConfigDict(frozen=True)

    data: Any
    stored_at: float  # epoch seconds
    expires_at: float  # stored_at + ttl of category
    category: str = Category.DEFAULT.value


class CacheStats(BaseModel):
    size: int
    keys: list[str]


class CachedResponse(BaseModel, Generic[T]):
    """A value plus where it came from."""

    data: T
    from_cache: bool
    stale: bool = False  # served past expiry (grace window or fetch-error fallback)
    stored_at: float | None = None
    expires_at: float | None = None
