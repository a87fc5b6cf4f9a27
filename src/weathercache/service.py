"""Weather data operations on top of the cache and the HTTP gateway.

Current conditions, forecasts, location search and history come from
WeatherAPI.com; alerts come from the US National Weather Service. Each result
is wrapped in a ``CachedResponse`` so callers can tell cached, stale and fresh
data apart.
"""

from __future__ import annotations

from functools import partial
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from weathercache.errors import ErrorCode, WeatherCacheError
from weathercache.keys import (
    alerts_key,
    current_weather_key,
    forecast_key,
    history_key,
    search_key,
)
from weathercache.models.cache import CachedResponse, Category
from weathercache.models.requests import AlertsQuery, ForecastQuery, HistoryQuery, LocationQuery

if TYPE_CHECKING:
    from datetime import date

    from weathercache.cache import CacheStore
    from weathercache.config import WeatherApiSettings
    from weathercache.fetcher import FetchGateway

log = structlog.get_logger()

M = TypeVar("M", bound=BaseModel)

MIN_SEARCH_LENGTH = 3
DEFAULT_FORECAST_DAYS = 5


def _validate(model: type[M], **values: Any) -> M:
    try:
        return model(**values)
    except ValidationError as exc:
        message = exc.errors()[0]["msg"].removeprefix("Value error, ")
        raise WeatherCacheError(ErrorCode.INVALID_INPUT, message) from exc


def state_from_location(location: str) -> str | None:
    """``"Austin, TX"`` → ``"TX"``; None when there is no usable state part."""
    parts = location.split(",")
    if len(parts) < 2:
        return None
    try:
        return AlertsQuery(state=parts[1]).state
    except ValidationError:
        return None


class WeatherDataService:
    def __init__(
        self, cache: CacheStore, gateway: FetchGateway, settings: WeatherApiSettings
    ) -> None:
        self._cache = cache
        self._gateway = gateway
        self._settings = settings

    # ------------------------------------------------------------------
    # Cached reads
    # ------------------------------------------------------------------

    async def get_current_weather(
        self, location: str, force_refresh: bool = False
    ) -> CachedResponse[Any]:
        query = _validate(LocationQuery, location=location)
        return await self._cache.resolve(
            current_weather_key(query.location),
            partial(self._fetch_current, query.location),
            Category.CURRENT_WEATHER,
            force_refresh,
        )

    async def get_forecast(
        self, location: str, days: int = DEFAULT_FORECAST_DAYS, force_refresh: bool = False
    ) -> CachedResponse[Any]:
        query = _validate(ForecastQuery, location=location, days=days)
        return await self._cache.resolve(
            forecast_key(query.location, query.days),
            partial(self._fetch_forecast, query.location, query.days),
            Category.FORECAST,
            force_refresh,
        )

    async def get_alerts(self, state: str, force_refresh: bool = False) -> CachedResponse[Any]:
        query = _validate(AlertsQuery, state=state)
        return await self._cache.resolve(
            alerts_key(query.state),
            partial(self._fetch_alerts, query.state),
            Category.ALERTS,
            force_refresh,
        )

    async def search_locations(
        self, query: str, force_refresh: bool = False
    ) -> CachedResponse[Any]:
        query = query.strip()
        if len(query) < MIN_SEARCH_LENGTH:
            return CachedResponse(data=[], from_cache=False)
        return await self._cache.resolve(
            search_key(query),
            partial(self._fetch_search, query),
            Category.SEARCH_RESULTS,
            force_refresh,
        )

    async def get_historical(
        self,
        location: str,
        from_date: date | str,
        to_date: date | str | None = None,
        force_refresh: bool = False,
    ) -> CachedResponse[Any]:
        query = _validate(HistoryQuery, location=location, from_date=from_date, to_date=to_date)
        start = query.from_date.isoformat()
        end = query.to_date.isoformat() if query.to_date is not None else None
        return await self._cache.resolve(
            history_key(query.location, start, end),
            partial(self._fetch_history, query.location, start, end),
            Category.HISTORICAL,
            force_refresh,
        )

    # ------------------------------------------------------------------
    # Prefetch and invalidation
    # ------------------------------------------------------------------

    def prefetch_location(self, location: str) -> list[str]:
        """Warm current, forecast and (for "City, ST") alerts. Returns keys being refreshed."""
        query = _validate(LocationQuery, location=location)
        scheduled: list[str] = []
        jobs: list[tuple[str, Any, Category]] = [
            (
                current_weather_key(query.location),
                partial(self._fetch_current, query.location),
                Category.CURRENT_WEATHER,
            ),
            (
                forecast_key(query.location, DEFAULT_FORECAST_DAYS),
                partial(self._fetch_forecast, query.location, DEFAULT_FORECAST_DAYS),
                Category.FORECAST,
            ),
        ]
        state = state_from_location(query.location)
        if state is not None:
            jobs.append((alerts_key(state), partial(self._fetch_alerts, state), Category.ALERTS))

        for key, fetch_fn, category in jobs:
            if self._cache.prefetch(key, fetch_fn, category):
                scheduled.append(key)
        log.info("prefetch_location", location=query.location, scheduled=len(scheduled))
        return scheduled

    def prefetch_locations(self, locations: list[str]) -> dict[str, list[str]]:
        """Prefetch up to ``max_prefetch_locations`` locations; the rest are ignored."""
        limit = self._settings.max_prefetch_locations
        if len(locations) > limit:
            log.warning("prefetch_locations_truncated", requested=len(locations), limit=limit)
        return {location: self.prefetch_location(location) for location in locations[:limit]}

    def clear_location(self, location: str) -> None:
        query = _validate(LocationQuery, location=location)
        self._cache.delete(current_weather_key(query.location))
        self._cache.delete(forecast_key(query.location, DEFAULT_FORECAST_DAYS))
        log.info("location_cache_cleared", location=query.location)

    # ------------------------------------------------------------------
    # Upstream calls
    # ------------------------------------------------------------------

    def _params(self, **extra: Any) -> dict[str, Any]:
        return {"key": self._settings.api_key, **extra}

    async def _fetch_current(self, location: str) -> Any:
        return await self._gateway.fetch_with_rate_limit(
            f"{self._settings.base_url}/current.json",
            "current",
            params=self._params(q=location, aqi="yes"),
        )

    async def _fetch_forecast(self, location: str, days: int) -> Any:
        return await self._gateway.fetch_with_rate_limit(
            f"{self._settings.base_url}/forecast.json",
            "forecast",
            params=self._params(q=location, days=days, aqi="yes", alerts="yes"),
        )

    async def _fetch_search(self, query: str) -> Any:
        return await self._gateway.fetch_with_rate_limit(
            f"{self._settings.base_url}/search.json",
            "search",
            params=self._params(q=query),
        )

    async def _fetch_history(self, location: str, from_date: str, to_date: str | None) -> Any:
        params = self._params(q=location, dt=from_date)
        if to_date is not None:
            params["end_dt"] = to_date
        return await self._gateway.fetch_with_rate_limit(
            f"{self._settings.base_url}/history.json", "history", params=params
        )

    async def _fetch_alerts(self, state: str) -> Any:
        body = await self._gateway.fetch_with_rate_limit(
            self._settings.alerts_url,
            "alerts",
            params={"area": state},
            headers={"Accept": "application/geo+json"},
        )
        if isinstance(body, dict):
            return body.get("features", [])
        return body
