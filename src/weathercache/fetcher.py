"""HTTP gateway for upstream weather APIs.

Every request passes through three checks: the endpoint must not be cooling
down after a rate limit, the response must not be a 429 (which starts a new
cooldown), and the outcome is always recorded in analytics.
"""

from __future__ import annotations

import json
import math
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from weathercache.config import FetcherSettings
from weathercache.errors import ErrorCode, WeatherCacheError

if TYPE_CHECKING:
    from weathercache.analytics import AnalyticsRecorder
    from weathercache.backoff import BackoffTracker
    from weathercache.clock import Clock

log = structlog.get_logger()

# Upper bound on any single cooldown taken from a server hint.
MAX_RETRY_AFTER_SECONDS = 86_400


def build_http_client(settings: FetcherSettings | None = None) -> httpx.AsyncClient:
    settings = settings or FetcherSettings()
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.timeout_seconds),
        headers={"User-Agent": settings.user_agent, "Accept": "application/json"},
        follow_redirects=True,
    )


def _body_json(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return body if isinstance(body, dict) else {}


def parse_retry_after(value: Any, now: float) -> int | None:
    """Seconds to wait from a Retry-After style value, or None if unusable.

    Accepts delta-seconds (``"5"``, ``5``, ``"2.5"``) and HTTP dates.
    Non-finite values are rejected; large ones are capped at one day.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        seconds = float(value)
    else:
        text = str(value).strip()
        try:
            seconds = float(text)
        except ValueError:
            try:
                seconds = parsedate_to_datetime(text).timestamp() - now
            except (TypeError, ValueError):
                return None
    if not math.isfinite(seconds) or seconds <= 0:
        return None
    return min(math.ceil(seconds), MAX_RETRY_AFTER_SECONDS)


class FetchGateway:
    def __init__(
        self,
        client: httpx.AsyncClient,
        backoff: BackoffTracker,
        analytics: AnalyticsRecorder,
        clock: Clock,
        settings: FetcherSettings | None = None,
    ) -> None:
        self._client = client
        self._backoff = backoff
        self._analytics = analytics
        self._clock = clock
        self._settings = settings or FetcherSettings()

    async def fetch_with_rate_limit(
        self,
        url: str,
        endpoint: str,
        *,
        method: str = "GET",
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        json_body: Any = None,
    ) -> Any:
        """Request ``url`` and return its decoded JSON body.

        ``endpoint`` names the backoff bucket and the analytics record; several
        URLs can share one endpoint.

        Raises:
            WeatherCacheError: RATE_LIMIT_COOLDOWN without touching the
                network while ``endpoint`` is cooling down, RATE_LIMIT_EXCEEDED
                on a 429, FETCH_FAILED on anything else that goes wrong.
        """
        status = self._backoff.is_in_backoff(endpoint)
        if status.in_backoff:
            self._analytics.record_call(endpoint, 0.0, False, cached=False)
            raise WeatherCacheError(
                ErrorCode.RATE_LIMIT_COOLDOWN,
                f"Rate limit cooldown. Please try again in {status.retry_after_seconds} seconds.",
                recoverable=True,
                retry_after_seconds=status.retry_after_seconds,
            )

        started = self._clock.monotonic()
        try:
            data = await self._request(url, endpoint, method, params, headers, json_body)
        except Exception:
            self._analytics.record_call(endpoint, self._elapsed_ms(started), False, cached=False)
            raise
        self._analytics.record_call(endpoint, self._elapsed_ms(started), True, cached=False)
        return data

    async def _request(
        self,
        url: str,
        endpoint: str,
        method: str,
        params: dict[str, Any] | None,
        headers: dict[str, str] | None,
        json_body: Any,
    ) -> Any:
        try:
            response = await self._client.request(
                method, url, params=params, headers=headers, json=json_body
            )
        except httpx.HTTPError as exc:
            log.warning("fetch_network_error", endpoint=endpoint, url=url, error=str(exc))
            raise WeatherCacheError(
                ErrorCode.FETCH_FAILED,
                f"Network error fetching {endpoint}: {str(exc) or type(exc).__name__}",
                recoverable=True,
            ) from exc

        if response.status_code == 429:
            body = _body_json(response)
            now = self._clock.now()
            seconds = (
                parse_retry_after(response.headers.get("Retry-After"), now)
                or parse_retry_after(body.get("retryAfter"), now)
                or parse_retry_after(body.get("retry_after"), now)
                or self._settings.default_retry_after_seconds
            )
            self._backoff.set_backoff(endpoint, seconds)
            raise WeatherCacheError(
                ErrorCode.RATE_LIMIT_EXCEEDED,
                body.get("message")
                or f"Rate limit exceeded. Please try again in {seconds} seconds.",
                recoverable=True,
                retry_after_seconds=seconds,
            )

        if response.is_error:
            body = _body_json(response)
            detail = body.get("error") or body.get("message")
            if isinstance(detail, dict):
                detail = detail.get("message")
            log.warning("fetch_http_error", endpoint=endpoint, status=response.status_code)
            raise WeatherCacheError(
                ErrorCode.FETCH_FAILED,
                str(detail) if detail else f"API error: {response.status_code}",
                recoverable=response.status_code >= 500,
            )

        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise WeatherCacheError(
                ErrorCode.FETCH_FAILED,
                f"Invalid JSON from {endpoint}",
                recoverable=True,
            ) from exc

    def _elapsed_ms(self, started: float) -> float:
        return (self._clock.monotonic() - started) * 1000
