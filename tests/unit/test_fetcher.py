"""Unit tests for weathercache.fetcher."""

from __future__ import annotations

import json
from email.utils import formatdate
from typing import TYPE_CHECKING

import httpx
import pytest
import respx

from weathercache.config import FetcherSettings
from weathercache.errors import ErrorCode, WeatherCacheError
from weathercache.fetcher import FetchGateway, build_http_client, parse_retry_after

if TYPE_CHECKING:
    from weathercache.analytics import AnalyticsRecorder
    from weathercache.backoff import BackoffTracker
    from weathercache.clock import ManualClock

URL = "https://api.example.com/v1/current.json"


@pytest.fixture()
async def gateway(clock: ManualClock, backoff: BackoffTracker, analytics: AnalyticsRecorder):
    async with httpx.AsyncClient() as client:
        yield FetchGateway(client, backoff, analytics, clock)


# ---------------------------------------------------------------------------
# parse_retry_after
# ---------------------------------------------------------------------------


class TestParseRetryAfter:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (5, 5),
            ("5", 5),
            (" 12 ", 12),
            ("2.5", 3),
            (0.1, 1),
            ("0", None),
            (-1, None),
            ("soon", None),
            ("", None),
            (None, None),
            (True, None),
            ("nan", None),
            ("inf", None),
            ("-inf", None),
            ("1e400", None),
            (float("nan"), None),
            (float("inf"), None),
            ("1e12", 86_400),
            (10**20, 86_400),
        ],
    )
    def test_values(self, value: object, expected: int | None) -> None:
        assert parse_retry_after(value, now=1_700_000_000.0) == expected

    def test_http_date(self) -> None:
        now = 1_700_000_000.0
        assert parse_retry_after(formatdate(now + 30, usegmt=True), now) == 30

    def test_http_date_in_past(self) -> None:
        now = 1_700_000_000.0
        assert parse_retry_after(formatdate(now - 30, usegmt=True), now) is None


# ---------------------------------------------------------------------------
# build_http_client
# ---------------------------------------------------------------------------


class TestBuildHttpClient:
    async def test_defaults(self) -> None:
        client = build_http_client()
        try:
            assert client.headers["User-Agent"] == "weathercache/0.1"
            assert client.headers["Accept"] == "application/json"
            assert client.follow_redirects is True
            assert client.timeout.read == 10.0
        finally:
            await client.aclose()

    async def test_settings_applied(self) -> None:
        client = build_http_client(FetcherSettings(timeout_seconds=3, user_agent="dash/2"))
        try:
            assert client.headers["User-Agent"] == "dash/2"
            assert client.timeout.connect == 3.0
        finally:
            await client.aclose()


# ---------------------------------------------------------------------------
# FetchGateway
# ---------------------------------------------------------------------------


class TestFetchSuccess:
    async def test_returns_json_and_records_call(
        self, gateway: FetchGateway, analytics: AnalyticsRecorder
    ) -> None:
        with respx.mock:
            route = respx.get(URL).mock(
                return_value=httpx.Response(200, json={"current": {"temp_c": 21.0}})
            )
            data = await gateway.fetch_with_rate_limit(URL, "current", params={"q": "Austin"})

        assert data == {"current": {"temp_c": 21.0}}
        assert route.calls.last.request.url.params["q"] == "Austin"
        (record,) = analytics.get_analytics().api_calls
        assert (record.endpoint, record.success, record.cached) == ("current", True, False)

    async def test_post_with_json_body(self, gateway: FetchGateway) -> None:
        with respx.mock:
            route = respx.post(URL).mock(return_value=httpx.Response(200, json=[1, 2]))
            data = await gateway.fetch_with_rate_limit(
                URL, "bulk", method="POST", json_body={"locations": ["a"]}
            )
        assert data == [1, 2]
        assert json.loads(route.calls.last.request.content) == {"locations": ["a"]}

    async def test_extra_headers_sent(self, gateway: FetchGateway) -> None:
        with respx.mock:
            route = respx.get(URL).mock(return_value=httpx.Response(200, json={}))
            await gateway.fetch_with_rate_limit(
                URL, "alerts", headers={"Accept": "application/geo+json"}
            )
        assert route.calls.last.request.headers["Accept"] == "application/geo+json"


class TestRateLimit:
    async def test_retry_after_header_starts_cooldown(
        self, gateway: FetchGateway, clock: ManualClock, analytics: AnalyticsRecorder
    ) -> None:
        with respx.mock:
            route = respx.get(URL).mock(
                side_effect=[
                    httpx.Response(429, headers={"Retry-After": "5"}),
                    httpx.Response(200, json={"ok": True}),
                ]
            )
            with pytest.raises(WeatherCacheError) as exc_info:
                await gateway.fetch_with_rate_limit(URL, "current")
            assert exc_info.value.code == ErrorCode.RATE_LIMIT_EXCEEDED
            assert exc_info.value.retry_after_seconds == 5
            assert exc_info.value.recoverable is True

            clock.advance(3)
            with pytest.raises(WeatherCacheError) as exc_info:
                await gateway.fetch_with_rate_limit(URL, "current")
            assert exc_info.value.code == ErrorCode.RATE_LIMIT_COOLDOWN
            assert exc_info.value.retry_after_seconds == 2
            assert route.call_count == 1

            clock.advance(3)
            assert await gateway.fetch_with_rate_limit(URL, "current") == {"ok": True}
            assert route.call_count == 2

        snapshot = analytics.get_analytics()
        assert snapshot.rate_limit_events == 1
        assert [c.success for c in snapshot.api_calls] == [False, False, True]
        assert snapshot.api_calls[1].duration_ms == 0.0

    async def test_cooldown_is_per_endpoint(
        self, gateway: FetchGateway, backoff: BackoffTracker
    ) -> None:
        backoff.set_backoff("forecast", 30)
        with respx.mock:
            respx.get(URL).mock(return_value=httpx.Response(200, json={}))
            assert await gateway.fetch_with_rate_limit(URL, "current") == {}

    @pytest.mark.parametrize(
        ("body", "expected"),
        [
            ({"retryAfter": 12}, 12),
            ({"retry_after": "7"}, 7),
            ({}, 60),
            ({"retryAfter": "later"}, 60),
        ],
    )
    async def test_retry_after_from_body_or_default(
        self, gateway: FetchGateway, backoff: BackoffTracker, body: dict, expected: int
    ) -> None:
        with respx.mock:
            respx.get(URL).mock(return_value=httpx.Response(429, json=body))
            with pytest.raises(WeatherCacheError) as exc_info:
                await gateway.fetch_with_rate_limit(URL, "forecast")
        assert exc_info.value.retry_after_seconds == expected
        assert backoff.is_in_backoff("forecast").retry_after_seconds == expected

    async def test_header_wins_over_body(self, gateway: FetchGateway) -> None:
        with respx.mock:
            respx.get(URL).mock(
                return_value=httpx.Response(
                    429, headers={"Retry-After": "3"}, json={"retryAfter": 90}
                )
            )
            with pytest.raises(WeatherCacheError) as exc_info:
                await gateway.fetch_with_rate_limit(URL, "current")
        assert exc_info.value.retry_after_seconds == 3

    @pytest.mark.parametrize("header", ["nan", "inf", "1e400"])
    async def test_non_finite_header_falls_back_to_default(
        self, gateway: FetchGateway, backoff: BackoffTracker, header: str
    ) -> None:
        with respx.mock:
            respx.get(URL).mock(return_value=httpx.Response(429, headers={"Retry-After": header}))
            with pytest.raises(WeatherCacheError) as exc_info:
                await gateway.fetch_with_rate_limit(URL, "current")
        assert exc_info.value.code == ErrorCode.RATE_LIMIT_EXCEEDED
        assert exc_info.value.retry_after_seconds == 60
        status = backoff.is_in_backoff("current")
        assert status.in_backoff is True
        assert status.retry_after_seconds == 60

    async def test_non_finite_header_falls_back_to_body(self, gateway: FetchGateway) -> None:
        with respx.mock:
            respx.get(URL).mock(
                return_value=httpx.Response(
                    429, headers={"Retry-After": "nan"}, json={"retryAfter": 9}
                )
            )
            with pytest.raises(WeatherCacheError) as exc_info:
                await gateway.fetch_with_rate_limit(URL, "current")
        assert exc_info.value.retry_after_seconds == 9

    async def test_configured_default(
        self,
        clock: ManualClock,
        backoff: BackoffTracker,
        analytics: AnalyticsRecorder,
    ) -> None:
        async with httpx.AsyncClient() as client:
            gateway = FetchGateway(
                client, backoff, analytics, clock, FetcherSettings(default_retry_after_seconds=7)
            )
            with respx.mock:
                respx.get(URL).mock(return_value=httpx.Response(429))
                with pytest.raises(WeatherCacheError) as exc_info:
                    await gateway.fetch_with_rate_limit(URL, "current")
        assert exc_info.value.retry_after_seconds == 7

    async def test_body_message_used(self, gateway: FetchGateway) -> None:
        with respx.mock:
            respx.get(URL).mock(
                return_value=httpx.Response(429, json={"message": "Slow down", "retryAfter": 1})
            )
            with pytest.raises(WeatherCacheError, match="Slow down"):
                await gateway.fetch_with_rate_limit(URL, "current")


class TestFetchErrors:
    async def test_client_error_not_recoverable(
        self, gateway: FetchGateway, analytics: AnalyticsRecorder
    ) -> None:
        body = {"error": {"code": 1006, "message": "No matching location found."}}
        with respx.mock:
            respx.get(URL).mock(return_value=httpx.Response(400, json=body))
            with pytest.raises(WeatherCacheError) as exc_info:
                await gateway.fetch_with_rate_limit(URL, "current")
        assert exc_info.value.code == ErrorCode.FETCH_FAILED
        assert exc_info.value.message == "No matching location found."
        assert exc_info.value.recoverable is False
        assert analytics.get_analytics().api_calls[-1].success is False

    async def test_500_recoverable(self, gateway: FetchGateway) -> None:
        with respx.mock:
            respx.get(URL).mock(return_value=httpx.Response(500))
            with pytest.raises(WeatherCacheError) as exc_info:
                await gateway.fetch_with_rate_limit(URL, "current")
        assert exc_info.value.message == "API error: 500"
        assert exc_info.value.recoverable is True

    async def test_network_error(
        self, gateway: FetchGateway, analytics: AnalyticsRecorder, backoff: BackoffTracker
    ) -> None:
        with respx.mock:
            respx.get(URL).mock(side_effect=httpx.ConnectError("connection refused"))
            with pytest.raises(WeatherCacheError) as exc_info:
                await gateway.fetch_with_rate_limit(URL, "current")
        assert exc_info.value.code == ErrorCode.FETCH_FAILED
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
        assert backoff.is_in_backoff("current").in_backoff is False
        assert analytics.get_analytics().api_calls[-1].success is False

    async def test_invalid_json(self, gateway: FetchGateway) -> None:
        with respx.mock:
            respx.get(URL).mock(return_value=httpx.Response(200, text="<html>oops</html>"))
            with pytest.raises(WeatherCacheError) as exc_info:
                await gateway.fetch_with_rate_limit(URL, "current")
        assert exc_info.value.code == ErrorCode.FETCH_FAILED
        assert "Invalid JSON" in exc_info.value.message
