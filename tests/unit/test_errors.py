"""Unit tests for the error envelope and logging setup."""

from __future__ import annotations

import json

import structlog

from weathercache.config import LoggingSettings
from weathercache.errors import ErrorCode, WeatherCacheError
from weathercache.logs import configure_logging


class TestWeatherCacheError:
    def test_to_dict(self) -> None:
        exc = WeatherCacheError(ErrorCode.FETCH_FAILED, "API error: 500", recoverable=True)
        assert exc.to_dict() == {
            "error": {"code": "FETCH_FAILED", "message": "API error: 500", "recoverable": True}
        }

    def test_retry_after_included_when_set(self) -> None:
        exc = WeatherCacheError(
            ErrorCode.RATE_LIMIT_EXCEEDED, "slow down", recoverable=True, retry_after_seconds=5
        )
        assert exc.to_dict()["error"]["retry_after_seconds"] == 5

    def test_str_is_message(self) -> None:
        exc = WeatherCacheError(ErrorCode.INVALID_INPUT, "location must not be empty")
        assert str(exc) == "location must not be empty"
        assert exc.recoverable is False
        assert "INVALID_INPUT" in repr(exc)


class TestConfigureLogging:
    def test_json_output_on_stderr(self, capsys) -> None:
        try:
            configure_logging(LoggingSettings(level="INFO", format="json"))
            structlog.get_logger().info("hello", key="k")
            structlog.get_logger().debug("hidden")
        finally:
            structlog.reset_defaults()

        captured = capsys.readouterr()
        assert captured.out == ""
        (line,) = captured.err.splitlines()
        event = json.loads(line)
        assert event["event"] == "hello"
        assert event["key"] == "k"
        assert event["level"] == "info"
        assert "timestamp" in event
