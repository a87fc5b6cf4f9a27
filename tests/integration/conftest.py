"""Integration test fixtures.

Provides a fully wired AppState (virtual clock, no snapshot persistence,
respx-mocked upstream APIs) and an environment for running the CLI in a
subprocess.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import httpx
import pytest
import respx

from weathercache.config import Settings
from weathercache.state import create_app_state

if TYPE_CHECKING:
    from pathlib import Path

    from weathercache.clock import ManualClock
    from weathercache.state import AppState

BASE = "https://weather.test/v1"
ALERTS = "https://alerts.test/alerts/active"

CURRENT_BODY = {"location": {"name": "Austin"}, "current": {"temp_c": 31.0}}


def _settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "snapshot": {"backend": "none"},
        "weather_api": {"base_url": BASE, "api_key": "secret", "alerts_url": ALERTS},
        "cache": {"ttl": {"current_weather": 100, "forecast": 200, "alerts": 40}},
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture()
def make_settings():
    """Factory for test Settings; keyword overrides replace whole sections."""
    return _settings


@pytest.fixture()
def upstream():
    with respx.mock(assert_all_called=False) as router:
        router.get(f"{BASE}/current.json", name="current").mock(
            return_value=httpx.Response(200, json=CURRENT_BODY)
        )
        router.get(f"{BASE}/forecast.json", name="forecast").mock(
            return_value=httpx.Response(200, json={"forecast": {"forecastday": []}})
        )
        router.get(ALERTS, name="alerts").mock(
            return_value=httpx.Response(200, json={"features": []})
        )
        yield router


@pytest.fixture()
async def app_state(clock: ManualClock, upstream: respx.Router) -> AppState:
    """Full AppState on a virtual clock with mocked upstream APIs."""
    async with httpx.AsyncClient() as client:
        async with create_app_state(_settings(), clock=clock, http_client=client) as state:
            yield state


@pytest.fixture()
def subprocess_env(tmp_path: Path) -> dict[str, str]:
    """Environment for ``python -m weathercache`` isolated from the user's config."""
    env = {k: v for k, v in os.environ.items() if not k.startswith("WEATHERCACHE__")}
    env["WEATHERCACHE__SNAPSHOT__DIRECTORY"] = str(tmp_path / "data")
    env["WEATHERCACHE__WEATHER_API__BASE_URL"] = "http://127.0.0.1:9/v1"
    env["WEATHERCACHE__LOGGING__FORMAT"] = "json"
    return env
