"""Command-line entry point: ``python -m weathercache <command>``.

Results are printed to stdout as JSON; logs go to stderr. A WeatherCacheError
is printed as ``{"error": {...}}`` with exit status 1.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from weathercache.config import Settings
from weathercache.errors import WeatherCacheError
from weathercache.logs import configure_logging
from weathercache.state import create_app_state

if TYPE_CHECKING:
    from weathercache.state import AppState


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="weathercache", description=__doc__.splitlines()[0])
    sub = parser.add_subparsers(dest="command", required=True)

    current = sub.add_parser("current", help="current conditions for a location")
    current.add_argument("location")
    current.add_argument("--refresh", action="store_true", help="bypass the cache")

    forecast = sub.add_parser("forecast", help="multi-day forecast for a location")
    forecast.add_argument("location")
    forecast.add_argument("--days", type=int, default=5)
    forecast.add_argument("--refresh", action="store_true", help="bypass the cache")

    alerts = sub.add_parser("alerts", help="active alerts for a US state")
    alerts.add_argument("state")
    alerts.add_argument("--refresh", action="store_true", help="bypass the cache")

    search = sub.add_parser("search", help="location autocomplete")
    search.add_argument("query")

    prefetch = sub.add_parser("prefetch", help="warm the cache for locations")
    prefetch.add_argument("locations", nargs="+")

    sub.add_parser("stats", help="cache size, analytics and recommendations")
    sub.add_parser("clear", help="drop every cached entry")
    return parser


async def _dispatch(state: AppState, args: argparse.Namespace) -> Any:
    weather = state.weather
    match args.command:
        case "current":
            return (await weather.get_current_weather(args.location, args.refresh)).model_dump()
        case "forecast":
            response = await weather.get_forecast(args.location, args.days, args.refresh)
            return response.model_dump()
        case "alerts":
            return (await weather.get_alerts(args.state, args.refresh)).model_dump()
        case "search":
            return (await weather.search_locations(args.query)).model_dump()
        case "prefetch":
            scheduled = weather.prefetch_locations(args.locations)
            await state.coordinator.drain()
            return {"scheduled": scheduled}
        case "clear":
            state.cache.clear()
            return {"cleared": True}
        case _:
            return {
                "cache": state.cache.get_stats().model_dump(),
                "analytics": state.analytics.get_analytics().model_dump(),
                "recommendations": state.analytics.get_recommendations(),
                "api_call_rate_per_minute": state.analytics.get_api_call_rate(),
                "backoff": state.backoff.active(),
            }


async def _run(settings: Settings, args: argparse.Namespace) -> int:
    async with create_app_state(settings) as state:
        try:
            result = await _dispatch(state, args)
        except WeatherCacheError as exc:
            print(json.dumps(exc.to_dict()))
            return 1
    print(json.dumps(result, default=str))
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        settings = Settings()
    except ValidationError as exc:
        print(f"Invalid configuration:\n{exc}", file=sys.stderr)
        return 2
    configure_logging(settings.logging)
    return asyncio.run(_run(settings, args))


if __name__ == "__main__":
    sys.exit(main())
