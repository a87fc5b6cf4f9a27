"""Cache key generation.

Keys are normalized so that " New  York" and "new york" share one entry.
"""

from __future__ import annotations

import json
import re
from typing import Any

_WHITESPACE = re.compile(r"\s+")
_NOT_KEY_CHAR = re.compile(r"[^\w-]", re.ASCII)
_NOT_WORD_CHAR = re.compile(r"[^\w]", re.ASCII)
_LOCATION_KEY = re.compile(r"^(current|forecast)_(.+?)(?:_\d+)?$")


def normalize_location_key(location: str) -> str:
    return _NOT_KEY_CHAR.sub("", _WHITESPACE.sub("_", location.lower().strip()))


def current_weather_key(location: str) -> str:
    return f"current_{normalize_location_key(location)}"


def forecast_key(location: str, days: int = 5) -> str:
    return f"forecast_{normalize_location_key(location)}_{days}"


def alerts_key(state_code: str) -> str:
    return f"alerts_{state_code.strip().upper()}"


def search_key(query: str) -> str:
    return f"search_{query.lower().strip()}"


def history_key(location: str, from_date: str, to_date: str | None = None) -> str:
    return composite_key(
        "historical",
        location=normalize_location_key(location),
        from_date=from_date,
        to_date=to_date,
    )


def composite_key(prefix: str, /, **params: Any) -> str:
    """``prefix`` followed by ``name_value`` for each param, in order given.

    ``None`` becomes ``null``; dicts and lists are flattened to their
    alphanumeric JSON characters.
    """
    parts = []
    for name, value in params.items():
        if value is None:
            parts.append(f"{name}_null")
        elif isinstance(value, dict | list | tuple):
            parts.append(f"{name}_{_NOT_WORD_CHAR.sub('', json.dumps(value, sort_keys=True))}")
        elif isinstance(value, bool):
            parts.append(f"{name}_{str(value).lower()}")
        else:
            parts.append(f"{name}_{str(value).lower().strip()}")
    return "_".join([prefix, *parts])


def extract_location_from_key(key: str) -> str | None:
    """Recover a readable location from a current/forecast key, else None."""
    match = _LOCATION_KEY.match(key)
    if match is None:
        return None
    return match.group(2).replace("_", " ")
