"""Error taxonomy shared by the cache, the gateway and the data service."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    RATE_LIMIT_COOLDOWN = "RATE_LIMIT_COOLDOWN"  # backoff active, no request sent
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"  # upstream answered 429, backoff just set
    FETCH_FAILED = "FETCH_FAILED"  # network/HTTP/parse error with no stale fallback
    ALREADY_REFRESHING = "ALREADY_REFRESHING"
    INVALID_INPUT = "INVALID_INPUT"


class WeatherCacheError(Exception):
    """Single exception type for every failure surfaced to callers.

    ``code`` identifies the failure class, ``recoverable`` tells the caller
    whether retrying later can succeed.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        recoverable: bool = False,
        retry_after_seconds: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.recoverable = recoverable
        self.retry_after_seconds = retry_after_seconds

    def to_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {
            "code": self.code.value,
            "message": self.message,
            "recoverable": self.recoverable,
        }
        if self.retry_after_seconds is not None:
            error["retry_after_seconds"] = self.retry_after_seconds
        return {"error": error}

    def __repr__(self) -> str:
        return f"WeatherCacheError(code={self.code.value!r}, message={self.message!r})"
