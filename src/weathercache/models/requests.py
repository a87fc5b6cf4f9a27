from __future__ import annotations

import re
from datetime import date

from pydantic import BaseModel, field_validator, model_validator


class LocationQuery(BaseModel):
    location: str

    @field_validator("location")
    @classmethod
    def validate_location(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("location must not be empty")
        if len(v) > 200:
            raise ValueError("location must not exceed 200 characters")
        return v


class ForecastQuery(LocationQuery):
    days: int = 5

    @field_validator("days")
    @classmethod
    def validate_days(cls, v: int) -> int:
        if not 1 <= v <= 14:
            raise ValueError("days must be between 1 and 14")
        return v


class AlertsQuery(BaseModel):
    state: str

    @field_validator("state")
    @classmethod
    def validate_state(cls, v: str) -> str:
        v = v.strip().upper()
        if not re.match(r"^[A-Z]{2}$", v):
            raise ValueError(f"Invalid state code: {v!r}")
        return v


class HistoryQuery(LocationQuery):
    from_date: date
    to_date: date | None = None

    @model_validator(mode="after")
    def validate_range(self) -> HistoryQuery:
        if self.to_date is not None and self.to_date < self.from_date:
            raise ValueError("to_date must not be before from_date")
        return self
