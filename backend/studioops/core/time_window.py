"""
Half-open time window used throughout scheduling.

A window ``[start, end)`` overlaps another when ``a.start < b.end`` and
``b.start < a.end``; windows that only touch at an endpoint do not overlap.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .exceptions import ValidationException
from .timezone_utils import ensure_utc


@dataclass(frozen=True)
class TimeWindow:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        start = ensure_utc(self.start)
        end = ensure_utc(self.end)
        if start >= end:
            raise ValidationException(
                "Session start time must be before end time",
                code="INVALID_WINDOW",
                details={"start": start.isoformat(), "end": end.isoformat()},
            )
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def duration_minutes(self) -> int:
        return int(self.duration.total_seconds() // 60)

    def overlaps(self, other: "TimeWindow") -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, other: "TimeWindow") -> bool:
        return self.start <= other.start and other.end <= self.end

    def shifted(self, delta: timedelta) -> "TimeWindow":
        return TimeWindow(self.start + delta, self.end + delta)

    @classmethod
    def of(cls, start: datetime, end: Optional[datetime] = None, *, minutes: int = 0) -> "TimeWindow":
        """Build a window from a start and either an end or a length in minutes."""
        if end is None:
            end = start + timedelta(minutes=minutes)
        return cls(start, end)
