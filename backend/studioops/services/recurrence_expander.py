# backend/studioops/services/recurrence_expander.py
"""
Recurrence Expander

Turns a seed window and a repetition rule into concrete occurrence windows.
Steps are taken in the studio's wall-clock time so a 09:00 class stays at
09:00 across DST changes. Every call recomputes from the seed.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date, time, timedelta
import logging
from typing import Any, Iterator, List, Optional, Sequence

from ..core.config import settings
from ..core.enums import RecurrencePattern
from ..core.exceptions import ValidationException
from ..core.time_window import TimeWindow
from ..core.timezone_utils import localize_wall_clock, to_local

logger = logging.getLogger(__name__)

FIXED_STEP_DAYS = {
    RecurrencePattern.DAILY: 1,
    RecurrencePattern.WEEKLY: 7,
    RecurrencePattern.BIWEEKLY: 14,
}


@dataclass(frozen=True)
class RecurrenceSlot:
    """One weekly slot of a variable rule. ``day_of_week`` runs 0 (Sunday) to 6 (Saturday)."""

    day_of_week: int
    start_time: time

    def __post_init__(self) -> None:
        if not 0 <= self.day_of_week <= 6:
            raise ValidationException(
                "day_of_week must be between 0 (Sunday) and 6 (Saturday)",
                code="INVALID_RECURRENCE",
                details={"day_of_week": self.day_of_week},
            )

    def to_dict(self) -> dict:
        return {"day_of_week": self.day_of_week, "start_time": self.start_time.strftime("%H:%M")}


@dataclass(frozen=True)
class RecurrenceRule:
    pattern: RecurrencePattern
    end_date: date
    slots: Sequence[RecurrenceSlot] = field(default_factory=tuple)

    def slots_as_json(self) -> Optional[List[dict]]:
        if not self.slots:
            return None
        return [slot.to_dict() for slot in self.slots]


def add_months(day: date, months: int) -> date:
    """Shift ``day`` by whole months, clamping to the target month's last day."""
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def sunday_week_start(day: date) -> date:
    return day - timedelta(days=(day.weekday() + 1) % 7)


class RecurrenceExpander:
    """Expands recurrence rules into occurrence windows."""

    def __init__(self, max_occurrences: Optional[int] = None):
        self.max_occurrences = max_occurrences or settings.max_series_occurrences

    def expand(self, seed: TimeWindow, rule: RecurrenceRule, tz: Any) -> Iterator[TimeWindow]:
        """
        Yield occurrence windows in chronological order, the seed first.

        Raises:
            ValidationException: end date before the seed, variable rule
                without slots, or more occurrences than allowed
        """
        pattern = RecurrencePattern(rule.pattern)
        seed_local = to_local(seed.start, tz)
        if rule.end_date < seed_local.date():
            raise ValidationException(
                "Recurrence end date is before the first session",
                code="INVALID_RECURRENCE",
                details={"end_date": rule.end_date.isoformat()},
            )
        if pattern == RecurrencePattern.VARIABLE and not rule.slots:
            raise ValidationException(
                "Variable recurrence requires at least one slot", code="INVALID_RECURRENCE"
            )

        if pattern == RecurrencePattern.VARIABLE:
            occurrences = self._variable(seed, rule, tz)
        else:
            occurrences = self._fixed_step(seed, pattern, rule.end_date, tz)

        for count, window in enumerate(occurrences, start=1):
            if count > self.max_occurrences:
                raise ValidationException(
                    f"Recurrence expands to more than {self.max_occurrences} sessions",
                    code="RECURRENCE_TOO_LONG",
                    details={"max_occurrences": self.max_occurrences},
                )
            yield window

    def occurrences(self, seed: TimeWindow, rule: RecurrenceRule, tz: Any) -> List[TimeWindow]:
        """Fully materialized expansion; validates the whole rule up front."""
        return list(self.expand(seed, rule, tz))

    def _fixed_step(
        self, seed: TimeWindow, pattern: RecurrencePattern, end_date: date, tz: Any
    ) -> Iterator[TimeWindow]:
        seed_local = to_local(seed.start, tz)
        seed_date = seed_local.date()
        wall_clock = seed_local.time()
        duration = seed.duration

        k = 0
        while True:
            if pattern == RecurrencePattern.MONTHLY:
                # Always offset from the seed so clamped months do not drift
                occurrence_date = add_months(seed_date, k)
            else:
                occurrence_date = seed_date + timedelta(days=FIXED_STEP_DAYS[pattern] * k)
            if occurrence_date > end_date:
                return
            start = seed.start if k == 0 else localize_wall_clock(occurrence_date, wall_clock, tz)
            yield TimeWindow(start, start + duration)
            k += 1

    def _variable(self, seed: TimeWindow, rule: RecurrenceRule, tz: Any) -> Iterator[TimeWindow]:
        duration = seed.duration
        slots = sorted(rule.slots, key=lambda slot: (slot.day_of_week, slot.start_time))
        yield seed

        week_start = sunday_week_start(to_local(seed.start, tz).date())
        while week_start <= rule.end_date:
            for slot in slots:
                occurrence_date = week_start + timedelta(days=slot.day_of_week)
                if occurrence_date > rule.end_date:
                    continue
                start = localize_wall_clock(occurrence_date, slot.start_time, tz)
                if start <= seed.start:
                    continue
                yield TimeWindow(start, start + duration)
            week_start += timedelta(days=7)
