# backend/studioops/services/availability_service.py
"""
Availability Service

Answers "is resource R free during [start, end)?" by combining the session
interval index, approved coach time-off and the studio's operating hours.
All methods are pure reads.
"""

from dataclasses import dataclass
from datetime import date, time, timedelta
import logging
from typing import Any, List, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from ..core.enums import ResourceType
from ..core.exceptions import NotFoundException, SchedulingConflictException, ValidationException
from ..core.time_window import TimeWindow
from ..core.timezone_utils import get_studio_timezone, localize_wall_clock, to_local
from ..models.session import StudioSession
from ..models.studio import Studio
from ..models.time_off import CoachTimeOff
from ..repositories import RepositoryFactory
from .base import BaseService

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

# Reasons reported for operating-hours failures
STUDIO_CLOSED = "studio_closed"
OUTSIDE_HOURS = "outside_operating_hours"


def parse_clock(value: str) -> time:
    """Parse ``HH:MM``; ``24:00`` is returned as ``time.max`` (end of day)."""
    try:
        hours_str, minutes_str = value.strip().split(":")[:2]
        hours, minutes = int(hours_str), int(minutes_str)
    except (AttributeError, ValueError) as exc:
        raise ValidationException(f"Invalid clock time: {value!r}", code="INVALID_TIME") from exc
    if hours == 24 and minutes == 0:
        return time.max
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValidationException(f"Invalid clock time: {value!r}", code="INVALID_TIME")
    return time(hours, minutes)


@dataclass(frozen=True)
class ResourceAssignment:
    room_id: str
    coach_id: str


class AvailabilityService(BaseService):
    """Read-only availability answers for rooms, coaches, clients and studio hours."""

    def __init__(self, db: Session):
        super().__init__(db)
        self.session_repository = RepositoryFactory.create_session_repository(db)
        self.time_off_repository = RepositoryFactory.create_time_off_repository(db)
        self.studio_repository = RepositoryFactory.create_studio_repository(db)

    @BaseService.measure_operation("is_free")
    def is_free(
        self,
        tenant_id: str,
        resource_type: ResourceType,
        resource_id: str,
        window: TimeWindow,
        exclude_session_id: Optional[str] = None,
    ) -> bool:
        resource_type = ResourceType(resource_type)
        if resource_type == ResourceType.STUDIO_HOURS:
            studio = self.studio_repository.get_studio(resource_id)
            if studio is None or studio.tenant_id != tenant_id:
                raise NotFoundException("Studio not found", details={"studio_id": resource_id})
            return self.check_operating_hours(studio, window) is None
        if self.find_blocking_session(
            tenant_id, resource_type, resource_id, window, exclude_session_id
        ):
            return False
        if resource_type == ResourceType.COACH:
            return self.find_blocking_time_off(tenant_id, resource_id, window) is None
        return True

    def find_blocking_session(
        self,
        tenant_id: str,
        resource_type: ResourceType,
        resource_id: str,
        window: TimeWindow,
        exclude_session_id: Optional[str] = None,
    ) -> Optional[StudioSession]:
        """First non-cancelled session on the resource overlapping ``window``."""
        overlaps = self.session_repository.find_overlapping(
            tenant_id, resource_type, resource_id, window, exclude_session_id
        )
        return overlaps[0] if overlaps else None

    def find_blocking_time_off(
        self, tenant_id: str, coach_id: str, window: TimeWindow
    ) -> Optional[CoachTimeOff]:
        overlaps = self.time_off_repository.find_approved_overlaps(tenant_id, coach_id, window)
        return overlaps[0] if overlaps else None

    def check_operating_hours(self, studio: Studio, window: TimeWindow) -> Optional[str]:
        """
        Return None when ``window`` fits inside the studio's hours for the local
        weekday of its start, else the failure reason.
        """
        table: Optional[Mapping[str, Any]] = studio.opening_hours
        if not table:
            return None

        tz = get_studio_timezone(studio)
        local_start = to_local(window.start, tz)
        day_hours = table.get(WEEKDAY_NAMES[local_start.weekday()])
        if not day_hours:
            return STUDIO_CLOSED

        day = local_start.date()
        opens_at = localize_wall_clock(day, parse_clock(day_hours["open"]), tz)
        close_clock = parse_clock(day_hours["close"])
        if close_clock == time.max:
            closes_at = localize_wall_clock(day + timedelta(days=1), time(0, 0), tz)
        else:
            closes_at = localize_wall_clock(day, close_clock, tz)

        if opens_at <= window.start and window.end <= closes_at:
            return None
        return OUTSIDE_HOURS

    @BaseService.measure_operation("auto_assign_resources")
    def auto_assign_resources(
        self,
        tenant_id: str,
        studio_id: str,
        window: TimeWindow,
        preferred_room_id: Optional[str] = None,
        preferred_coach_id: Optional[str] = None,
    ) -> ResourceAssignment:
        """
        Pick a free room and coach for ``window``.

        A preferred room or coach is used when free; otherwise the first free
        active resource of the studio, ordered by name, is chosen.
        """
        studio = self.studio_repository.get_studio(studio_id)
        if studio is None or studio.tenant_id != tenant_id:
            raise NotFoundException("Studio not found", details={"studio_id": studio_id})

        coach_id = self._pick_coach(tenant_id, studio_id, window, preferred_coach_id)
        room_id = self._pick_room(tenant_id, studio_id, window, preferred_room_id)
        self.logger.info(
            "Auto-assigned resources",
            extra={"studio_id": studio_id, "room_id": room_id, "coach_id": coach_id},
        )
        return ResourceAssignment(room_id=room_id, coach_id=coach_id)

    def _pick_coach(
        self, tenant_id: str, studio_id: str, window: TimeWindow, preferred_coach_id: Optional[str]
    ) -> str:
        if preferred_coach_id:
            time_off = self.find_blocking_time_off(tenant_id, preferred_coach_id, window)
            if time_off is not None:
                raise SchedulingConflictException(
                    "Selected coach is on approved time-off",
                    resource_type=ResourceType.COACH.value,
                    resource_id=preferred_coach_id,
                    reason="time_off",
                    time_off_id=time_off.id,
                )
            if self.find_blocking_session(
                tenant_id, ResourceType.COACH, preferred_coach_id, window
            ):
                raise SchedulingConflictException(
                    "Selected coach is already booked at this time",
                    resource_type=ResourceType.COACH.value,
                    resource_id=preferred_coach_id,
                    reason="session_overlap",
                )
            return preferred_coach_id

        for coach in self.studio_repository.list_active_coaches(tenant_id, studio_id):
            if self.is_free(tenant_id, ResourceType.COACH, coach.id, window):
                return coach.id
        raise SchedulingConflictException(
            "No coaches available for this time",
            resource_type=ResourceType.COACH.value,
            reason="none_available",
        )

    def _pick_room(
        self, tenant_id: str, studio_id: str, window: TimeWindow, preferred_room_id: Optional[str]
    ) -> str:
        if preferred_room_id and self.is_free(tenant_id, ResourceType.ROOM, preferred_room_id, window):
            return preferred_room_id
        for room in self.studio_repository.list_active_rooms(tenant_id, studio_id):
            if self.is_free(tenant_id, ResourceType.ROOM, room.id, window):
                return room.id
        raise SchedulingConflictException(
            "No rooms available for this time",
            resource_type=ResourceType.ROOM.value,
            reason="none_available",
        )


def local_days(studio: Studio, window: TimeWindow) -> List[Tuple[date, TimeWindow]]:
    """Every studio-local calendar day ``window`` touches, with its UTC bounds."""
    tz = get_studio_timezone(studio)
    day = to_local(window.start, tz).date()
    # end is exclusive, so a window ending exactly at midnight stays on its start day
    last = max(day, to_local(window.end - timedelta(microseconds=1), tz).date())
    days: List[Tuple[date, TimeWindow]] = []
    while day <= last:
        next_day = day + timedelta(days=1)
        bounds = TimeWindow(
            localize_wall_clock(day, time(0, 0), tz),
            localize_wall_clock(next_day, time(0, 0), tz),
        )
        days.append((day, bounds))
        day = next_day
    return days
