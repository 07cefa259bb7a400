# backend/studioops/schemas/session.py
"""
Session, series and participant schemas.

All datetimes are normalized to aware UTC on the way in; naive values are
read as UTC.
"""

from datetime import date, datetime, time
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator, model_validator

from ..core.enums import RecurrencePattern, SessionKind, SessionStatus
from ..core.timezone_utils import ensure_utc
from ..services.recurrence_expander import RecurrenceRule, RecurrenceSlot
from ._strict_base import StandardizedModel, StrictModel, StrictRequestModel


def _parse_clock(value: object) -> object:
    if isinstance(value, str):
        try:
            hour, minute = value.strip().split(":")[:2]
            return time(int(hour), int(minute))
        except (ValueError, AttributeError):
            raise ValueError(f"Invalid time format: {value}. Expected HH:MM format.")
    return value


class SessionCreate(StrictRequestModel):
    """Book one session in a studio room with a coach."""

    studio_id: str = Field(..., description="Studio the session takes place in")
    room_id: str
    coach_id: str
    client_id: Optional[str] = Field(None, description="Client for individual sessions")
    ems_device_id: Optional[str] = Field(None, description="EMS device used during the session")
    start_time: datetime
    end_time: datetime
    kind: SessionKind = SessionKind.INDIVIDUAL
    capacity: int = Field(1, ge=1, le=200)
    notes: Optional[str] = Field(None, max_length=2000)
    client_package_id: Optional[str] = Field(
        None, description="Package to draw credit from; soonest-expiring usable package if omitted"
    )

    @field_validator("start_time", "end_time")
    @classmethod
    def _to_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_validator("notes")
    @classmethod
    def _clean_notes(cls, v: Optional[str]) -> Optional[str]:
        return v.strip() if v else v

    @model_validator(mode="after")
    def _check_shape(self) -> "SessionCreate":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        if self.kind == SessionKind.INDIVIDUAL and self.capacity != 1:
            raise ValueError("Individual sessions have a capacity of 1")
        if self.kind == SessionKind.GROUP and self.client_id:
            raise ValueError("Group sessions take participants, not a client_id")
        return self


class SessionUpdate(StrictRequestModel):
    """Partial update. Any change to start/end needs ``allow_time_change_override``."""

    room_id: Optional[str] = None
    coach_id: Optional[str] = None
    ems_device_id: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    capacity: Optional[int] = Field(None, ge=1, le=200)
    notes: Optional[str] = Field(None, max_length=2000)
    allow_time_change_override: bool = False

    @field_validator("start_time", "end_time")
    @classmethod
    def _to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else v


class SessionReschedule(StrictRequestModel):
    start_time: datetime
    end_time: datetime
    allow_time_change_override: bool = False

    @field_validator("start_time", "end_time")
    @classmethod
    def _to_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @model_validator(mode="after")
    def _check_order(self) -> "SessionReschedule":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class SessionCancel(StrictRequestModel):
    reason: Optional[str] = Field(None, max_length=500)
    deduct_session: bool = Field(
        False, description="Keep the credit spent instead of returning it to the package"
    )


class SessionStatusUpdate(StrictRequestModel):
    status: SessionStatus
    reason: Optional[str] = Field(None, max_length=500)
    deduct_session: bool = False


class ParticipantAdd(StrictRequestModel):
    client_id: str
    client_package_id: Optional[str] = None


class RecurrenceSlotIn(StrictRequestModel):
    day_of_week: int = Field(..., ge=0, le=6, description="0 = Sunday ... 6 = Saturday")
    start_time: time

    @field_validator("start_time", mode="before")
    @classmethod
    def _parse_start(cls, v: object) -> object:
        return _parse_clock(v)


class RecurrenceRuleIn(StrictRequestModel):
    pattern: RecurrencePattern
    end_date: date
    slots: List[RecurrenceSlotIn] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_slots(self) -> "RecurrenceRuleIn":
        if self.pattern == RecurrencePattern.VARIABLE and not self.slots:
            raise ValueError("Variable recurrence requires at least one slot")
        return self

    def to_rule(self) -> RecurrenceRule:
        return RecurrenceRule(
            pattern=self.pattern,
            end_date=self.end_date,
            slots=tuple(RecurrenceSlot(s.day_of_week, s.start_time) for s in self.slots),
        )


class SeriesCreate(StrictRequestModel):
    seed: SessionCreate
    rule: RecurrenceRuleIn


class SeriesUpdate(StrictRequestModel):
    """Applies to future, non-cancelled members of the series."""

    room_id: Optional[str] = None
    coach_id: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=2000)
    end_date: Optional[date] = None


class BulkSessionCreate(StrictRequestModel):
    items: List[SessionCreate] = Field(..., min_length=1, max_length=100)


class AutoAssignRequest(StrictRequestModel):
    studio_id: str
    start_time: datetime
    end_time: datetime
    preferred_room_id: Optional[str] = None
    preferred_coach_id: Optional[str] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _to_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


# Responses


class ParticipantResponse(StandardizedModel):
    id: str
    client_id: str
    client_package_id: Optional[str] = None
    reservation_id: Optional[str] = None
    status: str


class SessionResponse(StandardizedModel):
    id: str
    tenant_id: str
    studio_id: str
    room_id: str
    coach_id: str
    ems_device_id: Optional[str] = None
    client_id: Optional[str] = None
    start_time: datetime
    end_time: datetime
    booked_start_time: Optional[datetime] = None
    booked_end_time: Optional[datetime] = None
    status: str
    kind: str
    capacity: int
    notes: Optional[str] = None
    series_id: Optional[str] = None
    reservation_id: Optional[str] = None
    client_package_id: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_reason: Optional[str] = None
    participants: List[ParticipantResponse] = Field(default_factory=list)


class WindowResponse(StrictModel):
    start_time: datetime
    end_time: datetime


class SkippedOccurrenceResponse(StrictModel):
    start_time: datetime
    end_time: datetime
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class SeriesResponse(StandardizedModel):
    id: str
    studio_id: str
    pattern: str
    end_date: date
    slots: Optional[List[Dict[str, Any]]] = None
    seed_session_id: Optional[str] = None


class SeriesCreateResponse(StrictModel):
    series: SeriesResponse
    created: List[SessionResponse]
    skipped: List[SkippedOccurrenceResponse]


class SeriesPreviewResponse(StrictModel):
    valid: List[WindowResponse]
    conflicts: List[SkippedOccurrenceResponse]


class BulkItemErrorResponse(StrictModel):
    index: int
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class BulkCreateResponse(StrictModel):
    created: List[SessionResponse]
    errors: List[BulkItemErrorResponse]


class AssignmentResponse(StrictModel):
    room_id: str
    coach_id: str


class DeleteResponse(StrictModel):
    deleted: bool
