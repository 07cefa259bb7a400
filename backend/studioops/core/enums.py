# backend/studioops/core/enums.py
"""
Core enums for the studio scheduling engine.

Values are persisted as plain strings, so members subclass ``str``.
"""

from enum import Enum


class SessionStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SessionKind(str, Enum):
    INDIVIDUAL = "individual"
    GROUP = "group"


class TimeOffStatus(str, Enum):
    """Only approved time-off blocks a coach's availability."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RecurrencePattern(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    VARIABLE = "variable"


class ClientPackageStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    DEPLETED = "depleted"


class ReservationStatus(str, Enum):
    """Lifecycle of one credit debit."""

    RESERVED = "reserved"
    RELEASED = "released"
    CONSUMED = "consumed"


class ResourceType(str, Enum):
    """Resources a proposed session is checked against, in check order."""

    STUDIO_HOURS = "studio_hours"
    ROOM = "room"
    EMS_DEVICE = "ems_device"
    COACH = "coach"
    CLIENT = "client"


class ClientGender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"
    PREFER_NOT_TO_SAY = "prefer_not_to_say"


class CoachClientPreference(str, Enum):
    """Which clients a coach takes on."""

    MALE = "male"
    FEMALE = "female"
    ANY = "any"


class ParticipantStatus(str, Enum):
    ENROLLED = "enrolled"
    ATTENDED = "attended"
    NO_SHOW = "no_show"


# Statuses a session may move to from each status via update_status.
SESSION_STATUS_TRANSITIONS = {
    SessionStatus.SCHEDULED: {SessionStatus.IN_PROGRESS, SessionStatus.COMPLETED, SessionStatus.CANCELLED},
    SessionStatus.IN_PROGRESS: {SessionStatus.COMPLETED, SessionStatus.CANCELLED},
    SessionStatus.COMPLETED: {SessionStatus.CANCELLED},
    SessionStatus.CANCELLED: set(),
}
