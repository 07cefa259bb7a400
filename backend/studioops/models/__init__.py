"""
Database models for the studio scheduling engine.

Importing this package registers every table on ``Base.metadata``.
"""

from .audit_log import AuditLog
from .event_outbox import EventOutbox, EventOutboxStatus
from .package import ClientPackage, CreditReservation
from .recurrence import RecurrenceSeries
from .session import SessionParticipant, StudioSession
from .studio import Client, Coach, EmsDevice, Room, Studio, Tenant
from .time_off import CoachTimeOff

__all__ = [
    "AuditLog",
    "Client",
    "ClientPackage",
    "Coach",
    "CoachTimeOff",
    "CreditReservation",
    "EmsDevice",
    "EventOutbox",
    "EventOutboxStatus",
    "RecurrenceSeries",
    "Room",
    "SessionParticipant",
    "Studio",
    "StudioSession",
    "Tenant",
]
