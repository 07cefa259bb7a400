# backend/studioops/models/session.py
"""
Session model for the studio scheduling engine.

A session occupies a room, a coach and optionally an EMS device for a
half-open window ``[start_time, end_time)``. Individual sessions hold one
client; group sessions hold up to ``capacity`` participants, each with
their own credit reservation.
"""

from datetime import datetime
import logging
from typing import Any, Dict

from sqlalchemy import (
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
import ulid

from ..core.enums import ParticipantStatus, SessionKind, SessionStatus
from ..core.time_window import TimeWindow
from ..database import Base
from .types import TimestampMixin, UTCDateTime

logger = logging.getLogger(__name__)


class StudioSession(TimestampMixin, Base):
    """
    One bookable appointment.

    ``booked_start_time``/``booked_end_time`` keep the window as originally
    booked; a reschedule moves ``start_time``/``end_time`` only.
    """

    __tablename__ = "sessions"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    tenant_id = Column(String(26), ForeignKey("tenants.id"), nullable=False, index=True)
    studio_id = Column(String(26), ForeignKey("studios.id"), nullable=False, index=True)
    room_id = Column(String(26), ForeignKey("rooms.id"), nullable=False)
    coach_id = Column(String(26), ForeignKey("coaches.id"), nullable=False)
    ems_device_id = Column(String(26), ForeignKey("ems_devices.id"), nullable=True)
    client_id = Column(String(26), ForeignKey("clients.id"), nullable=True)

    start_time = Column(UTCDateTime, nullable=False)
    end_time = Column(UTCDateTime, nullable=False)
    booked_start_time = Column(UTCDateTime, nullable=True)
    booked_end_time = Column(UTCDateTime, nullable=True)

    status = Column(String(20), nullable=False, default=SessionStatus.SCHEDULED.value)
    kind = Column(String(20), nullable=False, default=SessionKind.INDIVIDUAL.value)
    capacity = Column(Integer, nullable=False, default=1)
    notes = Column(Text, nullable=True)

    cancelled_at = Column(UTCDateTime, nullable=True)
    cancelled_reason = Column(Text, nullable=True)

    series_id = Column(String(26), ForeignKey("recurrence_series.id"), nullable=True, index=True)
    # Credit consumed by an individual session; group credits live on participants.
    reservation_id = Column(String(26), nullable=True)
    client_package_id = Column(String(26), nullable=True)

    series = relationship("RecurrenceSeries", back_populates="sessions")
    participants = relationship(
        "SessionParticipant",
        back_populates="session",
        order_by="SessionParticipant.created_at",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        CheckConstraint("start_time < end_time", name="ck_sessions_window_order"),
        CheckConstraint("capacity >= 1", name="ck_sessions_capacity_positive"),
        CheckConstraint(
            "status IN ('scheduled', 'in_progress', 'completed', 'cancelled')",
            name="ck_sessions_status",
        ),
        CheckConstraint("kind IN ('individual', 'group')", name="ck_sessions_kind"),
        Index("ix_sessions_tenant_room_start", "tenant_id", "room_id", "start_time"),
        Index("ix_sessions_tenant_coach_start", "tenant_id", "coach_id", "start_time"),
        Index("ix_sessions_tenant_client_start", "tenant_id", "client_id", "start_time"),
        Index("ix_sessions_tenant_device_start", "tenant_id", "ems_device_id", "start_time"),
    )

    def __repr__(self) -> str:
        return (
            f"<StudioSession {self.id} room={self.room_id} coach={self.coach_id} "
            f"{self.start_time}-{self.end_time} {self.status}>"
        )

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(self.start_time, self.end_time)

    @property
    def is_cancelled(self) -> bool:
        return self.status == SessionStatus.CANCELLED.value

    @property
    def is_group(self) -> bool:
        return self.kind == SessionKind.GROUP.value

    @property
    def participant_count(self) -> int:
        return len(self.participants or [])

    def cancel(self, cancelled_at: datetime, reason: str | None = None) -> None:
        self.status = SessionStatus.CANCELLED.value
        self.cancelled_at = cancelled_at
        self.cancelled_reason = reason

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot used for audit rows and outbox payloads."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "studio_id": self.studio_id,
            "room_id": self.room_id,
            "coach_id": self.coach_id,
            "ems_device_id": self.ems_device_id,
            "client_id": self.client_id,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "status": self.status,
            "kind": self.kind,
            "capacity": self.capacity,
            "series_id": self.series_id,
            "reservation_id": self.reservation_id,
        }


class SessionParticipant(TimestampMixin, Base):
    """A client enrolled in a group session, holding one credit reservation."""

    __tablename__ = "session_participants"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    session_id = Column(
        String(26), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    client_id = Column(String(26), ForeignKey("clients.id"), nullable=False, index=True)
    client_package_id = Column(String(26), nullable=True)
    reservation_id = Column(String(26), nullable=True)
    status = Column(String(20), nullable=False, default=ParticipantStatus.ENROLLED.value)

    session = relationship("StudioSession", back_populates="participants")

    __table_args__ = (
        UniqueConstraint("session_id", "client_id", name="uq_session_participant_client"),
    )
