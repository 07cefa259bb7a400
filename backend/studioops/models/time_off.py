# backend/studioops/models/time_off.py
"""Coach time-off windows. Only approved windows block availability."""

from sqlalchemy import CheckConstraint, Column, ForeignKey, Index, String, Text
import ulid

from ..core.enums import TimeOffStatus
from ..database import Base
from .types import TimestampMixin, UTCDateTime


class CoachTimeOff(TimestampMixin, Base):
    __tablename__ = "coach_time_off"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    tenant_id = Column(String(26), ForeignKey("tenants.id"), nullable=False, index=True)
    coach_id = Column(String(26), ForeignKey("coaches.id"), nullable=False)
    start_time = Column(UTCDateTime, nullable=False)
    end_time = Column(UTCDateTime, nullable=False)
    status = Column(String(20), nullable=False, default=TimeOffStatus.PENDING.value)
    reason = Column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("start_time < end_time", name="ck_coach_time_off_window_order"),
        Index("ix_coach_time_off_coach_start", "coach_id", "start_time"),
    )
