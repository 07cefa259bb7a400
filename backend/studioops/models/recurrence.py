# backend/studioops/models/recurrence.py
"""
Recurrence series: a rule plus the sessions generated from it.

The series owns its member sessions through an explicit ordered collection;
deleting a series walks that collection rather than relying on a database
cascade, so each member's credit is released exactly once.
"""

from sqlalchemy import Column, Date, ForeignKey, String
from sqlalchemy.orm import relationship
import ulid

from ..database import Base
from .types import JSONType, TimestampMixin


class RecurrenceSeries(TimestampMixin, Base):
    __tablename__ = "recurrence_series"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    tenant_id = Column(String(26), ForeignKey("tenants.id"), nullable=False, index=True)
    studio_id = Column(String(26), ForeignKey("studios.id"), nullable=False)
    pattern = Column(String(20), nullable=False)
    end_date = Column(Date, nullable=False)
    # [{"day_of_week": 0-6 (0 = Sunday), "start_time": "HH:MM"}] for variable rules
    slots = Column(JSONType, nullable=True)
    seed_session_id = Column(String(26), nullable=True)

    sessions = relationship(
        "StudioSession",
        back_populates="series",
        order_by="StudioSession.start_time",
    )

    @property
    def session_ids(self) -> list[str]:
        return [member.id for member in self.sessions]
