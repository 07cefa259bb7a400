# backend/studioops/models/studio.py
"""
Directory records the scheduling engine validates against.

Tenants, studios, rooms, EMS devices, coaches and clients are owned by the directory
collaborator; only the columns needed for ownership checks, operating hours,
auto-assignment and coach gender preferences are modelled here.
"""

from sqlalchemy import Boolean, Column, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
import ulid

from ..database import Base
from .types import JSONType, TimestampMixin


def _ulid() -> str:
    return str(ulid.ULID())


class Tenant(TimestampMixin, Base):
    __tablename__ = "tenants"

    id = Column(String(26), primary_key=True, default=_ulid)
    name = Column(String(200), nullable=False)

    studios = relationship("Studio", back_populates="tenant")


class Studio(TimestampMixin, Base):
    """
    A physical location with rooms and staff.

    ``opening_hours`` maps lower-case weekday names to ``{"open": "HH:MM",
    "close": "HH:MM"}`` in the studio's local time; a missing or null day is
    closed, and a null table means always open.
    """

    __tablename__ = "studios"

    id = Column(String(26), primary_key=True, default=_ulid)
    tenant_id = Column(String(26), ForeignKey("tenants.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    timezone = Column(String(64), nullable=False, default="UTC")
    opening_hours = Column(JSONType, nullable=True)
    allow_cross_studio_staff = Column(Boolean, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    tenant = relationship("Tenant", back_populates="studios")
    rooms = relationship("Room", back_populates="studio", order_by="Room.name")


class Room(TimestampMixin, Base):
    __tablename__ = "rooms"

    id = Column(String(26), primary_key=True, default=_ulid)
    tenant_id = Column(String(26), ForeignKey("tenants.id"), nullable=False, index=True)
    studio_id = Column(String(26), ForeignKey("studios.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    capacity = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)

    studio = relationship("Studio", back_populates="rooms")


class Coach(TimestampMixin, Base):
    __tablename__ = "coaches"

    id = Column(String(26), primary_key=True, default=_ulid)
    tenant_id = Column(String(26), ForeignKey("tenants.id"), nullable=False, index=True)
    studio_id = Column(String(26), ForeignKey("studios.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    # Null means any client
    preferred_client_gender = Column(String(20), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class Client(TimestampMixin, Base):
    __tablename__ = "clients"

    id = Column(String(26), primary_key=True, default=_ulid)
    tenant_id = Column(String(26), ForeignKey("tenants.id"), nullable=False, index=True)
    studio_id = Column(String(26), ForeignKey("studios.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    gender = Column(String(20), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class EmsDevice(TimestampMixin, Base):
    """An EMS suit/controller set; at most one session may use it at a time."""

    __tablename__ = "ems_devices"

    id = Column(String(26), primary_key=True, default=_ulid)
    tenant_id = Column(String(26), ForeignKey("tenants.id"), nullable=False, index=True)
    studio_id = Column(String(26), ForeignKey("studios.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
