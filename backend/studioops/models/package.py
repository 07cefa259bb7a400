# backend/studioops/models/package.py
"""
Client packages and the credit reservations drawn against them.

``sessions_remaining + sessions_used == sessions_total`` holds after every
ledger operation. Each reservation is one debit of size 1 bound to exactly
one session or group participant.
"""

from sqlalchemy import CheckConstraint, Column, Date, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship
import ulid

from ..core.enums import ClientPackageStatus, ReservationStatus
from ..database import Base
from .types import TimestampMixin, UTCDateTime, now_utc


class ClientPackage(TimestampMixin, Base):
    __tablename__ = "client_packages"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    tenant_id = Column(String(26), ForeignKey("tenants.id"), nullable=False, index=True)
    client_id = Column(String(26), ForeignKey("clients.id"), nullable=False, index=True)
    package_id = Column(String(26), nullable=True)
    package_name = Column(String(200), nullable=True)
    sessions_total = Column(Integer, nullable=False)
    sessions_remaining = Column(Integer, nullable=False)
    sessions_used = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=ClientPackageStatus.ACTIVE.value)
    purchase_date = Column(UTCDateTime, nullable=False, default=now_utc)
    expiry_date = Column(Date, nullable=True)

    reservations = relationship("CreditReservation", back_populates="client_package")

    __table_args__ = (
        CheckConstraint("sessions_remaining >= 0", name="ck_client_packages_remaining_nonneg"),
        CheckConstraint("sessions_used >= 0", name="ck_client_packages_used_nonneg"),
        CheckConstraint(
            "sessions_remaining <= sessions_total", name="ck_client_packages_remaining_le_total"
        ),
    )

    @property
    def is_balanced(self) -> bool:
        return self.sessions_remaining + self.sessions_used == self.sessions_total

    def snapshot(self) -> dict:
        return {
            "sessions_total": self.sessions_total,
            "sessions_remaining": self.sessions_remaining,
            "sessions_used": self.sessions_used,
            "status": self.status,
        }


class CreditReservation(TimestampMixin, Base):
    """
    One credit drawn from a package for one booking.

    Rows outlive the session they backed (status ``released``) so a repeated
    release can be recognised as a no-op.
    """

    __tablename__ = "credit_reservations"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    tenant_id = Column(String(26), ForeignKey("tenants.id"), nullable=False, index=True)
    client_package_id = Column(
        String(26), ForeignKey("client_packages.id"), nullable=False, index=True
    )
    client_id = Column(String(26), nullable=False)
    session_id = Column(String(26), nullable=False)
    participant_id = Column(String(26), nullable=True)
    status = Column(String(20), nullable=False, default=ReservationStatus.RESERVED.value)
    reserved_at = Column(UTCDateTime, nullable=False, default=now_utc)
    released_at = Column(UTCDateTime, nullable=True)

    client_package = relationship("ClientPackage", back_populates="reservations")

    __table_args__ = (Index("ix_credit_reservations_session", "session_id"),)

    @property
    def is_active(self) -> bool:
        return self.status == ReservationStatus.RESERVED.value
