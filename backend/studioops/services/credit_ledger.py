# backend/studioops/services/credit_ledger.py
"""
Credit Ledger Service

Owns every change to a client package balance. ``reserve``, ``release`` and
``consume`` run inside the caller's transaction (they flush, never commit) so
a session row and its credit always commit together. ``adjust`` and
``expire_packages`` are standalone administrative operations and commit.

Invariant after every operation: remaining + used == total, remaining >= 0.
"""

from datetime import date, datetime
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..core.enums import ClientPackageStatus, ReservationStatus
from ..core.exceptions import (
    InsufficientCreditException,
    InvalidAdjustmentException,
    NotFoundException,
    ValidationException,
)
from ..models.audit_log import AuditLog
from ..models.package import ClientPackage, CreditReservation
from ..models.types import now_utc
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories import RepositoryFactory
from ..repositories.credit_repository import CreditRepository
from .base import BaseService

logger = logging.getLogger(__name__)


class CreditLedgerService(BaseService):
    """Atomic reserve/release of prepaid session credits."""

    def __init__(
        self,
        db: Session,
        repository: Optional[CreditRepository] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        super().__init__(db)
        self.repository = repository or RepositoryFactory.create_credit_repository(db)
        self.audit_repository = RepositoryFactory.create_audit_repository(db)
        self.clock = clock or now_utc

    def get_package(self, tenant_id: str, client_package_id: str) -> ClientPackage:
        package = self.repository.get_package_for_tenant(tenant_id, client_package_id)
        if package is None:
            raise NotFoundException(
                "Client package not found", details={"client_package_id": client_package_id}
            )
        return package

    @BaseService.measure_operation("reserve_credit")
    def reserve(
        self,
        tenant_id: str,
        client_package_id: str,
        *,
        session_id: str,
        client_id: str,
        on_date: date,
        participant_id: Optional[str] = None,
    ) -> CreditReservation:
        """
        Debit one credit for a booking.

        Args:
            tenant_id: Tenant owning the package
            client_package_id: Package to draw from
            session_id: Session the credit is bound to
            client_id: Client the booking is for; must own the package
            on_date: Session date, checked against the package expiry
            participant_id: Group participant row the credit backs, if any

        Raises:
            NotFoundException: Package does not exist for the tenant
            ValidationException: Package belongs to another client
            InsufficientCreditException: Package expired, depleted or empty
        """
        package = self.repository.get_package_for_tenant(
            tenant_id, client_package_id, for_update=True
        )
        if package is None:
            raise NotFoundException(
                "Client package not found", details={"client_package_id": client_package_id}
            )
        if package.client_id != client_id:
            raise ValidationException(
                "Client package belongs to a different client",
                code="PACKAGE_CLIENT_MISMATCH",
                details={"client_package_id": client_package_id, "client_id": client_id},
            )
        if package.status == ClientPackageStatus.EXPIRED.value or (
            package.expiry_date is not None and package.expiry_date < on_date
        ):
            prometheus_metrics.record_credit_operation("reserve", "rejected")
            raise InsufficientCreditException(client_package_id, "Client package has expired")
        if package.sessions_remaining <= 0:
            prometheus_metrics.record_credit_operation("reserve", "rejected")
            raise InsufficientCreditException(client_package_id)

        package.sessions_remaining -= 1
        package.sessions_used += 1
        if package.sessions_remaining == 0:
            package.status = ClientPackageStatus.DEPLETED.value

        reservation = self.repository.create_reservation(
            tenant_id=tenant_id,
            client_package_id=package.id,
            client_id=client_id,
            session_id=session_id,
            participant_id=participant_id,
            status=ReservationStatus.RESERVED.value,
            reserved_at=self.clock(),
        )
        prometheus_metrics.record_credit_operation("reserve", "ok")
        self.logger.debug(
            "Credit reserved",
            extra={
                "client_package_id": package.id,
                "reservation_id": reservation.id,
                "sessions_remaining": package.sessions_remaining,
            },
        )
        return reservation

    @BaseService.measure_operation("release_credit")
    def release(self, reservation_id: Optional[str]) -> bool:
        """
        Return a reserved credit to its package.

        Idempotent: unknown, already released or consumed reservations are a
        no-op and return False.
        """
        if not reservation_id:
            return False
        reservation = self.repository.get_reservation(reservation_id, for_update=True)
        if reservation is None or reservation.status != ReservationStatus.RESERVED.value:
            prometheus_metrics.record_credit_operation("release", "noop")
            return False

        package = self.repository.get_by_id(reservation.client_package_id, for_update=True)
        if package is not None:
            package.sessions_remaining = min(package.sessions_total, package.sessions_remaining + 1)
            package.sessions_used = package.sessions_total - package.sessions_remaining
            if (
                package.status == ClientPackageStatus.DEPLETED.value
                and package.sessions_remaining > 0
            ):
                package.status = ClientPackageStatus.ACTIVE.value

        reservation.status = ReservationStatus.RELEASED.value
        reservation.released_at = self.clock()
        self.db.flush()
        prometheus_metrics.record_credit_operation("release", "ok")
        return True

    @BaseService.measure_operation("consume_credit")
    def consume(self, reservation_id: Optional[str]) -> bool:
        """Mark a reserved credit as spent for good (late cancellation)."""
        if not reservation_id:
            return False
        reservation = self.repository.get_reservation(reservation_id, for_update=True)
        if reservation is None or reservation.status != ReservationStatus.RESERVED.value:
            prometheus_metrics.record_credit_operation("consume", "noop")
            return False
        reservation.status = ReservationStatus.CONSUMED.value
        reservation.released_at = self.clock()
        self.db.flush()
        prometheus_metrics.record_credit_operation("consume", "ok")
        return True

    @BaseService.measure_operation("adjust_credit")
    def adjust(
        self,
        tenant_id: str,
        client_package_id: str,
        delta: int,
        reason: str,
        actor_id: Optional[str] = None,
    ) -> ClientPackage:
        """
        Manually move ``delta`` credits from used to remaining (negative moves
        them back), recording the reason in the audit trail.

        Raises:
            InvalidAdjustmentException: zero delta, missing reason, or a
                balance outside 0..total
        """
        if delta == 0:
            raise InvalidAdjustmentException("Adjustment delta must be non-zero")
        if not reason or not reason.strip():
            raise InvalidAdjustmentException("Adjustment reason is required")

        with self.transaction():
            package = self.repository.get_package_for_tenant(
                tenant_id, client_package_id, for_update=True
            )
            if package is None:
                raise NotFoundException(
                    "Client package not found", details={"client_package_id": client_package_id}
                )
            new_remaining = package.sessions_remaining + delta
            if new_remaining < 0 or new_remaining > package.sessions_total:
                prometheus_metrics.record_credit_operation("adjust", "rejected")
                raise InvalidAdjustmentException(
                    "Adjustment would leave the package outside its valid balance",
                    details={
                        "client_package_id": client_package_id,
                        "delta": delta,
                        "sessions_remaining": package.sessions_remaining,
                        "sessions_total": package.sessions_total,
                    },
                )

            before = package.snapshot()
            package.sessions_remaining = new_remaining
            package.sessions_used = package.sessions_total - new_remaining
            if new_remaining == 0 and package.status == ClientPackageStatus.ACTIVE.value:
                package.status = ClientPackageStatus.DEPLETED.value
            elif new_remaining > 0 and package.status == ClientPackageStatus.DEPLETED.value:
                package.status = ClientPackageStatus.ACTIVE.value

            self.audit_repository.write(
                AuditLog.from_change(
                    "client_package",
                    package.id,
                    "adjust",
                    tenant_id=tenant_id,
                    actor_id=actor_id,
                    reason=reason.strip(),
                    before=before,
                    after=package.snapshot(),
                )
            )

        prometheus_metrics.record_credit_operation("adjust", "ok")
        self.log_operation(
            "adjust_credit", client_package_id=client_package_id, delta=delta, reason=reason
        )
        return package

    def find_best_package(
        self, tenant_id: str, client_id: str, on_date: date
    ) -> Optional[ClientPackage]:
        """The usable package expiring soonest, or None."""
        packages = self.repository.get_usable_packages(
            tenant_id=tenant_id, client_id=client_id, on_date=on_date
        )
        return packages[0] if packages else None

    def expiry_cutoff(self, as_of: Optional[date] = None) -> date:
        """Date before which packages count as expired; never later than today."""
        today = self.clock().date()
        if as_of is None or as_of > today:
            return today
        return as_of

    @BaseService.measure_operation("expire_packages")
    def expire_packages(self, tenant_id: str, as_of: Optional[date] = None) -> int:
        """Mark the tenant's active packages whose expiry date has passed as expired."""
        cutoff = self.expiry_cutoff(as_of)
        with self.transaction():
            expired = self.repository.get_expired_active(tenant_id, cutoff)
            for package in expired:
                package.status = ClientPackageStatus.EXPIRED.value
        if expired:
            self.log_operation(
                "expire_packages",
                tenant_id=tenant_id,
                cutoff=cutoff.isoformat(),
                expired=len(expired),
            )
        return len(expired)
