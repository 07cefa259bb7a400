# backend/studioops/repositories/credit_repository.py
"""
Credit Repository

Package and reservation queries backing the credit ledger. Package rows are
loaded with a row lock on PostgreSQL before any balance change.
"""

from __future__ import annotations

from datetime import date
import logging
from typing import List, Optional, cast

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import ClientPackageStatus
from ..core.exceptions import RepositoryException
from ..models.package import ClientPackage, CreditReservation
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class CreditRepository(BaseRepository[ClientPackage]):
    """Repository for client packages and their reservations."""

    def __init__(self, db: Session):
        super().__init__(db, ClientPackage)
        self.logger = logging.getLogger(__name__)

    def get_package_for_tenant(
        self, tenant_id: str, client_package_id: str, for_update: bool = False
    ) -> Optional[ClientPackage]:
        query = self.db.query(ClientPackage).filter(
            ClientPackage.id == client_package_id,
            ClientPackage.tenant_id == tenant_id,
        )
        if for_update and self.supports_row_locks:
            query = query.with_for_update()
        return self._execute_first(query)

    def get_usable_packages(
        self, *, tenant_id: str, client_id: str, on_date: date
    ) -> List[ClientPackage]:
        """Active packages with credit left and not expired on ``on_date``, soonest expiry first."""
        try:
            query = (
                self.db.query(ClientPackage)
                .filter(
                    ClientPackage.tenant_id == tenant_id,
                    ClientPackage.client_id == client_id,
                    ClientPackage.status == ClientPackageStatus.ACTIVE.value,
                    ClientPackage.sessions_remaining > 0,
                    or_(ClientPackage.expiry_date.is_(None), ClientPackage.expiry_date >= on_date),
                )
                .order_by(
                    ClientPackage.expiry_date.asc().nullslast(),
                    ClientPackage.purchase_date.asc(),
                    ClientPackage.id.asc(),
                )
            )
            return cast(List[ClientPackage], query.all())
        except SQLAlchemyError as exc:
            self.logger.error("Failed to get usable packages: %s", str(exc))
            raise RepositoryException("Failed to get usable packages") from exc

    def get_expired_active(self, tenant_id: str, as_of: date) -> List[ClientPackage]:
        query = self.db.query(ClientPackage).filter(
            ClientPackage.tenant_id == tenant_id,
            ClientPackage.status == ClientPackageStatus.ACTIVE.value,
            ClientPackage.expiry_date.is_not(None),
            ClientPackage.expiry_date < as_of,
        )
        return self._execute_query(query)

    # Reservations

    def create_reservation(self, **fields) -> CreditReservation:
        try:
            reservation = CreditReservation(**fields)
            self.db.add(reservation)
            self.db.flush()
            return reservation
        except SQLAlchemyError as exc:
            self.logger.error("Failed to create reservation: %s", str(exc))
            raise RepositoryException("Failed to create reservation") from exc

    def get_reservation(
        self, reservation_id: str, for_update: bool = False
    ) -> Optional[CreditReservation]:
        try:
            query = self.db.query(CreditReservation).filter(CreditReservation.id == reservation_id)
            if for_update and self.supports_row_locks:
                query = query.with_for_update()
            return cast(Optional[CreditReservation], query.first())
        except SQLAlchemyError as exc:
            self.logger.error("Failed to get reservation: %s", str(exc))
            raise RepositoryException("Failed to get reservation") from exc
