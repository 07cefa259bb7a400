"""
Tests for CreditLedgerService: reserve, release, consume, adjust and expiry.

Every test re-checks remaining + used == total on the package it touches.
"""

from datetime import date

import pytest

from studioops.core.enums import ClientPackageStatus, ReservationStatus
from studioops.core.exceptions import (
    InsufficientCreditException,
    InvalidAdjustmentException,
    NotFoundException,
    ValidationException,
)
from studioops.models.audit_log import AuditLog

SESSION_ID = "01HSESSION0000000000000000"
ON_DATE = date(2030, 1, 7)


def _balanced(package) -> bool:
    return (
        package.sessions_remaining + package.sessions_used == package.sessions_total
        and package.sessions_remaining >= 0
    )


class TestReserve:
    def test_reserve_moves_one_credit(self, db, credit_ledger, tenant, client_a, package_a):
        reservation = credit_ledger.reserve(
            tenant.id, package_a.id, session_id=SESSION_ID, client_id=client_a.id, on_date=ON_DATE
        )
        db.commit()
        db.refresh(package_a)
        assert package_a.sessions_remaining == 9
        assert package_a.sessions_used == 1
        assert reservation.status == ReservationStatus.RESERVED.value
        assert reservation.session_id == SESSION_ID
        assert _balanced(package_a)

    def test_last_credit_marks_depleted(self, factory, credit_ledger, tenant, client_a):
        package = factory.package(client_a, total=1)
        credit_ledger.reserve(
            tenant.id, package.id, session_id=SESSION_ID, client_id=client_a.id, on_date=ON_DATE
        )
        assert package.sessions_remaining == 0
        assert package.status == ClientPackageStatus.DEPLETED.value
        assert _balanced(package)

    def test_empty_package_rejected(self, factory, credit_ledger, tenant, client_a):
        package = factory.package(client_a, total=5, remaining=0)
        with pytest.raises(InsufficientCreditException):
            credit_ledger.reserve(
                tenant.id, package.id, session_id=SESSION_ID, client_id=client_a.id, on_date=ON_DATE
            )
        assert package.sessions_remaining == 0
        assert _balanced(package)

    def test_expired_package_rejected(self, factory, credit_ledger, tenant, client_a):
        package = factory.package(client_a, total=5, expiry_date=date(2030, 1, 6))
        with pytest.raises(InsufficientCreditException):
            credit_ledger.reserve(
                tenant.id, package.id, session_id=SESSION_ID, client_id=client_a.id, on_date=ON_DATE
            )

    def test_expiry_on_session_date_is_still_usable(self, factory, credit_ledger, tenant, client_a):
        package = factory.package(client_a, total=5, expiry_date=ON_DATE)
        credit_ledger.reserve(
            tenant.id, package.id, session_id=SESSION_ID, client_id=client_a.id, on_date=ON_DATE
        )
        assert package.sessions_remaining == 4

    def test_other_clients_package_rejected(self, credit_ledger, tenant, client_b, package_a):
        with pytest.raises(ValidationException) as exc_info:
            credit_ledger.reserve(
                tenant.id, package_a.id, session_id=SESSION_ID, client_id=client_b.id, on_date=ON_DATE
            )
        assert exc_info.value.code == "PACKAGE_CLIENT_MISMATCH"

    def test_other_tenants_package_not_found(self, factory, credit_ledger, client_a, package_a):
        other = factory.tenant("Other")
        with pytest.raises(NotFoundException):
            credit_ledger.reserve(
                other.id, package_a.id, session_id=SESSION_ID, client_id=client_a.id, on_date=ON_DATE
            )


class TestRelease:
    def test_release_restores_exactly_one_credit(self, credit_ledger, tenant, client_a, package_a):
        reservation = credit_ledger.reserve(
            tenant.id, package_a.id, session_id=SESSION_ID, client_id=client_a.id, on_date=ON_DATE
        )
        assert credit_ledger.release(reservation.id) is True
        assert package_a.sessions_remaining == 10
        assert reservation.status == ReservationStatus.RELEASED.value
        assert reservation.released_at is not None

        assert credit_ledger.release(reservation.id) is False
        assert package_a.sessions_remaining == 10
        assert _balanced(package_a)

    def test_release_unknown_or_empty_is_noop(self, credit_ledger):
        assert credit_ledger.release(None) is False
        assert credit_ledger.release("01HNOTAREALRESERVATION0000") is False

    def test_release_reactivates_depleted_package(self, factory, credit_ledger, tenant, client_a):
        package = factory.package(client_a, total=1)
        reservation = credit_ledger.reserve(
            tenant.id, package.id, session_id=SESSION_ID, client_id=client_a.id, on_date=ON_DATE
        )
        credit_ledger.release(reservation.id)
        assert package.status == ClientPackageStatus.ACTIVE.value

    def test_release_never_exceeds_total(self, factory, db, credit_ledger, tenant, client_a):
        package = factory.package(client_a, total=3)
        reservation = credit_ledger.reserve(
            tenant.id, package.id, session_id=SESSION_ID, client_id=client_a.id, on_date=ON_DATE
        )
        # Simulate an out-of-band correction that already restored the credit
        package.sessions_remaining = 3
        package.sessions_used = 0
        db.flush()
        credit_ledger.release(reservation.id)
        assert package.sessions_remaining == 3
        assert _balanced(package)


class TestConsume:
    def test_consume_keeps_credit_spent(self, credit_ledger, tenant, client_a, package_a):
        reservation = credit_ledger.reserve(
            tenant.id, package_a.id, session_id=SESSION_ID, client_id=client_a.id, on_date=ON_DATE
        )
        assert credit_ledger.consume(reservation.id) is True
        assert reservation.status == ReservationStatus.CONSUMED.value
        assert package_a.sessions_remaining == 9
        # A consumed credit can no longer be released
        assert credit_ledger.release(reservation.id) is False
        assert package_a.sessions_remaining == 9


class TestAdjust:
    def test_adjust_returns_credits_and_audits(self, db, credit_ledger, tenant, client_a, factory):
        package = factory.package(client_a, total=10, remaining=4)
        factory.commit()
        adjusted = credit_ledger.adjust(tenant.id, package.id, 2, "Goodwill credit", actor_id="admin")
        assert adjusted.sessions_remaining == 6
        assert adjusted.sessions_used == 4
        assert _balanced(adjusted)

        entries = db.query(AuditLog).filter(AuditLog.entity_id == package.id).all()
        assert len(entries) == 1
        assert entries[0].reason == "Goodwill credit"
        assert entries[0].before["sessions_remaining"] == 4
        assert entries[0].after["sessions_remaining"] == 6

    def test_negative_adjust_to_zero_depletes(self, credit_ledger, tenant, package_a):
        adjusted = credit_ledger.adjust(tenant.id, package_a.id, -10, "Chargeback")
        assert adjusted.sessions_remaining == 0
        assert adjusted.status == ClientPackageStatus.DEPLETED.value

    @pytest.mark.parametrize("delta", [-11, 1])
    def test_adjust_outside_bounds_rejected(self, credit_ledger, tenant, package_a, delta):
        with pytest.raises(InvalidAdjustmentException):
            credit_ledger.adjust(tenant.id, package_a.id, delta, "Out of range")
        assert package_a.sessions_remaining == 10

    def test_adjust_requires_reason_and_delta(self, credit_ledger, tenant, package_a):
        with pytest.raises(InvalidAdjustmentException):
            credit_ledger.adjust(tenant.id, package_a.id, 0, "Nothing")
        with pytest.raises(InvalidAdjustmentException):
            credit_ledger.adjust(tenant.id, package_a.id, 1, "   ")


class TestFindAndExpire:
    def test_best_package_is_soonest_expiring(self, factory, credit_ledger, tenant, client_a):
        factory.package(client_a, total=5, expiry_date=None)
        soon = factory.package(client_a, total=5, expiry_date=date(2030, 2, 1))
        factory.package(client_a, total=5, expiry_date=date(2030, 6, 1))
        factory.package(client_a, total=5, remaining=0, expiry_date=date(2030, 1, 15))
        assert credit_ledger.find_best_package(tenant.id, client_a.id, ON_DATE).id == soon.id

    def test_no_usable_package(self, factory, credit_ledger, tenant, client_a):
        factory.package(client_a, total=5, expiry_date=date(2030, 1, 1))
        assert credit_ledger.find_best_package(tenant.id, client_a.id, ON_DATE) is None

    def test_expire_packages(self, factory, credit_ledger, tenant, client_a):
        old = factory.package(client_a, total=5, expiry_date=date(2029, 12, 1))
        current = factory.package(client_a, total=5, expiry_date=date(2030, 3, 1))
        factory.commit()
        assert credit_ledger.expire_packages(tenant.id) == 1
        assert old.status == ClientPackageStatus.EXPIRED.value
        assert current.status == ClientPackageStatus.ACTIVE.value

    def test_expire_leaves_other_tenants_alone(self, factory, credit_ledger, tenant, client_a):
        other_studio = factory.studio(factory.tenant("Other"))
        foreign = factory.package(factory.client(other_studio), total=5, expiry_date=date(2029, 12, 1))
        factory.commit()
        assert credit_ledger.expire_packages(tenant.id) == 0
        assert foreign.status == ClientPackageStatus.ACTIVE.value

    def test_future_cutoff_is_capped_at_today(self, factory, credit_ledger, tenant, client_a):
        # clock reads 2030-01-01
        package = factory.package(client_a, total=5, expiry_date=date(2030, 6, 1))
        factory.commit()
        assert credit_ledger.expiry_cutoff(date(2099, 1, 1)) == date(2030, 1, 1)
        assert credit_ledger.expire_packages(tenant.id, as_of=date(2099, 1, 1)) == 0
        assert package.status == ClientPackageStatus.ACTIVE.value

    def test_past_cutoff_is_honoured(self, credit_ledger):
        assert credit_ledger.expiry_cutoff(date(2029, 6, 1)) == date(2029, 6, 1)
