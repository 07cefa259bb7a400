"""
Tests for BookingService single-session flows: booking, tenancy guard,
updates and rescheduling, cancellation, status changes, deletion and bulk.
"""

from contextlib import contextmanager
from datetime import date, datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from studioops.core.enums import ReservationStatus, SessionKind, SessionStatus
from studioops.core.exceptions import (
    InsufficientCreditException,
    NotFoundException,
    SchedulingConflictException,
    TimeChangeNotAllowedException,
    ValidationException,
)
from studioops.core.resource_lock import resource_locks
from studioops.models import CreditReservation, EventOutbox, StudioSession
from studioops.schemas.session import SessionCreate, SessionUpdate

DAY = date(2030, 1, 7)


def _at(hour: int, minute: int = 0, day: date = DAY) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


def _active_sessions(db: Session):
    return db.query(StudioSession).filter(StudioSession.status != SessionStatus.CANCELLED.value).all()


class TestBookSession:
    def test_book_reserves_credit(self, db, booking_service, make_session_payload, client_a, package_a):
        session = booking_service.book_session(
            package_a.tenant_id, make_session_payload(_at(9), client=client_a)
        )
        db.refresh(package_a)
        assert session.status == SessionStatus.SCHEDULED.value
        assert session.client_package_id == package_a.id
        assert session.booked_start_time == session.start_time
        assert package_a.sessions_remaining == 9
        assert package_a.is_balanced

        reservation = db.get(CreditReservation, session.reservation_id)
        assert reservation.session_id == session.id
        assert reservation.status == ReservationStatus.RESERVED.value

    def test_book_writes_audit_and_event(self, booking_service, make_session_payload, client_a, package_a):
        session = booking_service.book_session(
            package_a.tenant_id, make_session_payload(_at(9), client=client_a)
        )
        audit = booking_service.audit_repository.list_for_entity("session", session.id)
        assert [entry.action for entry in audit] == ["create"]
        events = booking_service.event_outbox_repository.list_for_aggregate(session.id)
        assert [e.event_type for e in events] == ["session.booked"]

    def test_room_conflict_leaves_no_trace(self, db, booking_service, make_session_payload, coach_b, client_a, client_b, package_a, package_b):
        tenant_id = package_a.tenant_id
        first = booking_service.book_session(tenant_id, make_session_payload(_at(9), client=client_a))
        with pytest.raises(SchedulingConflictException) as exc_info:
            booking_service.book_session(
                tenant_id, make_session_payload(_at(9, 30), client=client_b, coach_id=coach_b.id)
            )
        assert exc_info.value.resource_type == "room"
        assert exc_info.value.conflicting_session_id == first.id
        db.refresh(package_b)
        assert package_b.sessions_remaining == 10
        assert len(_active_sessions(db)) == 1

    def test_adjacent_sessions_both_book(self, db, booking_service, make_session_payload, client_a, client_b, package_a, package_b):
        tenant_id = package_a.tenant_id
        booking_service.book_session(tenant_id, make_session_payload(_at(9), client=client_a))
        booking_service.book_session(tenant_id, make_session_payload(_at(10), client=client_b))
        assert len(_active_sessions(db)) == 2

    def test_coach_time_off_blocks_only_overlap(self, factory, booking_service, make_session_payload, coach, client_a, package_a):
        factory.time_off(coach, _at(12), _at(14))
        factory.commit()
        tenant_id = package_a.tenant_id
        with pytest.raises(SchedulingConflictException) as exc_info:
            booking_service.book_session(tenant_id, make_session_payload(_at(13), client=client_a))
        assert exc_info.value.reason == "time_off"
        assert "time-off" in exc_info.value.message

        booking_service.book_session(tenant_id, make_session_payload(_at(11), client=client_a))
        booking_service.book_session(tenant_id, make_session_payload(_at(14), client=client_a))

    def test_no_credit_means_no_session(self, db, factory, booking_service, make_session_payload, client_a):
        package = factory.package(client_a, total=3, remaining=0)
        factory.commit()
        with pytest.raises(InsufficientCreditException):
            booking_service.book_session(
                package.tenant_id,
                make_session_payload(_at(9), client=client_a, client_package_id=package.id),
            )
        assert db.query(StudioSession).count() == 0
        assert db.query(CreditReservation).count() == 0

    def test_client_without_any_package(self, db, booking_service, make_session_payload, tenant, client_a):
        with pytest.raises(InsufficientCreditException):
            booking_service.book_session(tenant.id, make_session_payload(_at(9), client=client_a))
        assert db.query(StudioSession).count() == 0

    def test_group_session_takes_no_credit(self, db, booking_service, make_session_payload, tenant):
        session = booking_service.book_session(
            tenant.id, make_session_payload(_at(9), kind=SessionKind.GROUP, capacity=5)
        )
        assert session.is_group
        assert session.reservation_id is None
        assert db.query(CreditReservation).count() == 0

    def test_duration_bounds(self, booking_service, make_session_payload, tenant):
        with pytest.raises(ValidationException) as exc_info:
            booking_service.book_session(
                tenant.id, make_session_payload(_at(9), minutes=5, kind=SessionKind.GROUP, capacity=2)
            )
        assert exc_info.value.code == "INVALID_DURATION"


class TestTenancyGuard:
    def test_coach_from_other_studio_rejected_before_conflict_check(
        self, db, factory, tenant, booking_service, make_session_payload, client_a, package_a
    ):
        other_studio = factory.studio(tenant, name="Uptown")
        foreign_coach = factory.coach(other_studio, "Visiting Coach")
        factory.commit()
        with patch.object(booking_service.conflict_checker, "check_conflict") as check, patch.object(
            booking_service.credit_ledger, "reserve"
        ) as reserve:
            with pytest.raises(ValidationException) as exc_info:
                booking_service.book_session(
                    tenant.id,
                    make_session_payload(_at(9), client=client_a, coach_id=foreign_coach.id),
                )
        assert exc_info.value.code == "CROSS_STUDIO_RESOURCE"
        check.assert_not_called()
        reserve.assert_not_called()
        db.refresh(package_a)
        assert package_a.sessions_remaining == 10

    def test_client_from_other_studio_rejected(self, factory, tenant, booking_service, make_session_payload):
        other_studio = factory.studio(tenant, name="Uptown")
        foreign_client = factory.client(other_studio, "Visitor")
        factory.package(foreign_client)
        with pytest.raises(ValidationException) as exc_info:
            booking_service.book_session(tenant.id, make_session_payload(_at(9), client=foreign_client))
        assert exc_info.value.code == "CROSS_STUDIO_RESOURCE"

    def test_cross_studio_staff_allowed_by_studio_policy(self, factory, tenant, booking_service):
        home = factory.studio(tenant, name="Home", allow_cross_studio_staff=True)
        other = factory.studio(tenant, name="Other")
        room = factory.room(home)
        visiting_coach = factory.coach(other)
        factory.commit()

        session = booking_service.book_session(
            tenant.id,
            SessionCreate(
                studio_id=home.id,
                room_id=room.id,
                coach_id=visiting_coach.id,
                start_time=_at(9),
                end_time=_at(10),
                kind=SessionKind.GROUP,
                capacity=4,
            ),
        )
        assert session.coach_id == visiting_coach.id

    def test_room_from_other_tenant_rejected(self, factory, tenant, booking_service, make_session_payload):
        other_tenant = factory.tenant("Other")
        other_room = factory.room(factory.studio(other_tenant))
        with pytest.raises(ValidationException) as exc_info:
            booking_service.book_session(
                tenant.id,
                make_session_payload(_at(9), kind=SessionKind.GROUP, capacity=3, room_id=other_room.id),
            )
        assert exc_info.value.code == "CROSS_TENANT_RESOURCE"

    def test_unknown_coach_not_found(self, tenant, booking_service, make_session_payload):
        with pytest.raises(NotFoundException):
            booking_service.book_session(
                tenant.id,
                make_session_payload(
                    _at(9), kind=SessionKind.GROUP, capacity=3, coach_id="01HUNKNOWNCOACH00000000000"
                ),
            )


class TestUpdateAndReschedule:
    @pytest.fixture
    def booked(self, booking_service, make_session_payload, client_a, package_a):
        return booking_service.book_session(
            package_a.tenant_id, make_session_payload(_at(9), client=client_a)
        )

    def test_time_change_without_override_rejected_even_if_free(self, booking_service, booked):
        with pytest.raises(TimeChangeNotAllowedException) as exc_info:
            booking_service.reschedule_session(booked.tenant_id, booked.id, _at(15), _at(16))
        assert exc_info.value.code == "TIME_CHANGE_NOT_ALLOWED"
        assert not isinstance(exc_info.value, SchedulingConflictException)

    def test_reschedule_with_override(self, db, booking_service, booked):
        moved = booking_service.reschedule_session(
            booked.tenant_id, booked.id, _at(15), _at(16), allow_time_change_override=True
        )
        assert moved.start_time == _at(15)
        assert moved.booked_start_time == _at(9)
        events = db.query(EventOutbox).filter(EventOutbox.aggregate_id == booked.id).all()
        assert "session.rescheduled" in {e.event_type for e in events}

    def test_reschedule_into_conflict_leaves_session_unchanged(
        self, db, booking_service, make_session_payload, booked, client_b, package_b, coach_b
    ):
        blocker = booking_service.book_session(
            booked.tenant_id, make_session_payload(_at(15), client=client_b, coach_id=coach_b.id)
        )
        with pytest.raises(SchedulingConflictException) as exc_info:
            booking_service.reschedule_session(
                booked.tenant_id, booked.id, _at(15, 30), _at(16, 30), allow_time_change_override=True
            )
        assert exc_info.value.conflicting_session_id == blocker.id
        db.expire_all()
        stored = db.get(StudioSession, booked.id)
        assert stored.start_time == _at(9)
        assert stored.end_time == _at(10)

    def test_moving_within_own_window_is_not_a_self_conflict(self, booking_service, booked):
        moved = booking_service.reschedule_session(
            booked.tenant_id, booked.id, _at(9, 30), _at(10, 30), allow_time_change_override=True
        )
        assert moved.start_time == _at(9, 30)

    def test_same_time_needs_no_override(self, booking_service, booked):
        updated = booking_service.update_session(
            booked.tenant_id,
            booked.id,
            SessionUpdate(start_time=_at(9), end_time=_at(10), notes="Bring mat"),
        )
        assert updated.notes == "Bring mat"

    def test_room_change_is_conflict_checked(
        self, booking_service, make_session_payload, booked, room_b, coach_b, client_b, package_b
    ):
        booking_service.book_session(
            booked.tenant_id,
            make_session_payload(_at(9), client=client_b, room_id=room_b.id, coach_id=coach_b.id),
        )
        with pytest.raises(SchedulingConflictException) as exc_info:
            booking_service.update_session(booked.tenant_id, booked.id, SessionUpdate(room_id=room_b.id))
        assert exc_info.value.resource_type == "room"

    def test_cancelled_session_cannot_be_updated(self, booking_service, booked):
        booking_service.cancel_session(booked.tenant_id, booked.id)
        with pytest.raises(ValidationException):
            booking_service.update_session(booked.tenant_id, booked.id, SessionUpdate(notes="late"))

    def test_unknown_session(self, booking_service, tenant):
        with pytest.raises(NotFoundException):
            booking_service.update_session(tenant.id, "01HNOSESSION00000000000000", SessionUpdate(notes="x"))


class TestCancelAndDelete:
    @pytest.fixture
    def booked(self, booking_service, make_session_payload, client_a, package_a):
        return booking_service.book_session(
            package_a.tenant_id, make_session_payload(_at(9), client=client_a)
        )

    def test_cancel_releases_credit_and_frees_slot(
        self, db, booking_service, make_session_payload, booked, package_a, client_b, package_b
    ):
        cancelled = booking_service.cancel_session(booked.tenant_id, booked.id, reason="Sick")
        assert cancelled.status == SessionStatus.CANCELLED.value
        assert cancelled.cancelled_reason == "Sick"
        db.refresh(package_a)
        assert package_a.sessions_remaining == 10

        # The slot is free again
        booking_service.book_session(booked.tenant_id, make_session_payload(_at(9), client=client_b))

    def test_cancel_is_idempotent(self, db, booking_service, booked, package_a):
        booking_service.cancel_session(booked.tenant_id, booked.id)
        booking_service.cancel_session(booked.tenant_id, booked.id)
        db.refresh(package_a)
        assert package_a.sessions_remaining == 10

    def test_late_cancel_deducts_session(self, db, booking_service, booked, package_a):
        booking_service.cancel_session(booked.tenant_id, booked.id, deduct_session=True)
        db.refresh(package_a)
        assert package_a.sessions_remaining == 9
        reservation = db.get(CreditReservation, booked.reservation_id)
        assert reservation.status == ReservationStatus.CONSUMED.value

    def test_delete_restores_exactly_one_credit_once(self, db, booking_service, booked, package_a):
        assert booking_service.delete_session(booked.tenant_id, booked.id) is True
        db.refresh(package_a)
        assert package_a.sessions_remaining == 10

        assert booking_service.delete_session(booked.tenant_id, booked.id) is False
        db.refresh(package_a)
        assert package_a.sessions_remaining == 10
        assert package_a.is_balanced
        assert db.get(StudioSession, booked.id) is None

    def test_delete_after_cancel_does_not_double_release(self, db, booking_service, booked, package_a):
        booking_service.cancel_session(booked.tenant_id, booked.id)
        booking_service.delete_session(booked.tenant_id, booked.id)
        db.refresh(package_a)
        assert package_a.sessions_remaining == 10


class TestStatus:
    @pytest.fixture
    def booked(self, booking_service, make_session_payload, client_a, package_a):
        return booking_service.book_session(
            package_a.tenant_id, make_session_payload(_at(9), client=client_a)
        )

    def test_lifecycle(self, booking_service, booked):
        booking_service.update_status(booked.tenant_id, booked.id, SessionStatus.IN_PROGRESS)
        done = booking_service.update_status(booked.tenant_id, booked.id, SessionStatus.COMPLETED)
        assert done.status == SessionStatus.COMPLETED.value

    def test_invalid_transition(self, booking_service, booked):
        booking_service.cancel_session(booked.tenant_id, booked.id)
        with pytest.raises(ValidationException) as exc_info:
            booking_service.update_status(booked.tenant_id, booked.id, SessionStatus.SCHEDULED)
        assert exc_info.value.code == "INVALID_STATUS_TRANSITION"

    def test_cancelled_status_releases_credit(self, db, booking_service, booked, package_a):
        booking_service.update_status(booked.tenant_id, booked.id, SessionStatus.CANCELLED)
        db.refresh(package_a)
        assert package_a.sessions_remaining == 10


class TestBulkAndContention:
    def test_bulk_reports_failures_per_item(self, db, booking_service, make_session_payload, client_a, client_b, package_a, package_b):
        result = booking_service.create_bulk(
            package_a.tenant_id,
            [
                make_session_payload(_at(9), client=client_a),
                make_session_payload(_at(9, 30), client=client_b),
                make_session_payload(_at(11), client=client_b),
            ],
        )
        assert len(result.created) == 2
        assert [e.index for e in result.errors] == [1]
        assert result.errors[0].code == "SCHEDULING_CONFLICT"

    def test_lock_failure_is_retried_once_then_conflict(self, booking_service, make_session_payload, client_a, package_a):
        calls = []

        def locked(*args, **kwargs):
            calls.append(1)
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        with patch.object(
            booking_service.session_repository, "lock_resource_bookings", side_effect=locked
        ), patch("studioops.database.time.sleep"):
            with pytest.raises(SchedulingConflictException) as exc_info:
                booking_service.book_session(
                    package_a.tenant_id, make_session_payload(_at(9), client=client_a)
                )
        assert exc_info.value.reason == "concurrent_update"
        assert len(calls) == 2

    def test_lock_failure_then_success(self, booking_service, make_session_payload, client_a, package_a):
        original = booking_service.session_repository.lock_resource_bookings
        calls = []

        def flaky(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise OperationalError("SELECT", {}, Exception("database is locked"))
            return original(*args, **kwargs)

        with patch.object(
            booking_service.session_repository, "lock_resource_bookings", side_effect=flaky
        ), patch("studioops.database.time.sleep"):
            session = booking_service.book_session(
                package_a.tenant_id, make_session_payload(_at(9), client=client_a)
            )
        assert session.id is not None
        assert len(calls) == 2

    def test_busy_redis_lock_surfaces_as_conflict(self, booking_service, make_session_payload, client_a, package_a):
        @contextmanager
        def never_acquired(tenant_id, resources):
            yield False

        with patch("studioops.services.booking_service.resource_locks", never_acquired), patch(
            "studioops.database.time.sleep"
        ):
            with pytest.raises(SchedulingConflictException) as exc_info:
                booking_service.book_session(
                    package_a.tenant_id, make_session_payload(_at(9), client=client_a)
                )
        assert exc_info.value.reason == "concurrent_update"

    def test_midnight_crossing_session_locks_both_days(
        self, booking_service, make_session_payload, room, coach, client_a, package_a
    ):
        held = []
        row_locked_days = []
        original = booking_service.session_repository.lock_resource_bookings

        @contextmanager
        def recording_locks(tenant_id, resources):
            held.extend(resources)
            with resource_locks(tenant_id, resources) as acquired:
                yield acquired

        def recording_rows(*args, **kwargs):
            row_locked_days.append(kwargs["day_start"])
            return original(*args, **kwargs)

        with patch("studioops.services.booking_service.resource_locks", recording_locks), patch.object(
            booking_service.session_repository, "lock_resource_bookings", side_effect=recording_rows
        ):
            booking_service.book_session(
                package_a.tenant_id, make_session_payload(_at(23, 30), client=client_a)
            )

        next_day = date(2030, 1, 8)
        for resource_type, resource_id in (("room", room.id), ("coach", coach.id), ("client", client_a.id)):
            assert (resource_type, resource_id, DAY) in held
            assert (resource_type, resource_id, next_day) in held
        assert sorted(row_locked_days) == [_at(0), _at(0, day=next_day)]

    def test_session_ending_at_midnight_locks_one_day(
        self, booking_service, make_session_payload, room, client_a, package_a
    ):
        held = []

        @contextmanager
        def recording_locks(tenant_id, resources):
            held.extend(resources)
            with resource_locks(tenant_id, resources) as acquired:
                yield acquired

        with patch("studioops.services.booking_service.resource_locks", recording_locks):
            booking_service.book_session(
                package_a.tenant_id, make_session_payload(_at(23), client=client_a)
            )

        assert {day for _type, _id, day in held} == {DAY}


class TestEmsDevice:
    @pytest.fixture
    def device(self, factory, studio):
        device = factory.device(studio)
        factory.commit()
        return device

    def test_device_double_booking_is_a_conflict(
        self, db, booking_service, make_session_payload, device, room_b, coach_b, client_a, client_b, package_a, package_b
    ):
        first = booking_service.book_session(
            package_a.tenant_id,
            make_session_payload(_at(9), client=client_a, ems_device_id=device.id),
        )
        assert first.ems_device_id == device.id

        with pytest.raises(SchedulingConflictException) as exc_info:
            booking_service.book_session(
                package_a.tenant_id,
                make_session_payload(
                    _at(9, 30),
                    client=client_b,
                    room_id=room_b.id,
                    coach_id=coach_b.id,
                    ems_device_id=device.id,
                ),
            )
        assert exc_info.value.resource_type == "ems_device"
        assert exc_info.value.details["conflicting_session_id"] == first.id
        db.refresh(package_b)
        assert package_b.sessions_remaining == 10

    def test_sessions_without_device_do_not_collide_on_it(
        self, booking_service, make_session_payload, device, room_b, coach_b, client_a, client_b, package_a, package_b
    ):
        booking_service.book_session(
            package_a.tenant_id,
            make_session_payload(_at(9), client=client_a, ems_device_id=device.id),
        )
        other = booking_service.book_session(
            package_a.tenant_id,
            make_session_payload(_at(9), client=client_b, room_id=room_b.id, coach_id=coach_b.id),
        )
        assert other.ems_device_id is None

    def test_adding_busy_device_on_update_is_rejected(
        self, booking_service, make_session_payload, device, room_b, coach_b, client_a, client_b, package_a, package_b
    ):
        booking_service.book_session(
            package_a.tenant_id,
            make_session_payload(_at(9), client=client_a, ems_device_id=device.id),
        )
        second = booking_service.book_session(
            package_a.tenant_id,
            make_session_payload(_at(9), client=client_b, room_id=room_b.id, coach_id=coach_b.id),
        )

        with pytest.raises(SchedulingConflictException) as exc_info:
            booking_service.update_session(
                package_a.tenant_id, second.id, SessionUpdate(ems_device_id=device.id)
            )
        assert exc_info.value.resource_type == "ems_device"
        assert second.ems_device_id is None

    def test_device_from_other_studio_rejected(
        self, factory, tenant, studio, booking_service, make_session_payload, client_a, package_a
    ):
        foreign_device = factory.device(factory.studio(tenant, name="Uptown"))
        with pytest.raises(ValidationException) as exc_info:
            booking_service.book_session(
                tenant.id,
                make_session_payload(_at(9), client=client_a, ems_device_id=foreign_device.id),
            )
        assert exc_info.value.code == "CROSS_STUDIO_RESOURCE"
        assert exc_info.value.details == {"ems_device_id": foreign_device.id, "studio_id": studio.id}

    def test_unknown_device_not_found(self, booking_service, make_session_payload, client_a, package_a):
        with pytest.raises(NotFoundException):
            booking_service.book_session(
                package_a.tenant_id,
                make_session_payload(_at(9), client=client_a, ems_device_id="01HUNKNOWNDEVICE0000000000"),
            )


class TestCoachClientPreference:
    @pytest.fixture
    def book_with(self, factory, studio, booking_service, make_session_payload):
        def _book(preference, gender):
            coach = factory.coach(studio, "Picky Coach", preferred_client_gender=preference)
            client = factory.client(studio, "Member", gender=gender)
            factory.package(client)
            factory.commit()
            return booking_service.book_session(
                studio.tenant_id, make_session_payload(_at(9), client=client, coach_id=coach.id)
            )

        return _book

    @pytest.mark.parametrize(
        "preference,gender",
        [
            ("any", "female"),
            (None, "male"),
            ("female", "female"),
            ("female", None),
        ],
    )
    def test_allowed(self, book_with, preference, gender):
        assert book_with(preference, gender).id is not None

    @pytest.mark.parametrize("gender", ["male", "prefer_not_to_say", "other"])
    def test_rejected_before_any_credit_moves(self, db, booking_service, book_with, gender):
        with patch.object(booking_service.credit_ledger, "reserve") as reserve:
            with pytest.raises(ValidationException) as exc_info:
                book_with("female", gender)
        assert exc_info.value.code == "COACH_GENDER_MISMATCH"
        reserve.assert_not_called()
        assert _active_sessions(db) == []

    def test_switching_to_mismatched_coach_is_rejected(
        self, factory, studio, booking_service, make_session_payload, package_a, client_a
    ):
        client_a.gender = "male"
        picky = factory.coach(studio, "Picky Coach", preferred_client_gender="female")
        factory.commit()
        session = booking_service.book_session(
            package_a.tenant_id, make_session_payload(_at(9), client=client_a)
        )

        with pytest.raises(ValidationException) as exc_info:
            booking_service.update_session(
                package_a.tenant_id, session.id, SessionUpdate(coach_id=picky.id)
            )
        assert exc_info.value.code == "COACH_GENDER_MISMATCH"
        assert session.coach_id != picky.id
