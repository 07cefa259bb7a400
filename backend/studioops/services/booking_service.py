# backend/studioops/services/booking_service.py
"""
Booking Service

Top-level entry point for scheduling. Each request moves through
Validating -> ConflictChecking -> (Expanding) -> CreditReserving -> Persisted
and fails without side effects at any step.

Writes run under Redis resource locks plus a row lock on the contested
resources' bookings for the day, and the conflict check is repeated inside
that transaction. A lock or serialization failure is retried once with a
fresh check before surfacing as a scheduling conflict.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, TypeVar

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import (
    SESSION_STATUS_TRANSITIONS,
    ClientGender,
    CoachClientPreference,
    ResourceType,
    SessionKind,
    SessionStatus,
)
from ..core.exceptions import (
    CapacityException,
    DomainException,
    DuplicateParticipantException,
    InsufficientCreditException,
    NotFoundException,
    SchedulingConflictException,
    TimeChangeNotAllowedException,
    ValidationException,
)
from ..core.resource_lock import ResourceBusyError, resource_locks
from ..core.time_window import TimeWindow
from ..core.timezone_utils import get_studio_timezone, to_local
from ..core.ulid_helper import generate_ulid
from ..database import is_retryable_db_error, with_db_retry
from ..models.audit_log import AuditLog
from ..models.recurrence import RecurrenceSeries
from ..models.session import SessionParticipant, StudioSession
from ..models.studio import Client, Coach, Studio
from ..models.types import now_utc
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories import RepositoryFactory
from ..schemas.session import (
    ParticipantAdd,
    SeriesCreate,
    SeriesUpdate,
    SessionCreate,
    SessionUpdate,
)
from .availability_service import local_days
from .base import BaseService
from .conflict_checker import ConflictChecker, ConflictDetail, SessionProposal
from .credit_ledger import CreditLedgerService
from .recurrence_expander import RecurrenceExpander

logger = logging.getLogger(__name__)

T = TypeVar("T")

CANCELLED_SESSION_MESSAGE = "Cancelled sessions cannot be modified"
COACH_PREFERENCE_MESSAGE = "Coach does not take on clients of this gender"
CONTENDED_MESSAGE = "Another booking for this resource was committed first; please retry"
NO_PACKAGE_MESSAGE = "Client has no active package with sessions remaining"

# Occurrence failures a series reports instead of aborting
SKIPPABLE_OCCURRENCE_ERRORS = (SchedulingConflictException, InsufficientCreditException)


@dataclass(frozen=True)
class SkippedOccurrence:
    window: TimeWindow
    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, window: TimeWindow, exc: DomainException) -> "SkippedOccurrence":
        return cls(window=window, code=exc.code, message=exc.message, details=dict(exc.details))

    @classmethod
    def from_conflict(cls, detail: ConflictDetail) -> "SkippedOccurrence":
        exc = detail.to_exception()
        return cls(
            window=detail.window, code=exc.code, message=exc.message, details=dict(exc.details)
        )


@dataclass
class SeriesCreateResult:
    series: RecurrenceSeries
    created: List[StudioSession]
    skipped: List[SkippedOccurrence]


@dataclass
class SeriesPreview:
    valid: List[TimeWindow]
    conflicts: List[SkippedOccurrence]


@dataclass
class BulkItemError:
    index: int
    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BulkCreateResult:
    created: List[StudioSession]
    errors: List[BulkItemError]


def _is_contention(exc: BaseException) -> bool:
    return isinstance(exc, ResourceBusyError) or is_retryable_db_error(exc)


class BookingService(BaseService):
    """
    Orchestrates session booking, rescheduling, cancellation, recurrence
    series and group participation while keeping credits consistent.
    """

    def __init__(
        self,
        db: Session,
        clock: Optional[Callable[[], datetime]] = None,
        conflict_checker: Optional[ConflictChecker] = None,
        credit_ledger: Optional[CreditLedgerService] = None,
        expander: Optional[RecurrenceExpander] = None,
    ):
        super().__init__(db)
        self.clock = clock or now_utc
        self.conflict_checker = conflict_checker or ConflictChecker(db)
        self.credit_ledger = credit_ledger or CreditLedgerService(db, clock=self.clock)
        self.expander = expander or RecurrenceExpander()
        self.session_repository = RepositoryFactory.create_session_repository(db)
        self.recurrence_repository = RepositoryFactory.create_recurrence_repository(db)
        self.studio_repository = RepositoryFactory.create_studio_repository(db)
        self.audit_repository = RepositoryFactory.create_audit_repository(db)
        self.event_outbox_repository = RepositoryFactory.create_event_outbox_repository(db)

    # ------------------------------------------------------------------ reads

    def get_session(self, tenant_id: str, session_id: str) -> StudioSession:
        session = self.session_repository.get_for_tenant(tenant_id, session_id)
        if session is None:
            raise NotFoundException("Session not found", details={"session_id": session_id})
        return session

    def list_sessions(
        self,
        tenant_id: str,
        studio_id: str,
        range_start: datetime,
        range_end: datetime,
        include_cancelled: bool = False,
    ) -> List[StudioSession]:
        window = TimeWindow(range_start, range_end)
        return self.session_repository.list_for_studio(
            tenant_id, studio_id, window.start, window.end, include_cancelled
        )

    # --------------------------------------------------------------- booking

    @BaseService.measure_operation("book_session")
    def book_session(self, tenant_id: str, data: SessionCreate) -> StudioSession:
        """
        Book one session and reserve its credit.

        Raises:
            ValidationException: malformed window or resources outside the
                tenant/studio
            NotFoundException: unknown studio, room, coach or client
            SchedulingConflictException: hours, room, coach, time-off or
                client conflict
            InsufficientCreditException: no usable credit for the client
        """
        window = self._validated_window(data.start_time, data.end_time)
        studio = self._resolve_resources(
            tenant_id,
            data.studio_id,
            data.room_id,
            data.coach_id,
            data.client_id,
            ems_device_id=data.ems_device_id,
        )
        proposal = self._proposal(tenant_id, data, window)

        def persist() -> StudioSession:
            return self._create_occurrence(tenant_id, studio, proposal, data)

        session = self._run_locked("book_session", tenant_id, studio, [proposal], persist)
        self.log_operation(
            "book_session",
            tenant_id=tenant_id,
            session_id=session.id,
            room_id=session.room_id,
            coach_id=session.coach_id,
        )
        return session

    @BaseService.measure_operation("create_bulk")
    def create_bulk(self, tenant_id: str, items: Iterable[SessionCreate]) -> BulkCreateResult:
        """Book independent sessions; failures are reported per item."""
        created: List[StudioSession] = []
        errors: List[BulkItemError] = []
        for index, item in enumerate(items):
            try:
                created.append(self.book_session(tenant_id, item))
            except DomainException as exc:
                errors.append(BulkItemError(index, exc.code, exc.message, dict(exc.details)))
        self.logger.info(
            f"Bulk create finished: {len(created)} created, {len(errors)} failed",
            extra={"tenant_id": tenant_id},
        )
        return BulkCreateResult(created=created, errors=errors)

    # ----------------------------------------------------------- rescheduling

    @BaseService.measure_operation("update_session")
    def update_session(self, tenant_id: str, session_id: str, patch: SessionUpdate) -> StudioSession:
        """
        Apply a partial update.

        A changed start or end without ``allow_time_change_override`` is
        rejected before any conflict check. On any failure the stored session
        is left unchanged.
        """
        session = self.get_session(tenant_id, session_id)
        new_start = patch.start_time or session.start_time
        new_end = patch.end_time or session.end_time
        time_changed = new_start != session.start_time or new_end != session.end_time
        if time_changed and not patch.allow_time_change_override:
            raise TimeChangeNotAllowedException(session.id)
        if session.is_cancelled:
            raise ValidationException(CANCELLED_SESSION_MESSAGE, code="SESSION_CANCELLED")

        window = self._validated_window(new_start, new_end) if time_changed else session.window
        room_id = patch.room_id or session.room_id
        coach_id = patch.coach_id or session.coach_id
        device_id = patch.ems_device_id or session.ems_device_id
        placement_changed = (
            time_changed
            or room_id != session.room_id
            or coach_id != session.coach_id
            or device_id != session.ems_device_id
        )
        if patch.capacity is not None:
            self._check_capacity_change(session, patch.capacity)

        before = session.to_dict()

        def apply() -> StudioSession:
            session.room_id = room_id
            session.coach_id = coach_id
            session.ems_device_id = device_id
            session.start_time = window.start
            session.end_time = window.end
            if patch.capacity is not None:
                session.capacity = patch.capacity
            if patch.notes is not None:
                session.notes = patch.notes
            self.db.flush()
            event = "session.rescheduled" if time_changed else "session.updated"
            self._write_audit("session", session.id, "update", tenant_id, before, session.to_dict())
            self._enqueue_event(event, session.id, session.to_dict())
            return session

        if not placement_changed:
            with self.transaction():
                return apply()

        studio = self._resolve_resources(
            tenant_id,
            session.studio_id,
            room_id,
            coach_id,
            session.client_id,
            ems_device_id=device_id,
        )
        proposal = SessionProposal(
            tenant_id=tenant_id,
            studio_id=session.studio_id,
            room_id=room_id,
            coach_id=coach_id,
            window=window,
            client_id=session.client_id,
            kind=SessionKind(session.kind),
            ems_device_id=device_id,
        )
        participant_ids = [p.client_id for p in session.participants] if time_changed else []

        def persist() -> StudioSession:
            self.conflict_checker.check_conflict(
                proposal, exclude_session_id=session.id, studio=studio
            ).raise_for_conflict()
            for client_id in participant_ids:
                self.conflict_checker.check_participant_conflict(
                    tenant_id, client_id, window, exclude_session_id=session.id
                ).raise_for_conflict()
            return apply()

        return self._run_locked(
            "update_session", tenant_id, studio, [proposal], persist, participant_ids
        )

    def reschedule_session(
        self,
        tenant_id: str,
        session_id: str,
        new_start: datetime,
        new_end: datetime,
        allow_time_change_override: bool = False,
    ) -> StudioSession:
        return self.update_session(
            tenant_id,
            session_id,
            SessionUpdate(
                start_time=new_start,
                end_time=new_end,
                allow_time_change_override=allow_time_change_override,
            ),
        )

    # ------------------------------------------------------ cancel and delete

    @BaseService.measure_operation("cancel_session")
    def cancel_session(
        self,
        tenant_id: str,
        session_id: str,
        reason: Optional[str] = None,
        deduct_session: bool = False,
    ) -> StudioSession:
        """
        Cancel a session, returning its credits unless ``deduct_session``.

        Cancelling an already cancelled session is a no-op.
        """
        session = self.get_session(tenant_id, session_id)
        if session.is_cancelled:
            return session

        before = session.to_dict()
        with self.transaction():
            session.cancel(self.clock(), reason)
            for reservation_id in self._reservation_ids(session):
                if deduct_session:
                    self.credit_ledger.consume(reservation_id)
                else:
                    self.credit_ledger.release(reservation_id)
            self.db.flush()
            self._write_audit(
                "session", session.id, "cancel", tenant_id, before, session.to_dict(), reason
            )
            self._enqueue_event(
                "session.cancelled",
                session.id,
                {**session.to_dict(), "deduct_session": deduct_session},
            )

        self.log_operation(
            "cancel_session", tenant_id=tenant_id, session_id=session.id, deduct=deduct_session
        )
        return session

    @BaseService.measure_operation("update_status")
    def update_status(
        self,
        tenant_id: str,
        session_id: str,
        status: SessionStatus,
        reason: Optional[str] = None,
        deduct_session: bool = False,
    ) -> StudioSession:
        status = SessionStatus(status)
        session = self.get_session(tenant_id, session_id)
        current = SessionStatus(session.status)
        if status == current:
            return session
        if status not in SESSION_STATUS_TRANSITIONS[current]:
            raise ValidationException(
                f"Cannot move a {current.value} session to {status.value}",
                code="INVALID_STATUS_TRANSITION",
                details={"from": current.value, "to": status.value},
            )
        if status == SessionStatus.CANCELLED:
            return self.cancel_session(tenant_id, session_id, reason, deduct_session)

        before = session.to_dict()
        with self.transaction():
            session.status = status.value
            self.db.flush()
            self._write_audit("session", session.id, "status", tenant_id, before, session.to_dict())
            self._enqueue_event("session.status_changed", session.id, session.to_dict())
        return session

    @BaseService.measure_operation("delete_session")
    def delete_session(self, tenant_id: str, session_id: str) -> bool:
        """
        Delete a session and release every credit it still holds.

        Returns False when the session does not exist, so repeated deletes
        never release twice.
        """
        session = self.session_repository.get_for_tenant(tenant_id, session_id, for_update=True)
        if session is None:
            return False
        snapshot = session.to_dict()
        with self.transaction():
            released = self._delete_session_rows(session)
            self._write_audit("session", session_id, "delete", tenant_id, snapshot, None)
            self._enqueue_event("session.deleted", session_id, snapshot)
        self.log_operation(
            "delete_session", tenant_id=tenant_id, session_id=session_id, released=released
        )
        return True

    # ---------------------------------------------------------------- series

    @BaseService.measure_operation("create_series")
    def create_series(self, tenant_id: str, data: SeriesCreate) -> SeriesCreateResult:
        """
        Create a recurring series.

        The seed occurrence is all-or-nothing: if it cannot be booked nothing
        is written. Later occurrences are booked one transaction each; those
        that conflict or lack credit are returned in ``skipped``.
        """
        seed = data.seed
        window = self._validated_window(seed.start_time, seed.end_time)
        studio = self._resolve_resources(
            tenant_id,
            seed.studio_id,
            seed.room_id,
            seed.coach_id,
            seed.client_id,
            ems_device_id=seed.ems_device_id,
        )
        rule = data.rule.to_rule()
        windows = self.expander.occurrences(window, rule, get_studio_timezone(studio))
        proposals = [self._proposal(tenant_id, seed, w) for w in windows]

        def persist_seed() -> Tuple[RecurrenceSeries, StudioSession]:
            series = self.recurrence_repository.create(
                tenant_id=tenant_id,
                studio_id=studio.id,
                pattern=rule.pattern.value,
                end_date=rule.end_date,
                slots=rule.slots_as_json(),
            )
            seed_session = self._create_occurrence(
                tenant_id, studio, proposals[0], seed, series_id=series.id
            )
            series.seed_session_id = seed_session.id
            self._write_audit(
                "series",
                series.id,
                "create",
                tenant_id,
                None,
                {"pattern": series.pattern, "end_date": rule.end_date.isoformat()},
            )
            self._enqueue_event(
                "series.created",
                series.id,
                {"series_id": series.id, "seed_session_id": seed_session.id},
            )
            return series, seed_session

        series, seed_session = self._run_locked(
            "create_series", tenant_id, studio, proposals[:1], persist_seed
        )

        created = [seed_session]
        skipped: List[SkippedOccurrence] = []
        for proposal in proposals[1:]:

            def persist_occurrence(proposal: SessionProposal = proposal) -> StudioSession:
                return self._create_occurrence(
                    tenant_id, studio, proposal, seed, series_id=series.id
                )

            try:
                created.append(
                    self._run_locked(
                        "create_series_occurrence", tenant_id, studio, [proposal], persist_occurrence
                    )
                )
            except SKIPPABLE_OCCURRENCE_ERRORS as exc:
                skipped.append(SkippedOccurrence.from_exception(proposal.window, exc))

        prometheus_metrics.record_series_occurrences(len(created), len(skipped))
        self.log_operation(
            "create_series",
            tenant_id=tenant_id,
            series_id=series.id,
            created_count=len(created),
            skipped_count=len(skipped),
        )
        return SeriesCreateResult(series=series, created=created, skipped=skipped)

    @BaseService.measure_operation("preview_series")
    def preview_series(self, tenant_id: str, data: SeriesCreate) -> SeriesPreview:
        """Expand and conflict-check a series without writing anything."""
        seed = data.seed
        window = self._validated_window(seed.start_time, seed.end_time)
        studio = self._resolve_resources(
            tenant_id,
            seed.studio_id,
            seed.room_id,
            seed.coach_id,
            seed.client_id,
            ems_device_id=seed.ems_device_id,
        )
        rule = data.rule.to_rule()
        valid: List[TimeWindow] = []
        conflicts: List[SkippedOccurrence] = []
        for occurrence in self.expander.expand(window, rule, get_studio_timezone(studio)):
            result = self.conflict_checker.check_conflict(
                self._proposal(tenant_id, seed, occurrence), studio=studio
            )
            if result.conflict is None:
                valid.append(occurrence)
            else:
                conflicts.append(SkippedOccurrence.from_conflict(result.conflict))
        return SeriesPreview(valid=valid, conflicts=conflicts)

    @BaseService.measure_operation("update_series")
    def update_series(self, tenant_id: str, series_id: str, patch: SeriesUpdate) -> RecurrenceSeries:
        """
        Update future members of a series.

        Room/coach changes are checked for every future member first and
        applied only if all of them fit. Moving ``end_date`` earlier deletes
        the members after it and releases their credits.
        """
        series = self._get_series(tenant_id, series_id)
        now = self.clock()
        future = [s for s in series.sessions if s.start_time >= now and not s.is_cancelled]

        studio = self.studio_repository.get_studio(series.studio_id)
        if studio is None:
            raise NotFoundException("Studio not found", details={"studio_id": series.studio_id})
        tz = get_studio_timezone(studio)

        trimmed: List[StudioSession] = []
        if patch.end_date is not None and patch.end_date < series.end_date:
            trimmed = [s for s in series.sessions if to_local(s.start_time, tz).date() > patch.end_date]
            if series.seed_session_id in {s.id for s in trimmed}:
                raise ValidationException(
                    "Series end date cannot be moved before the first session",
                    code="INVALID_RECURRENCE",
                )
        trimmed_ids = {s.id for s in trimmed}
        kept_future = [s for s in future if s.id not in trimmed_ids]

        before = {
            "end_date": series.end_date.isoformat(),
            "session_ids": series.session_ids,
        }
        new_room = patch.room_id
        new_coach = patch.coach_id
        proposals: List[SessionProposal] = []
        if new_room or new_coach:
            for member in kept_future:
                self._resolve_resources(
                    tenant_id,
                    series.studio_id,
                    new_room or member.room_id,
                    new_coach or member.coach_id,
                    member.client_id,
                    ems_device_id=member.ems_device_id,
                )
                proposals.append(
                    SessionProposal(
                        tenant_id=tenant_id,
                        studio_id=series.studio_id,
                        room_id=new_room or member.room_id,
                        coach_id=new_coach or member.coach_id,
                        window=member.window,
                        client_id=member.client_id,
                        kind=SessionKind(member.kind),
                        ems_device_id=member.ems_device_id,
                    )
                )

        def persist() -> RecurrenceSeries:
            for member, proposal in zip(kept_future, proposals):
                self.conflict_checker.check_conflict(
                    proposal, exclude_session_id=member.id, studio=studio
                ).raise_for_conflict()
            for member in trimmed:
                self._delete_session_rows(member)
            for member in kept_future:
                if new_room:
                    member.room_id = new_room
                if new_coach:
                    member.coach_id = new_coach
                if patch.notes is not None:
                    member.notes = patch.notes
            if patch.end_date is not None:
                series.end_date = patch.end_date
            self.db.flush()
            self.db.expire(series, ["sessions"])
            self._write_audit(
                "series",
                series.id,
                "update",
                tenant_id,
                before,
                {"end_date": series.end_date.isoformat(), "session_ids": series.session_ids},
            )
            self._enqueue_event("series.updated", series.id, {"series_id": series.id})
            return series

        return self._run_locked("update_series", tenant_id, studio, proposals, persist)

    @BaseService.measure_operation("delete_series")
    def delete_series(self, tenant_id: str, series_id: str) -> bool:
        """
        Delete a series and every member session, releasing each member's
        credits exactly once. Returns False when the series does not exist.
        """
        series = self.recurrence_repository.get_with_sessions(tenant_id, series_id)
        if series is None:
            return False
        member_ids = series.session_ids
        with self.transaction():
            released = 0
            for member in list(series.sessions):
                released += self._delete_session_rows(member)
            self.db.expire(series, ["sessions"])
            self.recurrence_repository.delete_entity(series)
            self._write_audit(
                "series", series_id, "delete", tenant_id, {"session_ids": member_ids}, None
            )
            self._enqueue_event(
                "series.deleted", series_id, {"series_id": series_id, "session_ids": member_ids}
            )
        self.log_operation(
            "delete_series",
            tenant_id=tenant_id,
            series_id=series_id,
            sessions=len(member_ids),
            released=released,
        )
        return True

    # ----------------------------------------------------------- participants

    @BaseService.measure_operation("add_participant")
    def add_participant(
        self, tenant_id: str, session_id: str, data: ParticipantAdd
    ) -> SessionParticipant:
        """
        Enroll a client in a group session and reserve their credit.

        Raises:
            ValidationException: not a group session, cancelled, or client
                outside the tenant/studio
            DuplicateParticipantException: client already enrolled
            CapacityException: session full
            SchedulingConflictException: client busy elsewhere
            InsufficientCreditException: no usable credit
        """
        session = self.get_session(tenant_id, session_id)
        if not session.is_group:
            raise ValidationException(
                "Participants can only be added to group sessions", code="NOT_GROUP_SESSION"
            )
        if session.is_cancelled:
            raise ValidationException(CANCELLED_SESSION_MESSAGE, code="SESSION_CANCELLED")
        studio = self._resolve_resources(
            tenant_id, session.studio_id, session.room_id, session.coach_id, data.client_id
        )
        self._check_can_join(session, data.client_id)

        def persist() -> SessionParticipant:
            locked = self.session_repository.get_for_tenant(tenant_id, session_id, for_update=True)
            if locked is None:
                raise NotFoundException("Session not found", details={"session_id": session_id})
            self._check_can_join(locked, data.client_id)
            self.conflict_checker.check_participant_conflict(
                tenant_id, data.client_id, locked.window, exclude_session_id=locked.id
            ).raise_for_conflict()

            package_id = self._resolve_package(
                tenant_id, data.client_id, data.client_package_id, studio, locked.window
            )
            participant = self.session_repository.add_participant(
                locked, data.client_id, client_package_id=package_id
            )
            reservation = self.credit_ledger.reserve(
                tenant_id,
                package_id,
                session_id=locked.id,
                client_id=data.client_id,
                on_date=self._local_date(studio, locked.window.start),
                participant_id=participant.id,
            )
            participant.reservation_id = reservation.id
            self.db.flush()
            self._write_audit(
                "session_participant",
                participant.id,
                "create",
                tenant_id,
                None,
                {"session_id": locked.id, "client_id": data.client_id},
            )
            self._enqueue_event(
                "participant.added",
                participant.id,
                {"session_id": locked.id, "client_id": data.client_id},
            )
            return participant

        return self._run_locked(
            "add_participant", tenant_id, studio, [], persist, [data.client_id], session.window
        )

    @BaseService.measure_operation("remove_participant")
    def remove_participant(self, tenant_id: str, session_id: str, client_id: str) -> bool:
        """Remove a participant and release their credit. Idempotent."""
        session = self.get_session(tenant_id, session_id)
        participant = self.session_repository.get_participant(session.id, client_id)
        if participant is None:
            return False
        participant_id = participant.id
        with self.transaction():
            self.credit_ledger.release(participant.reservation_id)
            self.session_repository.remove_participant(session, participant)
            self._write_audit(
                "session_participant",
                participant_id,
                "delete",
                tenant_id,
                {"session_id": session.id, "client_id": client_id},
                None,
            )
            self._enqueue_event(
                "participant.removed",
                participant_id,
                {"session_id": session.id, "client_id": client_id},
            )
        return True

    # ------------------------------------------------------------- internals

    def _validated_window(self, start: datetime, end: datetime) -> TimeWindow:
        window = TimeWindow(start, end)
        minutes = window.duration_minutes
        if minutes < settings.min_session_minutes or minutes > settings.max_session_minutes:
            raise ValidationException(
                f"Session length must be between {settings.min_session_minutes} and "
                f"{settings.max_session_minutes} minutes",
                code="INVALID_DURATION",
                details={"duration_minutes": minutes},
            )
        return window

    def _resolve_resources(
        self,
        tenant_id: str,
        studio_id: str,
        room_id: str,
        coach_id: str,
        client_id: Optional[str] = None,
        ems_device_id: Optional[str] = None,
    ) -> Studio:
        """
        Tenant and studio ownership guard, run before any conflict check.

        Unknown ids are NotFound; ids owned by another tenant or studio are
        validation failures, as is a client the coach does not take on.
        """
        studio = self.studio_repository.get_studio(studio_id)
        if studio is None:
            raise NotFoundException("Studio not found", details={"studio_id": studio_id})
        if studio.tenant_id != tenant_id:
            raise ValidationException(
                "Studio belongs to a different tenant",
                code="CROSS_TENANT_RESOURCE",
                details={"studio_id": studio_id},
            )

        room = self.studio_repository.get_room(room_id)
        if room is None:
            raise NotFoundException("Room not found", details={"room_id": room_id})
        self._check_owner("room", room_id, room, tenant_id, studio.id, allow_cross=False)

        if ems_device_id:
            device = self.studio_repository.get_device(ems_device_id)
            if device is None:
                raise NotFoundException(
                    "EMS device not found", details={"ems_device_id": ems_device_id}
                )
            self._check_owner(
                "ems_device", ems_device_id, device, tenant_id, studio.id, allow_cross=False
            )

        allow_cross = (
            studio.allow_cross_studio_staff
            if studio.allow_cross_studio_staff is not None
            else settings.allow_cross_studio_staff_default
        )
        coach = self.studio_repository.get_coach(coach_id)
        if coach is None:
            raise NotFoundException("Coach not found", details={"coach_id": coach_id})
        self._check_owner("coach", coach_id, coach, tenant_id, studio.id, allow_cross)

        if client_id:
            client = self.studio_repository.get_client(client_id)
            if client is None:
                raise NotFoundException("Client not found", details={"client_id": client_id})
            self._check_owner("client", client_id, client, tenant_id, studio.id, allow_cross)
            self._check_coach_preference(coach, client)
        return studio

    @staticmethod
    def _check_owner(
        kind: str, record_id: str, record: Any, tenant_id: str, studio_id: str, allow_cross: bool
    ) -> None:
        label = kind.replace("_", " ").capitalize()
        if record.tenant_id != tenant_id:
            raise ValidationException(
                f"{label} belongs to a different tenant",
                code="CROSS_TENANT_RESOURCE",
                details={f"{kind}_id": record_id},
            )
        if record.studio_id != studio_id and not allow_cross:
            raise ValidationException(
                f"{label} belongs to a different studio",
                code="CROSS_STUDIO_RESOURCE",
                details={f"{kind}_id": record_id, "studio_id": studio_id},
            )

    @staticmethod
    def _check_coach_preference(coach: Coach, client: Client) -> None:
        """
        Reject clients outside the coach's preferred client gender.

        A coach without a preference (or with ``any``) takes everyone, and a
        client with no recorded gender is let through. A client who prefers
        not to say only matches coaches without a specific preference.
        """
        preference = coach.preferred_client_gender
        if not preference or preference == CoachClientPreference.ANY.value:
            return
        if client.gender is None:
            return
        if client.gender != ClientGender.PREFER_NOT_TO_SAY.value and client.gender == preference:
            return
        raise ValidationException(
            COACH_PREFERENCE_MESSAGE,
            code="COACH_GENDER_MISMATCH",
            details={"coach_id": coach.id, "client_id": client.id},
        )

    @staticmethod
    def _proposal(tenant_id: str, data: SessionCreate, window: TimeWindow) -> SessionProposal:
        return SessionProposal(
            tenant_id=tenant_id,
            studio_id=data.studio_id,
            room_id=data.room_id,
            coach_id=data.coach_id,
            window=window,
            client_id=data.client_id,
            kind=SessionKind(data.kind),
            ems_device_id=data.ems_device_id,
        )

    @staticmethod
    def _local_date(studio: Studio, instant: datetime) -> date:
        return to_local(instant, get_studio_timezone(studio)).date()

    def _resolve_package(
        self,
        tenant_id: str,
        client_id: str,
        client_package_id: Optional[str],
        studio: Studio,
        window: TimeWindow,
    ) -> str:
        if client_package_id:
            return client_package_id
        package = self.credit_ledger.find_best_package(
            tenant_id, client_id, self._local_date(studio, window.start)
        )
        if package is None:
            raise InsufficientCreditException(None, NO_PACKAGE_MESSAGE)
        return package.id

    def _create_occurrence(
        self,
        tenant_id: str,
        studio: Studio,
        proposal: SessionProposal,
        data: SessionCreate,
        series_id: Optional[str] = None,
    ) -> StudioSession:
        """Check, insert and reserve one session inside the caller's transaction."""
        self.conflict_checker.check_conflict(proposal, studio=studio).raise_for_conflict()
        window = proposal.window
        session = self.session_repository.create(
            tenant_id=tenant_id,
            studio_id=proposal.studio_id,
            room_id=proposal.room_id,
            coach_id=proposal.coach_id,
            ems_device_id=proposal.ems_device_id,
            client_id=proposal.client_id,
            start_time=window.start,
            end_time=window.end,
            booked_start_time=window.start,
            booked_end_time=window.end,
            status=SessionStatus.SCHEDULED.value,
            kind=proposal.kind.value,
            capacity=data.capacity,
            notes=data.notes,
            series_id=series_id,
        )
        if proposal.kind == SessionKind.INDIVIDUAL and proposal.client_id:
            package_id = self._resolve_package(
                tenant_id, proposal.client_id, data.client_package_id, studio, window
            )
            reservation = self.credit_ledger.reserve(
                tenant_id,
                package_id,
                session_id=session.id,
                client_id=proposal.client_id,
                on_date=self._local_date(studio, window.start),
            )
            session.reservation_id = reservation.id
            session.client_package_id = package_id
            self.db.flush()
        self._write_audit("session", session.id, "create", tenant_id, None, session.to_dict())
        self._enqueue_event("session.booked", session.id, session.to_dict())
        return session

    def _reservation_ids(self, session: StudioSession) -> List[str]:
        ids = [session.reservation_id] if session.reservation_id else []
        ids.extend(p.reservation_id for p in session.participants if p.reservation_id)
        return ids

    def _delete_session_rows(self, session: StudioSession) -> int:
        """Release the session's credits (individual or per remaining participant) and delete it."""
        released = sum(
            1 for reservation_id in self._reservation_ids(session)
            if self.credit_ledger.release(reservation_id)
        )
        self.session_repository.delete_entity(session)
        return released

    def _check_capacity_change(self, session: StudioSession, capacity: int) -> None:
        if not session.is_group and capacity != 1:
            raise ValidationException("Individual sessions have a capacity of 1")
        if capacity < session.participant_count:
            raise ValidationException(
                "Capacity cannot be lower than the number of enrolled participants",
                code="CAPACITY_BELOW_ENROLLED",
                details={"capacity": capacity, "participants": session.participant_count},
            )

    def _check_can_join(self, session: StudioSession, client_id: str) -> None:
        if any(p.client_id == client_id for p in session.participants):
            raise DuplicateParticipantException(session.id, client_id)
        if session.participant_count >= session.capacity:
            raise CapacityException(session.id, session.capacity)

    def _get_series(self, tenant_id: str, series_id: str) -> RecurrenceSeries:
        series = self.recurrence_repository.get_with_sessions(tenant_id, series_id)
        if series is None:
            raise NotFoundException("Series not found", details={"series_id": series_id})
        return series

    def _run_locked(
        self,
        op_name: str,
        tenant_id: str,
        studio: Studio,
        proposals: List[SessionProposal],
        work: Callable[[], T],
        extra_client_ids: Iterable[str] = (),
        extra_window: Optional[TimeWindow] = None,
    ) -> T:
        """
        Run ``work`` in one transaction under resource locks.

        ``work`` must re-run its conflict checks so a retry sees committed
        state. After the retry budget, contention surfaces as a conflict.
        """
        resources: Set[Tuple[str, str, date]] = set()
        day_windows: Dict[Tuple[str, str, str, date], TimeWindow] = {}
        for proposal in proposals:
            # a session running past midnight holds its resources on every day it touches
            for day, bounds in local_days(studio, proposal.window):
                resources.add((ResourceType.ROOM.value, proposal.room_id, day))
                resources.add((ResourceType.COACH.value, proposal.coach_id, day))
                if proposal.ems_device_id:
                    resources.add((ResourceType.EMS_DEVICE.value, proposal.ems_device_id, day))
                if proposal.client_id:
                    resources.add((ResourceType.CLIENT.value, proposal.client_id, day))
                key = (proposal.room_id, proposal.coach_id, proposal.ems_device_id or "", day)
                day_windows[key] = bounds
        lock_window = extra_window or (proposals[0].window if proposals else None)
        if lock_window is not None:
            for day, _bounds in local_days(studio, lock_window):
                for client_id in extra_client_ids:
                    resources.add((ResourceType.CLIENT.value, client_id, day))

        def attempt() -> T:
            with resource_locks(tenant_id, resources) as acquired:
                if not acquired:
                    raise ResourceBusyError(op_name)
                with self.transaction():
                    for (room_id, coach_id, device_id, _day), bounds in sorted(day_windows.items()):
                        self.session_repository.lock_resource_bookings(
                            tenant_id,
                            room_id=room_id,
                            coach_id=coach_id,
                            day_start=bounds.start,
                            day_end=bounds.end,
                            ems_device_id=device_id or None,
                        )
                    return work()

        try:
            return with_db_retry(
                op_name,
                attempt,
                max_attempts=settings.conflict_retry_attempts + 1,
                should_retry=_is_contention,
            )
        except Exception as exc:
            if _is_contention(exc):
                prometheus_metrics.record_conflict("lock", "concurrent_update")
                raise SchedulingConflictException(
                    CONTENDED_MESSAGE, reason="concurrent_update", details={"operation": op_name}
                ) from exc
            raise

    def _write_audit(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        tenant_id: str,
        before: Optional[Dict[str, Any]],
        after: Optional[Dict[str, Any]],
        reason: Optional[str] = None,
    ) -> None:
        if not settings.audit_enabled:
            return
        self.audit_repository.write(
            AuditLog.from_change(
                entity_type,
                entity_id,
                action,
                tenant_id=tenant_id,
                reason=reason,
                before=before,
                after=after,
            )
        )

    def _enqueue_event(self, event_type: str, aggregate_id: str, payload: Dict[str, Any]) -> None:
        self.event_outbox_repository.enqueue(
            event_type=event_type,
            aggregate_id=aggregate_id,
            payload=payload,
            idempotency_key=f"{aggregate_id}:{event_type}:{generate_ulid()}",
        )
