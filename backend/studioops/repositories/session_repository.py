# backend/studioops/repositories/session_repository.py
"""
Session Repository: the per-tenant, per-resource interval index.

Every overlap query uses half-open semantics (``start < other_end`` and
``end > other_start``) and ignores cancelled sessions.
"""

from datetime import datetime
import logging
from typing import List, Optional, cast

from sqlalchemy import and_, exists, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from ..core.enums import ResourceType, SessionStatus
from ..core.exceptions import RepositoryException
from ..core.time_window import TimeWindow
from ..models.session import SessionParticipant, StudioSession
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class SessionRepository(BaseRepository[StudioSession]):
    """Queries over booked sessions and their participants."""

    def __init__(self, db: Session):
        super().__init__(db, StudioSession)
        self.logger = logging.getLogger(__name__)

    def get_for_tenant(
        self, tenant_id: str, session_id: str, for_update: bool = False
    ) -> Optional[StudioSession]:
        query = self.db.query(StudioSession).filter(
            StudioSession.id == session_id,
            StudioSession.tenant_id == tenant_id,
        )
        if for_update and self.supports_row_locks:
            query = query.with_for_update()
        return self._execute_first(query)

    # Overlap queries

    def _active_overlapping(
        self, tenant_id: str, window: TimeWindow, exclude_session_id: Optional[str]
    ):
        query = self.db.query(StudioSession).filter(
            StudioSession.tenant_id == tenant_id,
            StudioSession.status != SessionStatus.CANCELLED.value,
            StudioSession.start_time < window.end,
            StudioSession.end_time > window.start,
        )
        if exclude_session_id:
            query = query.filter(StudioSession.id != exclude_session_id)
        return query

    def find_room_overlaps(
        self, tenant_id: str, room_id: str, window: TimeWindow, exclude_session_id: Optional[str] = None
    ) -> List[StudioSession]:
        query = self._active_overlapping(tenant_id, window, exclude_session_id).filter(
            StudioSession.room_id == room_id
        )
        return self._execute_query(query.order_by(StudioSession.start_time))

    def find_device_overlaps(
        self, tenant_id: str, device_id: str, window: TimeWindow, exclude_session_id: Optional[str] = None
    ) -> List[StudioSession]:
        query = self._active_overlapping(tenant_id, window, exclude_session_id).filter(
            StudioSession.ems_device_id == device_id
        )
        return self._execute_query(query.order_by(StudioSession.start_time))

    def find_coach_overlaps(
        self, tenant_id: str, coach_id: str, window: TimeWindow, exclude_session_id: Optional[str] = None
    ) -> List[StudioSession]:
        query = self._active_overlapping(tenant_id, window, exclude_session_id).filter(
            StudioSession.coach_id == coach_id
        )
        return self._execute_query(query.order_by(StudioSession.start_time))

    def find_client_overlaps(
        self, tenant_id: str, client_id: str, window: TimeWindow, exclude_session_id: Optional[str] = None
    ) -> List[StudioSession]:
        """Sessions the client holds directly or participates in as a group member."""
        is_participant = exists().where(
            and_(
                SessionParticipant.session_id == StudioSession.id,
                SessionParticipant.client_id == client_id,
            )
        )
        query = self._active_overlapping(tenant_id, window, exclude_session_id).filter(
            or_(StudioSession.client_id == client_id, is_participant)
        )
        return self._execute_query(query.order_by(StudioSession.start_time))

    def find_overlapping(
        self,
        tenant_id: str,
        resource_type: ResourceType,
        resource_id: str,
        window: TimeWindow,
        exclude_session_id: Optional[str] = None,
    ) -> List[StudioSession]:
        if resource_type == ResourceType.ROOM:
            return self.find_room_overlaps(tenant_id, resource_id, window, exclude_session_id)
        if resource_type == ResourceType.EMS_DEVICE:
            return self.find_device_overlaps(tenant_id, resource_id, window, exclude_session_id)
        if resource_type == ResourceType.COACH:
            return self.find_coach_overlaps(tenant_id, resource_id, window, exclude_session_id)
        if resource_type == ResourceType.CLIENT:
            return self.find_client_overlaps(tenant_id, resource_id, window, exclude_session_id)
        raise ValueError(f"Sessions are not indexed by {resource_type}")

    def lock_resource_bookings(
        self,
        tenant_id: str,
        *,
        room_id: str,
        coach_id: str,
        day_start: datetime,
        day_end: datetime,
        ems_device_id: Optional[str] = None,
    ) -> List[str]:
        """
        Row-lock the bookings of the room, the coach and the device (if any)
        for one day.

        Only PostgreSQL takes real locks; on SQLite the writer lock on commit
        serializes concurrent bookings instead.
        """
        holders = [StudioSession.room_id == room_id, StudioSession.coach_id == coach_id]
        if ems_device_id:
            holders.append(StudioSession.ems_device_id == ems_device_id)
        try:
            query = self.db.query(StudioSession.id).filter(
                StudioSession.tenant_id == tenant_id,
                StudioSession.status != SessionStatus.CANCELLED.value,
                StudioSession.start_time < day_end,
                StudioSession.end_time > day_start,
                or_(*holders),
            )
            if self.supports_row_locks:
                query = query.with_for_update()
            return [row[0] for row in query.order_by(StudioSession.id).all()]
        except SQLAlchemyError as exc:
            self.logger.error("Failed to lock resource bookings: %s", str(exc))
            raise RepositoryException("Failed to lock resource bookings") from exc

    # Listing

    def list_for_studio(
        self,
        tenant_id: str,
        studio_id: str,
        range_start: datetime,
        range_end: datetime,
        include_cancelled: bool = False,
    ) -> List[StudioSession]:
        query = (
            self.db.query(StudioSession)
            .options(selectinload(StudioSession.participants))
            .filter(
                StudioSession.tenant_id == tenant_id,
                StudioSession.studio_id == studio_id,
                StudioSession.start_time < range_end,
                StudioSession.end_time > range_start,
            )
        )
        if not include_cancelled:
            query = query.filter(StudioSession.status != SessionStatus.CANCELLED.value)
        return self._execute_query(query.order_by(StudioSession.start_time, StudioSession.id))

    # Participants

    def get_participant(self, session_id: str, client_id: str) -> Optional[SessionParticipant]:
        try:
            return cast(
                Optional[SessionParticipant],
                self.db.query(SessionParticipant)
                .filter(
                    SessionParticipant.session_id == session_id,
                    SessionParticipant.client_id == client_id,
                )
                .first(),
            )
        except SQLAlchemyError as exc:
            self.logger.error("Failed to load participant: %s", str(exc))
            raise RepositoryException("Failed to load participant") from exc

    def add_participant(self, session: StudioSession, client_id: str, **fields) -> SessionParticipant:
        try:
            participant = SessionParticipant(session_id=session.id, client_id=client_id, **fields)
            session.participants.append(participant)
            self.db.flush()
            return participant
        except SQLAlchemyError as exc:
            self.logger.error("Failed to add participant: %s", str(exc))
            raise RepositoryException("Failed to add participant") from exc

    def remove_participant(self, session: StudioSession, participant: SessionParticipant) -> None:
        try:
            session.participants.remove(participant)
            self.db.flush()
        except SQLAlchemyError as exc:
            self.logger.error("Failed to remove participant: %s", str(exc))
            raise RepositoryException("Failed to remove participant") from exc
