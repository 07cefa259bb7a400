# backend/studioops/services/conflict_checker.py
"""
Conflict Checker Service

Decides whether a proposed session placement is legal. Checks run in a fixed
order and the first failure wins:

1. studio operating hours
2. room
3. EMS device (when the session uses one)
4. coach (booked sessions, then approved time-off)
5. client (individual sessions only)

Group sessions check each participant when they join, not at creation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..core.enums import ResourceType, SessionKind
from ..core.exceptions import NotFoundException, SchedulingConflictException
from ..core.time_window import TimeWindow
from ..models.studio import Studio
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories import RepositoryFactory
from .availability_service import STUDIO_CLOSED, AvailabilityService
from .base import BaseService

logger = logging.getLogger(__name__)

STUDIO_CLOSED_MESSAGE = "The studio is closed on this day"
OUTSIDE_HOURS_MESSAGE = "Session falls outside the studio's operating hours"
ROOM_CONFLICT_MESSAGE = "Room is already booked during this time"
DEVICE_CONFLICT_MESSAGE = "EMS device is already in use during this time"
COACH_CONFLICT_MESSAGE = "Coach already has a session during this time"
COACH_TIME_OFF_MESSAGE = "Coach is on approved time-off during this time"
CLIENT_CONFLICT_MESSAGE = "Client already has a session during this time"


@dataclass(frozen=True)
class SessionProposal:
    """A placement to validate: who, where and when."""

    tenant_id: str
    studio_id: str
    room_id: str
    coach_id: str
    window: TimeWindow
    client_id: Optional[str] = None
    kind: SessionKind = SessionKind.INDIVIDUAL
    ems_device_id: Optional[str] = None


@dataclass(frozen=True)
class ConflictDetail:
    resource_type: ResourceType
    resource_id: Optional[str]
    reason: str
    message: str
    conflicting_session_id: Optional[str] = None
    time_off_id: Optional[str] = None
    window: Optional[TimeWindow] = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "resource_type": self.resource_type.value,
            "resource_id": self.resource_id,
            "reason": self.reason,
            "message": self.message,
            "conflicting_session_id": self.conflicting_session_id,
            "time_off_id": self.time_off_id,
        }
        if self.window is not None:
            data["start_time"] = self.window.start.isoformat()
            data["end_time"] = self.window.end.isoformat()
        return data

    def to_exception(self) -> SchedulingConflictException:
        return SchedulingConflictException(
            self.message,
            resource_type=self.resource_type.value,
            resource_id=self.resource_id,
            reason=self.reason,
            conflicting_session_id=self.conflicting_session_id,
            time_off_id=self.time_off_id,
        )


@dataclass(frozen=True)
class ConflictResult:
    conflict: Optional[ConflictDetail] = None

    @property
    def ok(self) -> bool:
        return self.conflict is None

    def raise_for_conflict(self) -> None:
        if self.conflict is not None:
            raise self.conflict.to_exception()


NO_CONFLICT = ConflictResult()


class ConflictChecker(BaseService):
    """
    Service for checking placement conflicts.

    Centralizes conflict detection so booking, rescheduling, series
    expansion and previews all apply the same rules in the same order.
    """

    def __init__(self, db: Session, availability: Optional[AvailabilityService] = None):
        super().__init__(db)
        self.logger = logging.getLogger(__name__)
        self.availability = availability or AvailabilityService(db)
        self.studio_repository = RepositoryFactory.create_studio_repository(db)

    @BaseService.measure_operation("check_conflict")
    def check_conflict(
        self,
        proposal: SessionProposal,
        exclude_session_id: Optional[str] = None,
        studio: Optional[Studio] = None,
    ) -> ConflictResult:
        """
        Run every check for ``proposal`` and return the first conflict found.

        Args:
            proposal: Placement to validate
            exclude_session_id: Session being moved, ignored in overlap queries
            studio: Preloaded studio row, looked up when omitted

        Returns:
            ConflictResult with ``ok`` set when the placement is legal
        """
        if studio is None:
            studio = self.studio_repository.get_studio(proposal.studio_id)
            if studio is None:
                raise NotFoundException("Studio not found", details={"studio_id": proposal.studio_id})

        result = self._check(proposal, exclude_session_id, studio)
        if result.conflict is not None:
            prometheus_metrics.record_conflict(
                result.conflict.resource_type.value, result.conflict.reason
            )
            self.logger.info(
                "Placement rejected",
                extra={
                    "tenant_id": proposal.tenant_id,
                    "resource_type": result.conflict.resource_type.value,
                    "resource_id": result.conflict.resource_id,
                    "reason": result.conflict.reason,
                },
            )
        return result

    def _check(
        self, proposal: SessionProposal, exclude_session_id: Optional[str], studio: Studio
    ) -> ConflictResult:
        window = proposal.window

        hours_failure = self.availability.check_operating_hours(studio, window)
        if hours_failure:
            message = STUDIO_CLOSED_MESSAGE if hours_failure == STUDIO_CLOSED else OUTSIDE_HOURS_MESSAGE
            return ConflictResult(
                ConflictDetail(
                    ResourceType.STUDIO_HOURS, studio.id, hours_failure, message, window=window
                )
            )

        blocking = self.availability.find_blocking_session(
            proposal.tenant_id, ResourceType.ROOM, proposal.room_id, window, exclude_session_id
        )
        if blocking is not None:
            return ConflictResult(
                ConflictDetail(
                    ResourceType.ROOM,
                    proposal.room_id,
                    "session_overlap",
                    ROOM_CONFLICT_MESSAGE,
                    conflicting_session_id=blocking.id,
                    window=window,
                )
            )

        if proposal.ems_device_id:
            blocking = self.availability.find_blocking_session(
                proposal.tenant_id,
                ResourceType.EMS_DEVICE,
                proposal.ems_device_id,
                window,
                exclude_session_id,
            )
            if blocking is not None:
                return ConflictResult(
                    ConflictDetail(
                        ResourceType.EMS_DEVICE,
                        proposal.ems_device_id,
                        "session_overlap",
                        DEVICE_CONFLICT_MESSAGE,
                        conflicting_session_id=blocking.id,
                        window=window,
                    )
                )

        blocking = self.availability.find_blocking_session(
            proposal.tenant_id, ResourceType.COACH, proposal.coach_id, window, exclude_session_id
        )
        if blocking is not None:
            return ConflictResult(
                ConflictDetail(
                    ResourceType.COACH,
                    proposal.coach_id,
                    "session_overlap",
                    COACH_CONFLICT_MESSAGE,
                    conflicting_session_id=blocking.id,
                    window=window,
                )
            )

        time_off = self.availability.find_blocking_time_off(
            proposal.tenant_id, proposal.coach_id, window
        )
        if time_off is not None:
            return ConflictResult(
                ConflictDetail(
                    ResourceType.COACH,
                    proposal.coach_id,
                    "time_off",
                    COACH_TIME_OFF_MESSAGE,
                    time_off_id=time_off.id,
                    window=window,
                )
            )

        if proposal.kind == SessionKind.INDIVIDUAL and proposal.client_id:
            return self.check_participant_conflict(
                proposal.tenant_id, proposal.client_id, window, exclude_session_id
            )

        return NO_CONFLICT

    def check_participant_conflict(
        self,
        tenant_id: str,
        client_id: str,
        window: TimeWindow,
        exclude_session_id: Optional[str] = None,
    ) -> ConflictResult:
        """Client-only check, used for individual bookings and group joins."""
        blocking = self.availability.find_blocking_session(
            tenant_id, ResourceType.CLIENT, client_id, window, exclude_session_id
        )
        if blocking is None:
            return NO_CONFLICT
        return ConflictResult(
            ConflictDetail(
                ResourceType.CLIENT,
                client_id,
                "session_overlap",
                CLIENT_CONFLICT_MESSAGE,
                conflicting_session_id=blocking.id,
                window=window,
            )
        )
