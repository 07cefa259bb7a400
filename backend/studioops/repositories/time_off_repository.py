# backend/studioops/repositories/time_off_repository.py
"""Coach time-off lookups for availability checks."""

import logging
from typing import List

from sqlalchemy.orm import Session

from ..core.enums import TimeOffStatus
from ..core.time_window import TimeWindow
from ..models.time_off import CoachTimeOff
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class TimeOffRepository(BaseRepository[CoachTimeOff]):
    def __init__(self, db: Session):
        super().__init__(db, CoachTimeOff)

    def find_approved_overlaps(
        self, tenant_id: str, coach_id: str, window: TimeWindow
    ) -> List[CoachTimeOff]:
        """Approved time-off windows intersecting ``window``; pending and rejected never block."""
        query = (
            self.db.query(CoachTimeOff)
            .filter(
                CoachTimeOff.tenant_id == tenant_id,
                CoachTimeOff.coach_id == coach_id,
                CoachTimeOff.status == TimeOffStatus.APPROVED.value,
                CoachTimeOff.start_time < window.end,
                CoachTimeOff.end_time > window.start,
            )
            .order_by(CoachTimeOff.start_time)
        )
        return self._execute_query(query)
