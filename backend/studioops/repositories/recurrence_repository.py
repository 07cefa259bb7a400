# backend/studioops/repositories/recurrence_repository.py
"""Recurrence series persistence."""

import logging
from typing import Optional

from sqlalchemy.orm import Session, selectinload

from ..models.recurrence import RecurrenceSeries
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class RecurrenceRepository(BaseRepository[RecurrenceSeries]):
    def __init__(self, db: Session):
        super().__init__(db, RecurrenceSeries)

    def get_with_sessions(self, tenant_id: str, series_id: str) -> Optional[RecurrenceSeries]:
        query = (
            self.db.query(RecurrenceSeries)
            .options(selectinload(RecurrenceSeries.sessions))
            .filter(RecurrenceSeries.id == series_id, RecurrenceSeries.tenant_id == tenant_id)
        )
        return self._execute_first(query)
