# backend/studioops/repositories/studio_repository.py
"""
Directory lookups: studios, rooms, EMS devices, coaches and clients.

Lookups are not tenant-filtered so the caller can tell a missing id
(not found) from an id owned by another tenant (validation failure).
"""

import logging
from typing import List, Optional, Type, TypeVar

from sqlalchemy.orm import Session

from ..models.studio import Client, Coach, EmsDevice, Room, Studio
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)

M = TypeVar("M")


class StudioRepository(BaseRepository[Studio]):
    def __init__(self, db: Session):
        super().__init__(db, Studio)

    def _get(self, model: Type[M], record_id: str) -> Optional[M]:
        return self._execute_first(self.db.query(model).filter(model.id == record_id))

    def get_studio(self, studio_id: str) -> Optional[Studio]:
        return self._get(Studio, studio_id)

    def get_room(self, room_id: str) -> Optional[Room]:
        return self._get(Room, room_id)

    def get_device(self, device_id: str) -> Optional[EmsDevice]:
        return self._get(EmsDevice, device_id)

    def get_coach(self, coach_id: str) -> Optional[Coach]:
        return self._get(Coach, coach_id)

    def get_client(self, client_id: str) -> Optional[Client]:
        return self._get(Client, client_id)

    def list_active_rooms(self, tenant_id: str, studio_id: str) -> List[Room]:
        query = (
            self.db.query(Room)
            .filter(Room.tenant_id == tenant_id, Room.studio_id == studio_id, Room.is_active.is_(True))
            .order_by(Room.name, Room.id)
        )
        return self._execute_query(query)

    def list_active_coaches(self, tenant_id: str, studio_id: str) -> List[Coach]:
        query = (
            self.db.query(Coach)
            .filter(
                Coach.tenant_id == tenant_id,
                Coach.studio_id == studio_id,
                Coach.is_active.is_(True),
            )
            .order_by(Coach.name, Coach.id)
        )
        return self._execute_query(query)
