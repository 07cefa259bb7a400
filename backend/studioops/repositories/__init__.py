"""
Repository layer for the scheduling engine.

Usage:
    from studioops.repositories import RepositoryFactory

    sessions = RepositoryFactory.create_session_repository(db)
    clashes = sessions.find_room_overlaps(tenant_id, room_id, window)
"""

from .base_repository import BaseRepository
from .factory import RepositoryFactory

__all__ = ["BaseRepository", "RepositoryFactory"]
