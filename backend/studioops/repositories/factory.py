# backend/studioops/repositories/factory.py
"""
Repository Factory

Centralizes repository creation so services receive consistently
initialized repositories and tests can swap implementations.
"""

from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

if TYPE_CHECKING:
    from .audit_repository import AuditRepository
    from .credit_repository import CreditRepository
    from .event_outbox_repository import EventOutboxRepository
    from .recurrence_repository import RecurrenceRepository
    from .session_repository import SessionRepository
    from .studio_repository import StudioRepository
    from .time_off_repository import TimeOffRepository


class RepositoryFactory:
    """Factory class for creating repository instances."""

    @staticmethod
    def create_session_repository(db: Session) -> "SessionRepository":
        from .session_repository import SessionRepository

        return SessionRepository(db)

    @staticmethod
    def create_time_off_repository(db: Session) -> "TimeOffRepository":
        from .time_off_repository import TimeOffRepository

        return TimeOffRepository(db)

    @staticmethod
    def create_credit_repository(db: Session) -> "CreditRepository":
        from .credit_repository import CreditRepository

        return CreditRepository(db)

    @staticmethod
    def create_recurrence_repository(db: Session) -> "RecurrenceRepository":
        from .recurrence_repository import RecurrenceRepository

        return RecurrenceRepository(db)

    @staticmethod
    def create_studio_repository(db: Session) -> "StudioRepository":
        from .studio_repository import StudioRepository

        return StudioRepository(db)

    @staticmethod
    def create_audit_repository(db: Session) -> "AuditRepository":
        from .audit_repository import AuditRepository

        return AuditRepository(db)

    @staticmethod
    def create_event_outbox_repository(db: Session) -> "EventOutboxRepository":
        from .event_outbox_repository import EventOutboxRepository

        return EventOutboxRepository(db)
