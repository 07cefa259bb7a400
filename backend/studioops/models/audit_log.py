# backend/studioops/models/audit_log.py
"""
Audit trail for booking, cancellation and credit adjustment actions.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

from sqlalchemy import Column, ForeignKey, String, Text
from sqlalchemy.sql import func
import ulid

from ..database import Base
from .types import JSONType, UTCDateTime, now_utc


class AuditLog(Base):
    """Persistence model for audit trail entries."""

    __tablename__ = "audit_log"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    tenant_id = Column(String(26), ForeignKey("tenants.id"), nullable=True, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=False, index=True)
    action = Column(String(30), nullable=False)
    actor_id = Column(String(26), nullable=True)
    reason = Column(Text, nullable=True)
    occurred_at = Column(UTCDateTime, nullable=False, default=now_utc, server_default=func.now())
    before = Column(JSONType, nullable=True)
    after = Column(JSONType, nullable=True)

    @classmethod
    def from_change(
        cls,
        entity_type: str,
        entity_id: str,
        action: str,
        *,
        tenant_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
        before: Optional[Mapping[str, Any]] = None,
        after: Optional[Mapping[str, Any]] = None,
    ) -> "AuditLog":
        """Factory helper to build an AuditLog instance from change metadata."""
        return cls(
            tenant_id=tenant_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            reason=reason,
            before=dict(before) if before is not None else None,
            after=dict(after) if after is not None else None,
        )
