# backend/studioops/api/dependencies/__init__.py
"""
Central export point for all dependencies.
"""

from .database import get_db
from .services import (
    get_availability_service,
    get_booking_service,
    get_credit_ledger_service,
)
from .tenant import get_tenant_id

__all__ = [
    # Database
    "get_db",
    # Tenant
    "get_tenant_id",
    # Services
    "get_availability_service",
    "get_booking_service",
    "get_credit_ledger_service",
]
