# backend/studioops/routes/v1/__init__.py
"""
API v1 Routes

Versioned API endpoints under /api/v1.
"""

from . import packages, prometheus, sessions

__all__ = [
    "packages",
    "prometheus",
    "sessions",
]
