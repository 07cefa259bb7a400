# backend/studioops/schemas/package.py
"""Client package balance and credit adjustment schemas."""

from datetime import date, datetime
from typing import List, Optional

from pydantic import Field, field_validator

from ._strict_base import StandardizedModel, StrictRequestModel


class CreditAdjustmentRequest(StrictRequestModel):
    delta: int = Field(..., description="Credits to return (positive) or remove (negative)")
    reason: str = Field(..., min_length=1, max_length=500)
    actor_id: Optional[str] = None

    @field_validator("reason")
    @classmethod
    def _strip_reason(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("reason must not be blank")
        return stripped


class CreditReservationResponse(StandardizedModel):
    id: str
    session_id: str
    participant_id: Optional[str] = None
    status: str
    reserved_at: datetime
    released_at: Optional[datetime] = None


class ClientPackageResponse(StandardizedModel):
    id: str
    client_id: str
    package_id: Optional[str] = None
    package_name: Optional[str] = None
    sessions_total: int
    sessions_remaining: int
    sessions_used: int
    status: str
    expiry_date: Optional[date] = None


class ClientPackageDetailResponse(ClientPackageResponse):
    reservations: List[CreditReservationResponse] = Field(default_factory=list)


class ExpirePackagesResponse(StandardizedModel):
    expired: int
    as_of: date
