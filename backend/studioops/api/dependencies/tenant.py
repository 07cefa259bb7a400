# backend/studioops/api/dependencies/tenant.py
"""Tenant resolution for scheduling requests."""

from fastapi import Header, HTTPException, status

from ...core.ulid_helper import is_valid_ulid

TENANT_HEADER = "X-Tenant-ID"


def get_tenant_id(x_tenant_id: str = Header(..., alias=TENANT_HEADER)) -> str:
    """
    Every scheduling request is scoped to exactly one tenant.

    Raises:
        HTTPException: 400 when the header is not a ULID
    """
    tenant_id = x_tenant_id.strip()
    if not is_valid_ulid(tenant_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "message": f"{TENANT_HEADER} must be a valid ULID",
                "code": "INVALID_TENANT",
                "details": {},
            },
        )
    return tenant_id
