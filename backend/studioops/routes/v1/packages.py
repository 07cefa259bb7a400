# backend/studioops/routes/v1/packages.py
"""
Client package routes - API v1

Endpoints:
    GET /{client_package_id} - Balance and reservation history
    POST /{client_package_id}/adjustments - Manual credit adjustment
    POST /expire - Expire the tenant's packages past their expiry date
"""

import asyncio
from datetime import date
import logging
from typing import NoReturn, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Path, Query, status

from ...api.dependencies import get_credit_ledger_service, get_tenant_id
from ...core.exceptions import DomainException
from ...schemas.package import (
    ClientPackageDetailResponse,
    ClientPackageResponse,
    CreditAdjustmentRequest,
    ExpirePackagesResponse,
)
from ...services.credit_ledger import CreditLedgerService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["client-packages"])

ULID_PATH_PATTERN = r"^[0-9A-HJKMNP-TV-Z]{26}$"


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@router.post("/expire", response_model=ExpirePackagesResponse)
async def expire_packages(
    as_of: Optional[date] = Query(None, description="Defaults to today (UTC); later dates are capped at today"),
    tenant_id: str = Depends(get_tenant_id),
    ledger: CreditLedgerService = Depends(get_credit_ledger_service),
) -> ExpirePackagesResponse:
    cutoff = ledger.expiry_cutoff(as_of)
    expired = await asyncio.to_thread(ledger.expire_packages, tenant_id, cutoff)
    return ExpirePackagesResponse(expired=expired, as_of=cutoff)


@router.get("/{client_package_id}", response_model=ClientPackageDetailResponse)
async def get_package(
    client_package_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    tenant_id: str = Depends(get_tenant_id),
    ledger: CreditLedgerService = Depends(get_credit_ledger_service),
) -> ClientPackageDetailResponse:
    try:
        package = await asyncio.to_thread(ledger.get_package, tenant_id, client_package_id)
        return ClientPackageDetailResponse.model_validate(package)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{client_package_id}/adjustments", response_model=ClientPackageResponse)
async def adjust_credit(
    client_package_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    payload: CreditAdjustmentRequest = Body(...),
    tenant_id: str = Depends(get_tenant_id),
    ledger: CreditLedgerService = Depends(get_credit_ledger_service),
) -> ClientPackageResponse:
    """Return (positive delta) or remove (negative delta) credits, with a reason."""
    try:
        package = await asyncio.to_thread(
            ledger.adjust,
            tenant_id,
            client_package_id,
            payload.delta,
            payload.reason,
            payload.actor_id,
        )
        return ClientPackageResponse.model_validate(package)
    except DomainException as e:
        handle_domain_exception(e)
