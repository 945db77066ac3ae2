"""
Merchant API Endpoints.

Merchants book parcels, cancel them before pickup and read their own
balance.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
from courier_backend.app.db.session import get_db
from courier_backend.app.core.dependencies import IdentityContext, require_scope
from courier_backend.app.core.redis_client import get_redis
from courier_backend.app.core.reliability import run_with_retry
from courier_backend.app.models.enums import UserRole
from courier_backend.app.schemas.finance import MerchantFinanceOverview
from courier_backend.app.schemas.parcel import (
    ParcelCreate,
    ParcelResponse,
    ParcelTransitionResult,
    ReasonRequest,
)
from courier_backend.app.services.parcel_lock import parcel_workflow_lock
from courier_backend.app.domain.finance.ledger_service import LedgerService
from courier_backend.app.domain.parcels import parcel_service

router = APIRouter(prefix="/merchant", tags=["Merchant"])
merchant_only = require_scope(UserRole.MERCHANT, scope="merchant_id")


@router.post("/parcels", response_model=ParcelResponse, status_code=status.HTTP_201_CREATED)
async def create_parcel(
    body: ParcelCreate,
    identity: IdentityContext = Depends(merchant_only),
    db: AsyncSession = Depends(get_db),
):
    """Book a parcel. The merchant is always the caller, whatever the body says."""
    data = body.model_copy(update={"merchant_id": identity.merchant_id})
    parcel = await run_with_retry(lambda: parcel_service.create_parcel(db, data, actor_id=identity.user_id))
    return ParcelResponse.model_validate(parcel)


@router.post("/parcels/{parcel_id}/cancel", response_model=ParcelTransitionResult)
async def cancel_parcel(
    parcel_id: int,
    body: ReasonRequest,
    identity: IdentityContext = Depends(merchant_only),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    async with parcel_workflow_lock(redis, parcel_id):
        return await run_with_retry(lambda: parcel_service.cancel_parcel(
            db, parcel_id, merchant_id=identity.merchant_id,
            reason=body.reason, actor_id=identity.user_id
        ))


@router.get("/finance", response_model=MerchantFinanceOverview)
async def get_own_finance(
    identity: IdentityContext = Depends(merchant_only),
    db: AsyncSession = Depends(get_db),
):
    return await LedgerService.get_overview(db, identity.merchant_id)
