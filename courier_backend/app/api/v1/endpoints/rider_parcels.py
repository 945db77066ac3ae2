"""
Rider Parcel API Endpoints.

Riders confirm pickups, take assigned parcels out for delivery and submit
the verified delivery outcome.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from courier_backend.app.db.session import get_db
from courier_backend.app.core.dependencies import IdentityContext, require_scope
from courier_backend.app.core.redis_client import get_redis
from courier_backend.app.core.reliability import run_with_retry
from courier_backend.app.models.enums import UserRole
from courier_backend.app.schemas.parcel import (
    DeliveryOutcome,
    DeliveryOutcomeRequest,
    ParcelTransitionResult,
)
from courier_backend.app.services.parcel_lock import parcel_workflow_lock
from courier_backend.app.domain.parcels import parcel_service

router = APIRouter(prefix="/rider/parcels", tags=["Rider - Parcels"])
rider_only = require_scope(UserRole.RIDER, scope="rider_id")


@router.post("/{parcel_id}/confirm-pickup", response_model=ParcelTransitionResult)
async def confirm_pickup(
    parcel_id: int,
    identity: IdentityContext = Depends(rider_only),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    async with parcel_workflow_lock(redis, parcel_id):
        return await run_with_retry(lambda: parcel_service.confirm_pickup(
            db, parcel_id, rider_id=identity.rider_id, actor_id=identity.user_id
        ))


@router.post("/{parcel_id}/dispatch", response_model=ParcelTransitionResult)
async def dispatch_for_delivery(
    parcel_id: int,
    identity: IdentityContext = Depends(rider_only),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Rider accepts an assigned parcel and leaves the hub with it."""
    async with parcel_workflow_lock(redis, parcel_id):
        return await run_with_retry(lambda: parcel_service.dispatch_for_delivery(
            db, parcel_id, identity.rider_id, actor_id=identity.user_id
        ))


@router.post("/{parcel_id}/outcome", response_model=ParcelTransitionResult)
async def submit_delivery_outcome(
    parcel_id: int,
    body: DeliveryOutcomeRequest,
    identity: IdentityContext = Depends(rider_only),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Apply a verified delivery outcome.

    Settling outcomes post to the merchant ledger in the same transaction
    as the status change; the response lists the ledger rows written.
    """
    outcome = DeliveryOutcome(parcel_id=parcel_id, **body.model_dump())
    async with parcel_workflow_lock(redis, parcel_id):
        return await run_with_retry(lambda: parcel_service.apply_delivery_outcome(
            db, outcome, identity.rider_id, actor_id=identity.user_id
        ))
