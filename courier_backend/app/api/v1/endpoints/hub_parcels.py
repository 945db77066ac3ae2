"""
Hub Parcel API Endpoints.

Hub managers move parcels through pickup, sorting, rider assignment,
inter-hub transfer and returns. Every mutation is scoped to the hub the
token belongs to; the domain layer checks custody.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from courier_backend.app.db.session import get_db
from courier_backend.app.core.dependencies import IdentityContext, require_scope
from courier_backend.app.core.redis_client import get_redis
from courier_backend.app.core.reliability import run_with_retry
from courier_backend.app.models.enums import UserRole
from courier_backend.app.schemas.parcel import (
    AssignRiderRequest,
    NotesRequest,
    ParcelTransitionResult,
    ReasonRequest,
    StartPickupRequest,
    ThirdPartyRequest,
    TransferRequest,
)
from courier_backend.app.services.parcel_lock import parcel_workflow_lock
from courier_backend.app.domain.parcels import parcel_service
from courier_backend.app.domain.transfers import transfer_workflow

router = APIRouter(prefix="/hub/parcels", tags=["Hub - Parcels"])
hub_manager = require_scope(UserRole.HUB_MANAGER, scope="hub_id")


@router.post("/{parcel_id}/start-pickup", response_model=ParcelTransitionResult)
async def start_pickup(
    parcel_id: int,
    body: StartPickupRequest,
    identity: IdentityContext = Depends(hub_manager),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Send a rider to collect a PENDING parcel from the merchant."""
    async with parcel_workflow_lock(redis, parcel_id):
        return await run_with_retry(lambda: parcel_service.start_pickup(
            db, parcel_id, identity.hub_id, body.rider_id, actor_id=identity.user_id
        ))


@router.post("/{parcel_id}/confirm-pickup", response_model=ParcelTransitionResult)
async def confirm_pickup(
    parcel_id: int,
    identity: IdentityContext = Depends(hub_manager),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    async with parcel_workflow_lock(redis, parcel_id):
        return await run_with_retry(lambda: parcel_service.confirm_pickup(
            db, parcel_id, hub_id=identity.hub_id, actor_id=identity.user_id
        ))


@router.post("/{parcel_id}/receive", response_model=ParcelTransitionResult)
async def receive_parcel(
    parcel_id: int,
    identity: IdentityContext = Depends(hub_manager),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Book a picked-up parcel into the hub (PICKED_UP -> IN_HUB)."""
    async with parcel_workflow_lock(redis, parcel_id):
        return await run_with_retry(lambda: parcel_service.mark_received(
            db, parcel_id, identity.hub_id, actor_id=identity.user_id
        ))


@router.post("/{parcel_id}/assign", response_model=ParcelTransitionResult)
async def assign_rider(
    parcel_id: int,
    body: AssignRiderRequest,
    identity: IdentityContext = Depends(hub_manager),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    async with parcel_workflow_lock(redis, parcel_id):
        return await run_with_retry(lambda: parcel_service.assign_to_rider(
            db, parcel_id, identity.hub_id, body.rider_id, actor_id=identity.user_id
        ))


@router.post("/{parcel_id}/redelivery", response_model=ParcelTransitionResult)
async def prepare_redelivery(
    parcel_id: int,
    identity: IdentityContext = Depends(hub_manager),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Put a rescheduled parcel back in the hub queue for another attempt."""
    async with parcel_workflow_lock(redis, parcel_id):
        return await run_with_retry(lambda: parcel_service.prepare_for_redelivery(
            db, parcel_id, identity.hub_id, actor_id=identity.user_id
        ))


@router.post("/{parcel_id}/return-to-hub", response_model=ParcelTransitionResult)
async def return_failed_to_hub(
    parcel_id: int,
    identity: IdentityContext = Depends(hub_manager),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    async with parcel_workflow_lock(redis, parcel_id):
        return await run_with_retry(lambda: parcel_service.return_failed_to_hub(
            db, parcel_id, identity.hub_id, actor_id=identity.user_id
        ))


@router.post("/{parcel_id}/third-party", response_model=ParcelTransitionResult)
async def hand_to_third_party(
    parcel_id: int,
    body: ThirdPartyRequest,
    identity: IdentityContext = Depends(hub_manager),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    async with parcel_workflow_lock(redis, parcel_id):
        return await run_with_retry(lambda: parcel_service.hand_to_third_party(
            db, parcel_id, identity.hub_id, body.provider, actor_id=identity.user_id
        ))


@router.post("/{parcel_id}/cancel", response_model=ParcelTransitionResult)
async def cancel_parcel(
    parcel_id: int,
    body: ReasonRequest,
    identity: IdentityContext = Depends(hub_manager),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    async with parcel_workflow_lock(redis, parcel_id):
        return await run_with_retry(lambda: parcel_service.cancel_parcel(
            db, parcel_id, hub_id=identity.hub_id, reason=body.reason, actor_id=identity.user_id
        ))


@router.post("/{parcel_id}/transfer", response_model=ParcelTransitionResult)
async def transfer_to_hub(
    parcel_id: int,
    body: TransferRequest,
    identity: IdentityContext = Depends(hub_manager),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Send a parcel held by this hub to another hub (IN_HUB -> IN_TRANSIT)."""
    async with parcel_workflow_lock(redis, parcel_id):
        return await run_with_retry(lambda: transfer_workflow.transfer_to_hub(
            db, parcel_id, identity.hub_id, body.destination_hub_id,
            notes=body.notes, actor_id=identity.user_id
        ))


@router.post("/{parcel_id}/accept-transfer", response_model=ParcelTransitionResult)
async def accept_incoming(
    parcel_id: int,
    identity: IdentityContext = Depends(hub_manager),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Accept an in-transit parcel. Only the destination hub may do this."""
    async with parcel_workflow_lock(redis, parcel_id):
        return await run_with_retry(lambda: transfer_workflow.accept_incoming(
            db, parcel_id, identity.hub_id, actor_id=identity.user_id
        ))


@router.post("/{parcel_id}/return-to-merchant", response_model=ParcelTransitionResult)
async def mark_return_to_merchant(
    parcel_id: int,
    body: NotesRequest,
    identity: IdentityContext = Depends(hub_manager),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Start the journey back to the merchant.

    Creates a linked return parcel; the response carries its id and
    tracking number.
    """
    async with parcel_workflow_lock(redis, parcel_id):
        return await run_with_retry(lambda: transfer_workflow.mark_return_to_merchant(
            db, parcel_id, identity.hub_id, notes=body.notes, actor_id=identity.user_id
        ))
