"""
Rider Cash Settlement API Endpoints.

Hub managers reconcile the cash riders hand in against what they collected
since their last settlement; admins review the recorded settlements.
"""

from decimal import Decimal
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from courier_backend.app.db.session import get_db
from courier_backend.app.core.dependencies import IdentityContext, require_scope
from courier_backend.app.core.reliability import run_with_retry
from courier_backend.app.models.enums import UserRole
from courier_backend.app.schemas.settlement import (
    RiderSettlementResponse,
    SettlementCalculation,
    SettlementRequest,
)
from courier_backend.app.schemas.transfer_record import ReviewDecisionRequest
from courier_backend.app.domain.settlement import rider_settlement_service

hub_router = APIRouter(prefix="/hub/riders", tags=["Hub - Rider Settlements"])
admin_router = APIRouter(prefix="/admin/rider-settlements", tags=["Admin - Rider Settlements"])

hub_manager = require_scope(UserRole.HUB_MANAGER, scope="hub_id")
admin_only = require_scope(UserRole.ADMIN)


@hub_router.get("/{rider_id}/settlement", response_model=SettlementCalculation)
async def calculate_settlement(
    rider_id: int,
    cash_received: Decimal = Query(Decimal("0"), ge=0),
    identity: IdentityContext = Depends(hub_manager),
    db: AsyncSession = Depends(get_db),
):
    """Preview the figures for the rider's open period. Nothing is written."""
    return await rider_settlement_service.calculate_settlement(
        db, rider_id, identity.hub_id, cash_received=cash_received
    )


@hub_router.post(
    "/{rider_id}/settlements",
    response_model=RiderSettlementResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_settlement(
    rider_id: int,
    body: SettlementRequest,
    identity: IdentityContext = Depends(hub_manager),
    db: AsyncSession = Depends(get_db),
):
    settlement = await run_with_retry(lambda: rider_settlement_service.record_settlement(
        db, rider_id, identity.hub_id, identity.user_id, body.cash_received,
        notes=body.notes, adjustment_note=body.adjustment_note
    ))
    return RiderSettlementResponse.model_validate(settlement)


@admin_router.post("/{settlement_id}/approve", response_model=RiderSettlementResponse)
async def approve_settlement(
    settlement_id: int,
    body: ReviewDecisionRequest,
    identity: IdentityContext = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    settlement = await rider_settlement_service.approve_settlement(
        db, settlement_id, identity.user_id, identity.role, admin_notes=body.admin_notes
    )
    return RiderSettlementResponse.model_validate(settlement)


@admin_router.post("/{settlement_id}/reject", response_model=RiderSettlementResponse)
async def reject_settlement(
    settlement_id: int,
    body: ReviewDecisionRequest,
    identity: IdentityContext = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    settlement = await rider_settlement_service.reject_settlement(
        db, settlement_id, identity.user_id, identity.role,
        reason=body.reason, admin_notes=body.admin_notes
    )
    return RiderSettlementResponse.model_validate(settlement)
