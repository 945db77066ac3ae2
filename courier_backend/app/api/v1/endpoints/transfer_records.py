"""
Hub Remittance Record API Endpoints.

Hub managers record the cash they transfer to the company account, with a
reference to the uploaded proof. Records stay editable until an admin
approves or rejects them.
"""

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession
from courier_backend.app.db.session import get_db
from courier_backend.app.core.dependencies import IdentityContext, require_scope
from courier_backend.app.core.reliability import run_with_retry
from courier_backend.app.models.enums import UserRole
from courier_backend.app.schemas.transfer_record import (
    ReviewDecisionRequest,
    TransferRecordCreate,
    TransferRecordResponse,
    TransferRecordUpdate,
)
from courier_backend.app.domain.transfers import remittance_service

hub_router = APIRouter(prefix="/hub/transfer-records", tags=["Hub - Transfer Records"])
admin_router = APIRouter(prefix="/admin/transfer-records", tags=["Admin - Transfer Records"])

hub_manager = require_scope(UserRole.HUB_MANAGER, scope="hub_id")
admin_only = require_scope(UserRole.ADMIN)


@hub_router.post("", response_model=TransferRecordResponse, status_code=status.HTTP_201_CREATED)
async def create_record(
    body: TransferRecordCreate,
    identity: IdentityContext = Depends(hub_manager),
    db: AsyncSession = Depends(get_db),
):
    record = await run_with_retry(lambda: remittance_service.create_record(
        db, identity.hub_id, identity.user_id, body
    ))
    return TransferRecordResponse.model_validate(record)


@hub_router.patch("/{record_id}", response_model=TransferRecordResponse)
async def update_record(
    record_id: int,
    body: TransferRecordUpdate,
    identity: IdentityContext = Depends(hub_manager),
    db: AsyncSession = Depends(get_db),
):
    """Edit a record this manager created. Only PENDING records can change."""
    record = await remittance_service.update_record(db, record_id, identity.user_id, body)
    return TransferRecordResponse.model_validate(record)


@hub_router.delete("/{record_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_record(
    record_id: int,
    identity: IdentityContext = Depends(hub_manager),
    db: AsyncSession = Depends(get_db),
):
    await remittance_service.delete_record(db, record_id, identity.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@admin_router.post("/{record_id}/approve", response_model=TransferRecordResponse)
async def approve_record(
    record_id: int,
    body: ReviewDecisionRequest,
    identity: IdentityContext = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    record = await remittance_service.approve_record(
        db, record_id, identity.user_id, identity.role, admin_notes=body.admin_notes
    )
    return TransferRecordResponse.model_validate(record)


@admin_router.post("/{record_id}/reject", response_model=TransferRecordResponse)
async def reject_record(
    record_id: int,
    body: ReviewDecisionRequest,
    identity: IdentityContext = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    record = await remittance_service.reject_record(
        db, record_id, identity.user_id, identity.role,
        reason=body.reason, admin_notes=body.admin_notes
    )
    return TransferRecordResponse.model_validate(record)
