"""
Admin Merchant Finance API Endpoints.

Balance overview, ledger history, replay verification and the manual
adjustment / hold controls.
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from courier_backend.app.db.session import get_db
from courier_backend.app.core.dependencies import IdentityContext, require_scope
from courier_backend.app.core.reliability import run_with_retry
from courier_backend.app.models.billing_enums import ReferenceType
from courier_backend.app.models.enums import UserRole
from courier_backend.app.schemas.finance import (
    BalanceAdjustmentRequest,
    HoldRequest,
    LedgerHistoryResponse,
    LedgerTransactionResponse,
    LedgerVerificationResponse,
    MerchantFinanceOverview,
)
from courier_backend.app.domain.finance import balance_operations
from courier_backend.app.domain.finance.ledger_service import LedgerService

router = APIRouter(prefix="/admin/merchants", tags=["Admin - Merchant Finance"])
admin_only = require_scope(UserRole.ADMIN)


@router.get("/{merchant_id}/finance", response_model=MerchantFinanceOverview)
async def get_overview(
    merchant_id: int,
    identity: IdentityContext = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    return await LedgerService.get_overview(db, merchant_id)


@router.get("/{merchant_id}/ledger", response_model=LedgerHistoryResponse)
async def get_history(
    merchant_id: int,
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(50, ge=1, le=200, description="Items per page"),
    reference_type: Optional[ReferenceType] = Query(None),
    identity: IdentityContext = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    rows, total, summary = await LedgerService.get_history(db, merchant_id, page, limit, reference_type)
    return LedgerHistoryResponse(
        items=[LedgerTransactionResponse.model_validate(row) for row in rows],
        total=total,
        page=page,
        limit=limit,
        summary=summary,
    )


@router.get("/{merchant_id}/ledger/verify", response_model=LedgerVerificationResponse)
async def verify_ledger(
    merchant_id: int,
    identity: IdentityContext = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    """
    Replay the merchant's ledger from zero and compare with the stored balance.

    A broken chain or mismatch answers 500 ERR_LEDGER_CONSISTENCY.
    """
    return LedgerVerificationResponse(**await LedgerService.verify_ledger(db, merchant_id))


@router.post(
    "/{merchant_id}/adjustments",
    response_model=LedgerTransactionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def adjust_balance(
    merchant_id: int,
    body: BalanceAdjustmentRequest,
    identity: IdentityContext = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    transaction = await run_with_retry(lambda: balance_operations.adjust_merchant_balance(
        db, merchant_id, body.amount, body.reason, actor_id=identity.user_id
    ))
    return LedgerTransactionResponse.model_validate(transaction)


@router.post("/{merchant_id}/hold", response_model=MerchantFinanceOverview)
async def hold_balance(
    merchant_id: int,
    body: HoldRequest,
    identity: IdentityContext = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    return await run_with_retry(lambda: balance_operations.hold_merchant_balance(
        db, merchant_id, body.amount, reason=body.reason, actor_id=identity.user_id
    ))


@router.post("/{merchant_id}/release", response_model=MerchantFinanceOverview)
async def release_hold(
    merchant_id: int,
    body: HoldRequest,
    identity: IdentityContext = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    return await run_with_retry(lambda: balance_operations.release_merchant_hold(
        db, merchant_id, body.amount, reason=body.reason, actor_id=identity.user_id
    ))
