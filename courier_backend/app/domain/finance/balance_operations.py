"""
Admin balance operations.

Transactional, audited wrappers around the ledger primitives for manual
adjustments and withdrawal holds.
"""

from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from courier_backend.app.db.session import atomic
from courier_backend.app.domain.finance.ledger_service import LedgerService, build_overview, to_money
from courier_backend.app.models.merchant_finance_transaction import MerchantFinanceTransaction
from courier_backend.app.schemas.finance import MerchantFinanceOverview
from courier_backend.app.services.audit import AuditAction, log_event


async def adjust_merchant_balance(
    db: AsyncSession,
    merchant_id: int,
    amount: Any,
    reason: str,
    actor_id: Optional[int] = None,
) -> MerchantFinanceTransaction:
    async with atomic(db):
        transaction = await LedgerService.adjust_balance(db, merchant_id, amount, reason, created_by=actor_id)
        await log_event(
            db, AuditAction.BALANCE_ADJUSTED, actor_id=actor_id,
            entity_type="merchant_finance", entity_id=merchant_id,
            metadata={
                "transaction_id": transaction.id,
                "amount": str(to_money(amount)),
                "reason": reason,
            },
        )
    return transaction


async def hold_merchant_balance(
    db: AsyncSession,
    merchant_id: int,
    amount: Any,
    reason: Optional[str] = None,
    actor_id: Optional[int] = None,
) -> MerchantFinanceOverview:
    """Reserve part of a merchant's available balance."""
    async with atomic(db):
        finance = await LedgerService.hold_balance(db, merchant_id, amount)
        await log_event(
            db, AuditAction.BALANCE_HELD, actor_id=actor_id,
            entity_type="merchant_finance", entity_id=merchant_id,
            metadata={"amount": str(to_money(amount)), "reason": reason},
        )
        overview = build_overview(merchant_id, finance)
    return overview


async def release_merchant_hold(
    db: AsyncSession,
    merchant_id: int,
    amount: Any,
    reason: Optional[str] = None,
    actor_id: Optional[int] = None,
) -> MerchantFinanceOverview:
    async with atomic(db):
        finance = await LedgerService.release_hold(db, merchant_id, amount)
        await log_event(
            db, AuditAction.BALANCE_RELEASED, actor_id=actor_id,
            entity_type="merchant_finance", entity_id=merchant_id,
            metadata={"amount": str(to_money(amount)), "reason": reason},
        )
        overview = build_overview(merchant_id, finance)
    return overview
