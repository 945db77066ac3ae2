"""
Rider Settlement Engine.

Reconciles the cash a rider hands to their hub manager against what they
collected since their last settlement, carrying unpaid dues forward.

    total_due    = collected + previous_due
    discrepancy  = cash_received - total_due      (negative = shortfall)
    new_due      = max(total_due - cash_received, 0)

Overpayment is not carried forward as rider credit.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import select, func, desc
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from courier_backend.app.core.exceptions import CustodyMismatchError, NotFoundError, StateConflictError, ValidationError
from courier_backend.app.core.time_utils import utcnow
from courier_backend.app.db.session import atomic
from courier_backend.app.domain.finance.ledger_service import ZERO, to_money
from courier_backend.app.domain.review import finalize_review, flush_review, load_for_review
from courier_backend.app.models.billing_enums import ReviewStatus, SettlementStatus
from courier_backend.app.models.delivery_verification import DeliveryVerification
from courier_backend.app.models.enums import UserRole
from courier_backend.app.models.parcel_enums import ParcelStatus, VerificationStatus
from courier_backend.app.models.rider import Rider
from courier_backend.app.models.rider_settlement import RiderSettlement
from courier_backend.app.schemas.settlement import OutcomeBreakdown, SettlementCalculation
from courier_backend.app.services.audit import AuditAction, log_event

logger = logging.getLogger("courier.settlement")

LABEL = "Rider settlement"

BREAKDOWN_FIELDS = {
    ParcelStatus.DELIVERED: "delivered_count",
    ParcelStatus.PARTIAL_DELIVERY: "partial_delivery_count",
    ParcelStatus.EXCHANGE: "exchange_count",
    ParcelStatus.PAID_RETURN: "paid_return_count",
    ParcelStatus.RETURNED: "returned_count",
}


@dataclass(frozen=True)
class SettlementFigures:
    total_collected_amount: Decimal
    previous_due_amount: Decimal
    cash_received: Decimal
    total_due_to_hub: Decimal
    discrepancy_amount: Decimal
    new_due_amount: Decimal
    settlement_status: SettlementStatus


def compute_settlement_figures(total_collected: Any, previous_due: Any, cash_received: Any) -> SettlementFigures:
    """
    Pure settlement arithmetic.

    Raises:
        ValidationError: any input is negative
    """
    total_collected = to_money(total_collected)
    previous_due = to_money(previous_due)
    cash_received = to_money(cash_received)
    for name, value in (
        ("total_collected_amount", total_collected),
        ("previous_due_amount", previous_due),
        ("cash_received", cash_received),
    ):
        if value < ZERO:
            raise ValidationError(f"{name} cannot be negative", details={name: str(value)})

    total_due = total_collected + previous_due
    new_due = max(total_due - cash_received, ZERO)

    if new_due <= ZERO:
        status = SettlementStatus.COMPLETED
    elif cash_received > ZERO:
        status = SettlementStatus.PARTIAL
    else:
        status = SettlementStatus.PENDING

    return SettlementFigures(
        total_collected_amount=total_collected,
        previous_due_amount=previous_due,
        cash_received=cash_received,
        total_due_to_hub=total_due,
        discrepancy_amount=cash_received - total_due,
        new_due_amount=new_due,
        settlement_status=status,
    )


async def _rider_for_hub(db: AsyncSession, rider_id: int, hub_id: int, lock: bool = False) -> Rider:
    query = select(Rider).where(Rider.id == rider_id).execution_options(populate_existing=True)
    if lock:
        query = query.with_for_update()
    rider = (await db.execute(query)).scalar_one_or_none()
    if rider is None:
        raise NotFoundError("Rider", rider_id)
    if rider.hub_id != hub_id:
        raise CustodyMismatchError(
            f"Rider {rider_id} does not belong to your hub",
            details={"rider_id": rider_id, "hub_id": hub_id}
        )
    return rider


async def last_settlement(db: AsyncSession, rider_id: int) -> Optional[RiderSettlement]:
    result = await db.execute(
        select(RiderSettlement)
        .where(RiderSettlement.rider_id == rider_id)
        .order_by(desc(RiderSettlement.settled_at), desc(RiderSettlement.id))
        .limit(1)
    )
    return result.scalar_one_or_none()


async def collected_in_period(
    db: AsyncSession, rider_id: int, period_start: datetime, period_end: datetime
) -> Dict[str, Any]:
    """Sum completed verifications in [period_start, period_end) by outcome."""
    rows = (await db.execute(
        select(
            DeliveryVerification.selected_status,
            func.count(DeliveryVerification.id),
            func.coalesce(func.sum(DeliveryVerification.collected_amount), 0),
        )
        .where(
            DeliveryVerification.rider_id == rider_id,
            DeliveryVerification.verification_status == VerificationStatus.COMPLETED,
            DeliveryVerification.delivery_completed_at >= period_start,
            DeliveryVerification.delivery_completed_at < period_end,
        )
        .group_by(DeliveryVerification.selected_status)
    )).all()

    breakdown = OutcomeBreakdown()
    total = ZERO
    for status, count, amount in rows:
        breakdown.completed_deliveries += count
        field = BREAKDOWN_FIELDS.get(status)
        if field:
            setattr(breakdown, field, getattr(breakdown, field) + count)
        total += to_money(amount)
    return {"total_collected": total, "breakdown": breakdown}


async def _calculate(
    db: AsyncSession, rider: Rider, hub_id: int, cash_received: Any, now: datetime
) -> SettlementCalculation:
    previous = await last_settlement(db, rider.id)
    period_start = previous.settled_at if previous else rider.created_at
    previous_due = previous.new_due_amount if previous else ZERO

    collected = await collected_in_period(db, rider.id, period_start, now)
    figures = compute_settlement_figures(collected["total_collected"], previous_due, cash_received)

    return SettlementCalculation(
        rider_id=rider.id,
        hub_id=hub_id,
        period_start=period_start,
        period_end=now,
        total_collected_amount=figures.total_collected_amount,
        previous_due_amount=figures.previous_due_amount,
        total_due_to_hub=figures.total_due_to_hub,
        cash_received=figures.cash_received,
        discrepancy_amount=figures.discrepancy_amount,
        new_due_amount=figures.new_due_amount,
        settlement_status=figures.settlement_status,
        breakdown=collected["breakdown"],
    )


async def calculate_settlement(
    db: AsyncSession, rider_id: int, hub_id: int, cash_received: Any = ZERO
) -> SettlementCalculation:
    """Preview a settlement without writing anything."""
    rider = await _rider_for_hub(db, rider_id, hub_id)
    return await _calculate(db, rider, hub_id, cash_received, utcnow())


async def record_settlement(
    db: AsyncSession,
    rider_id: int,
    hub_id: int,
    hub_manager_id: int,
    cash_received: Any,
    notes: Optional[str] = None,
    adjustment_note: Optional[str] = None,
) -> RiderSettlement:
    """
    Record a cash hand-over as one immutable settlement row.

    The rider row is locked and its version bumped, so two hub managers
    settling the same rider at once cannot both count the same deliveries.

    Raises:
        CustodyMismatchError: rider belongs to another hub
        StateConflictError: another settlement for the rider was recorded concurrently
    """
    async with atomic(db):
        rider = await _rider_for_hub(db, rider_id, hub_id, lock=True)
        now = utcnow()
        calc = await _calculate(db, rider, hub_id, cash_received, now)

        settlement = RiderSettlement(
            rider_id=rider.id,
            hub_id=hub_id,
            hub_manager_id=hub_manager_id,
            total_collected_amount=calc.total_collected_amount,
            previous_due_amount=calc.previous_due_amount,
            cash_received=calc.cash_received,
            discrepancy_amount=calc.discrepancy_amount,
            new_due_amount=calc.new_due_amount,
            settlement_status=calc.settlement_status,
            period_start=calc.period_start,
            period_end=calc.period_end,
            settled_at=now,
            notes=notes,
            adjustment_note=adjustment_note,
            review_status=ReviewStatus.PENDING,
            **calc.breakdown.model_dump()
        )
        db.add(settlement)
        rider.last_settled_at = now
        try:
            await db.flush()
        except StaleDataError as e:
            raise StateConflictError(
                f"A settlement for rider {rider_id} was recorded concurrently",
                details={"rider_id": rider_id}
            ) from e

        await log_event(
            db, AuditAction.SETTLEMENT_RECORDED, actor_id=hub_manager_id, actor_role=UserRole.HUB_MANAGER.value,
            entity_type="rider_settlement", entity_id=settlement.id,
            metadata={
                "rider_id": rider.id,
                "cash_received": str(calc.cash_received),
                "new_due_amount": str(calc.new_due_amount),
                "status": calc.settlement_status.value,
            },
        )

    if calc.discrepancy_amount < ZERO:
        logger.warning(
            "Rider %s settled short by %s (due carried: %s)",
            rider_id, -calc.discrepancy_amount, calc.new_due_amount
        )
    return settlement


async def _load_settlement(db: AsyncSession, settlement_id: int) -> RiderSettlement:
    return await load_for_review(db, RiderSettlement, settlement_id, LABEL)


async def approve_settlement(
    db: AsyncSession, settlement_id: int, reviewer_id: int, reviewer_role: UserRole,
    admin_notes: Optional[str] = None,
) -> RiderSettlement:
    async with atomic(db):
        settlement = await _load_settlement(db, settlement_id)
        finalize_review(settlement, LABEL, ReviewStatus.APPROVED, reviewer_id, reviewer_role, admin_notes=admin_notes)
        await flush_review(db, settlement, LABEL)
        await log_event(
            db, AuditAction.SETTLEMENT_APPROVED, actor_id=reviewer_id, actor_role=reviewer_role.value,
            entity_type="rider_settlement", entity_id=settlement.id,
        )
    return settlement


async def reject_settlement(
    db: AsyncSession, settlement_id: int, reviewer_id: int, reviewer_role: UserRole,
    reason: str, admin_notes: Optional[str] = None,
) -> RiderSettlement:
    async with atomic(db):
        settlement = await _load_settlement(db, settlement_id)
        finalize_review(
            settlement, LABEL, ReviewStatus.REJECTED, reviewer_id, reviewer_role,
            reason=reason, admin_notes=admin_notes
        )
        await flush_review(db, settlement, LABEL)
        await log_event(
            db, AuditAction.SETTLEMENT_REJECTED, actor_id=reviewer_id, actor_role=reviewer_role.value,
            entity_type="rider_settlement", entity_id=settlement.id,
            metadata={"reason": settlement.review_reason},
        )
    return settlement
