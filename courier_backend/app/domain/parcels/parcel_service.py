"""
Parcel lifecycle operations.

Each public coroutine is one logical operation: it validates inputs and
custody, applies a checked transition and any side effects, records an
audit entry and commits, all inside a single ``atomic`` unit. Scope (hub,
rider, acting user) is always passed in explicitly.
"""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from courier_backend.app.core.config import settings
from courier_backend.app.core.exceptions import (
    CustodyMismatchError, NotFoundError, StateConflictError, TransientStoreError, ValidationError
)
from courier_backend.app.core.time_utils import utcnow
from courier_backend.app.db.session import atomic
from courier_backend.app.domain.finance.ledger_service import (
    LedgerService, RETURN_CHARGE_OUTCOMES, ZERO, to_money
)
from courier_backend.app.domain.parcels.state_machine import (
    TransitionEffect, ensure_transition, write_status
)
from courier_backend.app.models.delivery_verification import DeliveryVerification
from courier_backend.app.models.hub import Hub
from courier_backend.app.models.parcel import Parcel
from courier_backend.app.models.parcel_enums import (
    DELIVERY_OUTCOMES, ParcelStatus, PaymentStatus, VerificationStatus
)
from courier_backend.app.models.rider import Rider
from courier_backend.app.schemas.parcel import DeliveryOutcome, ParcelCreate, ParcelTransitionResult
from courier_backend.app.services.audit import AuditAction, log_event

logger = logging.getLogger("courier.parcels")

REASON_REQUIRED_OUTCOMES = frozenset({
    ParcelStatus.PARTIAL_DELIVERY,
    ParcelStatus.EXCHANGE,
    ParcelStatus.PAID_RETURN,
    ParcelStatus.RETURNED,
    ParcelStatus.DELIVERY_RESCHEDULED,
    ParcelStatus.FAILED_DELIVERY,
})

# Outcomes where the customer received goods
HANDED_OVER_OUTCOMES = frozenset({
    ParcelStatus.DELIVERED,
    ParcelStatus.PARTIAL_DELIVERY,
    ParcelStatus.EXCHANGE,
})

RIDER_FIELDS_CLEARED = {
    "assigned_rider_id": None,
    "assigned_at": None,
    "rider_accepted_at": None,
    "out_for_delivery_at": None,
}


async def load_parcel(db: AsyncSession, parcel_id: int) -> Parcel:
    """Fetch a parcel with fresh column values or raise NotFoundError."""
    result = await db.execute(
        select(Parcel).where(Parcel.id == parcel_id).execution_options(populate_existing=True)
    )
    parcel = result.scalar_one_or_none()
    if parcel is None:
        raise NotFoundError("Parcel", parcel_id)
    return parcel


async def load_hub(db: AsyncSession, hub_id: int) -> Hub:
    hub = await db.get(Hub, hub_id)
    if hub is None or not hub.is_active:
        raise NotFoundError("Hub", hub_id)
    return hub


async def load_rider(db: AsyncSession, rider_id: int) -> Rider:
    result = await db.execute(
        select(Rider).where(Rider.id == rider_id).execution_options(populate_existing=True)
    )
    rider = result.scalar_one_or_none()
    if rider is None:
        raise NotFoundError("Rider", rider_id)
    return rider


def require_custody(parcel: Parcel, hub_id: int) -> None:
    """The acting hub must be the hub physically holding the parcel."""
    if parcel.current_hub_id != hub_id:
        raise CustodyMismatchError(
            f"Parcel {parcel.tracking_number} does not belong to your hub",
            details={"parcel_id": parcel.id, "current_hub_id": parcel.current_hub_id, "hub_id": hub_id}
        )


def require_rider(parcel: Parcel, rider_id: int) -> None:
    if parcel.assigned_rider_id != rider_id:
        raise CustodyMismatchError(
            f"Parcel {parcel.tracking_number} is not assigned to you",
            details={"parcel_id": parcel.id, "rider_id": rider_id}
        )


def transition_result(parcel: Parcel, previous: Optional[ParcelStatus], **extra) -> ParcelTransitionResult:
    return ParcelTransitionResult(
        parcel_id=parcel.id,
        tracking_number=parcel.tracking_number,
        previous_status=previous,
        status=parcel.status,
        current_hub_id=parcel.current_hub_id,
        assigned_rider_id=parcel.assigned_rider_id,
        **extra
    )


async def audit_transition(
    db: AsyncSession,
    parcel: Parcel,
    previous: ParcelStatus,
    actor_id: Optional[int],
    action: str = AuditAction.PARCEL_STATUS_CHANGED,
    **metadata
) -> None:
    await log_event(
        db,
        action=action,
        actor_id=actor_id,
        entity_type="parcel",
        entity_id=parcel.id,
        metadata={"from": previous.value, "to": parcel.status.value, **metadata},
    )


async def generate_tracking_number(db: AsyncSession) -> str:
    """TRK-YYYYMMDD-NNNNN, numbered per day."""
    prefix = f"{settings.tracking_prefix}-{utcnow():%Y%m%d}-"
    count = (await db.execute(
        select(func.count(Parcel.id)).where(Parcel.tracking_number.like(f"{prefix}%"))
    )).scalar_one()
    return f"{prefix}{count + 1:05d}"


async def create_parcel(db: AsyncSession, data: ParcelCreate, actor_id: Optional[int] = None) -> Parcel:
    """
    Book a parcel. It starts PENDING in the custody of the store's pickup hub.

    Raises:
        ValidationError: COD parcel without a COD amount
        NotFoundError: unknown pickup hub
        TransientStoreError: tracking number taken by a concurrent booking
    """
    if data.is_cod and to_money(data.cod_amount) <= ZERO:
        raise ValidationError("COD parcels need a positive cod_amount")

    async with atomic(db):
        await load_hub(db, data.pickup_hub_id)

        charges = to_money(data.delivery_charge) + to_money(data.weight_charge) + to_money(data.cod_charge)
        parcel = Parcel(
            tracking_number=await generate_tracking_number(db),
            merchant_id=data.merchant_id,
            store_id=data.store_id,
            customer_id=data.customer_id,
            customer_name=data.customer_name,
            customer_phone=data.customer_phone,
            pickup_address=data.pickup_address,
            delivery_address=data.delivery_address,
            pickup_coverage_area_id=data.pickup_coverage_area_id,
            delivery_coverage_area_id=data.delivery_coverage_area_id,
            current_hub_id=data.pickup_hub_id,
            product_price=to_money(data.product_price),
            product_weight=data.product_weight,
            delivery_charge=to_money(data.delivery_charge),
            weight_charge=to_money(data.weight_charge),
            cod_charge=to_money(data.cod_charge),
            total_charge=charges,
            return_charge=to_money(data.return_charge),
            is_cod=data.is_cod,
            cod_amount=to_money(data.cod_amount) if data.is_cod else ZERO,
            status=ParcelStatus.PENDING,
        )
        db.add(parcel)
        try:
            await db.flush()
        except IntegrityError as e:
            raise TransientStoreError("Tracking number already taken, retry the booking") from e

        await log_event(
            db,
            action=AuditAction.PARCEL_CREATED,
            actor_id=actor_id,
            entity_type="parcel",
            entity_id=parcel.id,
            metadata={"tracking_number": parcel.tracking_number, "merchant_id": parcel.merchant_id},
        )

    logger.info("Parcel %s booked for merchant %s", parcel.tracking_number, parcel.merchant_id)
    return parcel


async def start_pickup(
    db: AsyncSession, parcel_id: int, hub_id: int, rider_id: int, actor_id: Optional[int] = None
) -> ParcelTransitionResult:
    """PENDING -> OUT_FOR_PICKUP with a pickup rider from the same hub."""
    async with atomic(db):
        parcel = await load_parcel(db, parcel_id)
        require_custody(parcel, hub_id)
        ensure_transition(parcel, ParcelStatus.OUT_FOR_PICKUP)
        rider = await load_rider(db, rider_id)
        _require_rider_at_hub(rider, hub_id)

        previous = await write_status(
            db, parcel, ParcelStatus.OUT_FOR_PICKUP,
            assigned_rider_id=rider.id,
            assigned_at=utcnow(),
        )
        await audit_transition(db, parcel, previous, actor_id, rider_id=rider.id)
    return transition_result(parcel, previous)


async def confirm_pickup(
    db: AsyncSession,
    parcel_id: int,
    hub_id: Optional[int] = None,
    rider_id: Optional[int] = None,
    actor_id: Optional[int] = None,
) -> ParcelTransitionResult:
    """
    PENDING / OUT_FOR_PICKUP -> PICKED_UP.

    Confirmed either by the hub holding the parcel or by the rider sent to
    collect it.
    """
    if (hub_id is None) == (rider_id is None):
        raise ValidationError("Pickup is confirmed by exactly one of a hub or a rider")

    async with atomic(db):
        parcel = await load_parcel(db, parcel_id)
        if hub_id is not None:
            require_custody(parcel, hub_id)
        else:
            require_rider(parcel, rider_id)

        previous = await write_status(db, parcel, ParcelStatus.PICKED_UP, picked_up_at=utcnow())
        await audit_transition(db, parcel, previous, actor_id)
    return transition_result(parcel, previous)


async def mark_received(
    db: AsyncSession, parcel_id: int, hub_id: int, actor_id: Optional[int] = None
) -> ParcelTransitionResult:
    """
    PENDING / PICKED_UP -> IN_HUB at the receiving hub.

    Raises:
        CustodyMismatchError: the parcel is held by another hub
    """
    async with atomic(db):
        parcel = await load_parcel(db, parcel_id)
        require_custody(parcel, hub_id)

        fields = dict(RIDER_FIELDS_CLEARED)
        if parcel.origin_hub_id is None:
            fields["origin_hub_id"] = hub_id
        if parcel.status == ParcelStatus.PENDING:
            fields["picked_up_at"] = utcnow()

        previous = await write_status(db, parcel, ParcelStatus.IN_HUB, **fields)
        await audit_transition(db, parcel, previous, actor_id, hub_id=hub_id)
    return transition_result(parcel, previous)


def _require_rider_at_hub(rider: Rider, hub_id: int) -> None:
    if not rider.is_active:
        raise ValidationError(f"Rider {rider.id} is not active")
    if rider.hub_id != hub_id:
        raise CustodyMismatchError(
            f"Rider {rider.id} does not belong to your hub",
            details={"rider_id": rider.id, "rider_hub_id": rider.hub_id, "hub_id": hub_id}
        )


async def assign_to_rider(
    db: AsyncSession, parcel_id: int, hub_id: int, rider_id: int, actor_id: Optional[int] = None
) -> ParcelTransitionResult:
    """
    IN_HUB -> ASSIGNED_TO_RIDER.

    Raises:
        StateConflictError: parcel already assigned or not in the hub
        CustodyMismatchError: parcel or rider belongs to another hub
    """
    async with atomic(db):
        parcel = await load_parcel(db, parcel_id)
        require_custody(parcel, hub_id)
        if parcel.assigned_rider_id is not None:
            raise StateConflictError(
                f"Parcel {parcel.tracking_number} is already assigned to a rider",
                details={"parcel_id": parcel.id, "assigned_rider_id": parcel.assigned_rider_id}
            )
        ensure_transition(parcel, ParcelStatus.ASSIGNED_TO_RIDER)

        rider = await load_rider(db, rider_id)
        _require_rider_at_hub(rider, hub_id)

        previous = await write_status(
            db, parcel, ParcelStatus.ASSIGNED_TO_RIDER,
            assigned_rider_id=rider.id,
            assigned_at=utcnow(),
        )
        await audit_transition(db, parcel, previous, actor_id, AuditAction.PARCEL_ASSIGNED, rider_id=rider.id)
    return transition_result(parcel, previous)


async def dispatch_for_delivery(
    db: AsyncSession, parcel_id: int, rider_id: int, actor_id: Optional[int] = None
) -> ParcelTransitionResult:
    """
    ASSIGNED_TO_RIDER -> OUT_FOR_DELIVERY, accepted by the assigned rider.
    """
    async with atomic(db):
        parcel = await load_parcel(db, parcel_id)
        require_rider(parcel, rider_id)
        if parcel.rider_accepted_at is not None:
            raise StateConflictError(
                f"Parcel {parcel.tracking_number} was already accepted",
                details={"parcel_id": parcel.id}
            )

        now = utcnow()
        previous = await write_status(
            db, parcel, ParcelStatus.OUT_FOR_DELIVERY,
            rider_accepted_at=now,
            out_for_delivery_at=now,
        )
        await audit_transition(db, parcel, previous, actor_id, rider_id=rider_id)
    return transition_result(parcel, previous)


def _collected_amount(parcel: Parcel, outcome: DeliveryOutcome, effect: TransitionEffect) -> Decimal:
    if effect != TransitionEffect.SETTLE_OUTCOME:
        return ZERO
    if outcome.collected_amount is None:
        if parcel.is_cod:
            raise ValidationError(
                f"collected_amount is required for COD parcel {parcel.tracking_number}",
                details={"parcel_id": parcel.id, "selected_status": outcome.selected_status.value}
            )
        return ZERO
    collected = to_money(outcome.collected_amount)
    if collected < ZERO:
        raise ValidationError("collected_amount cannot be negative", details={"parcel_id": parcel.id})
    return collected


async def apply_delivery_outcome(
    db: AsyncSession, outcome: DeliveryOutcome, rider_id: int, actor_id: Optional[int] = None
) -> ParcelTransitionResult:
    """
    Apply a confirmed delivery attempt.

    Financial outcomes (delivered, partial, exchange, paid return, returned)
    freeze ``cod_collected_amount`` and post the COD credit and charge debits
    to the merchant ledger in the same transaction as the status write.

    Raises:
        ValidationError: not a delivery outcome, missing reason, or missing
            collected amount for a COD parcel (checked before any write)
        CustodyMismatchError: parcel is not assigned to this rider
        StateConflictError: parcel is not out for delivery
    """
    target = outcome.selected_status
    if target not in DELIVERY_OUTCOMES:
        raise ValidationError(f"{target.value} is not a delivery outcome")
    reason = (outcome.reason or "").strip() or None
    if target in REASON_REQUIRED_OUTCOMES and reason is None:
        raise ValidationError(f"A reason is required for {target.value}")

    async with atomic(db):
        parcel = await load_parcel(db, outcome.parcel_id)
        require_rider(parcel, rider_id)
        effect = ensure_transition(parcel, target)
        collected = _collected_amount(parcel, outcome, effect)

        now = utcnow()
        fields = {"delivery_reason": reason}
        if effect == TransitionEffect.SETTLE_OUTCOME:
            if parcel.cod_collected_amount is not None:
                raise StateConflictError(
                    f"COD for parcel {parcel.tracking_number} was already recorded",
                    details={"parcel_id": parcel.id}
                )
            fields["cod_collected_amount"] = collected
            fields["return_charge_applicable"] = target in RETURN_CHARGE_OUTCOMES
            if collected > ZERO:
                fields["payment_status"] = PaymentStatus.COD_COLLECTED
        if target in HANDED_OVER_OUTCOMES:
            fields["delivered_at"] = now

        previous = await write_status(db, parcel, target, **fields)

        db.add(DeliveryVerification(
            parcel_id=parcel.id,
            rider_id=rider_id,
            selected_status=target,
            collected_amount=collected,
            expected_cod_amount=to_money(
                outcome.expected_cod_amount if outcome.expected_cod_amount is not None else parcel.cod_amount
            ),
            reason=reason,
            verification_status=VerificationStatus.COMPLETED,
            delivery_completed_at=now,
        ))

        postings = []
        # Return parcels carry goods back to the merchant and post nothing
        if effect == TransitionEffect.SETTLE_OUTCOME and not parcel.is_return_parcel:
            postings = await LedgerService.post_parcel_outcome(
                db, parcel, target, collected, created_by=actor_id
            )

        await audit_transition(
            db, parcel, previous, actor_id, AuditAction.PARCEL_OUTCOME_APPLIED,
            collected_amount=str(collected),
            ledger_transaction_ids=[t.id for t in postings],
        )

    return transition_result(
        parcel, previous,
        ledger_transaction_ids=[t.id for t in postings],
        merchant_balance=postings[-1].balance_after if postings else None,
    )


async def prepare_for_redelivery(
    db: AsyncSession, parcel_id: int, hub_id: int, actor_id: Optional[int] = None
) -> ParcelTransitionResult:
    """DELIVERY_RESCHEDULED -> IN_HUB, ready for another delivery cycle."""
    async with atomic(db):
        parcel = await load_parcel(db, parcel_id)
        require_custody(parcel, hub_id)
        previous = await write_status(db, parcel, ParcelStatus.IN_HUB, **RIDER_FIELDS_CLEARED)
        await audit_transition(db, parcel, previous, actor_id)
    return transition_result(parcel, previous)


async def return_failed_to_hub(
    db: AsyncSession, parcel_id: int, hub_id: int, actor_id: Optional[int] = None
) -> ParcelTransitionResult:
    """FAILED_DELIVERY -> RETURNED_TO_HUB when the rider hands the parcel back."""
    async with atomic(db):
        parcel = await load_parcel(db, parcel_id)
        require_custody(parcel, hub_id)
        previous = await write_status(db, parcel, ParcelStatus.RETURNED_TO_HUB, **RIDER_FIELDS_CLEARED)
        await audit_transition(db, parcel, previous, actor_id)
    return transition_result(parcel, previous)


async def hand_to_third_party(
    db: AsyncSession, parcel_id: int, hub_id: int, provider: str, actor_id: Optional[int] = None
) -> ParcelTransitionResult:
    """IN_HUB -> ASSIGNED_TO_THIRD_PARTY. Tracking continues with the provider."""
    if not provider or not provider.strip():
        raise ValidationError("Third-party provider name is required")

    async with atomic(db):
        parcel = await load_parcel(db, parcel_id)
        require_custody(parcel, hub_id)
        previous = await write_status(
            db, parcel, ParcelStatus.ASSIGNED_TO_THIRD_PARTY, third_party_provider=provider.strip()
        )
        await audit_transition(db, parcel, previous, actor_id, provider=provider.strip())
    return transition_result(parcel, previous)


async def cancel_parcel(
    db: AsyncSession,
    parcel_id: int,
    hub_id: Optional[int] = None,
    merchant_id: Optional[int] = None,
    reason: Optional[str] = None,
    actor_id: Optional[int] = None,
) -> ParcelTransitionResult:
    """Cancel a parcel that has not left its hub, on behalf of its hub or its merchant."""
    if (hub_id is None) == (merchant_id is None):
        raise ValidationError("Cancellation is requested by exactly one of a hub or a merchant")

    async with atomic(db):
        parcel = await load_parcel(db, parcel_id)
        if hub_id is not None:
            require_custody(parcel, hub_id)
        elif parcel.merchant_id != merchant_id:
            raise CustodyMismatchError(
                f"Parcel {parcel.tracking_number} does not belong to your account",
                details={"parcel_id": parcel.id}
            )

        previous = await write_status(
            db, parcel, ParcelStatus.CANCELLED,
            cancelled_at=utcnow(),
            delivery_reason=reason,
        )
        await audit_transition(db, parcel, previous, actor_id, AuditAction.PARCEL_CANCELLED, reason=reason)
    return transition_result(parcel, previous)
