"""
Hub Transfer Workflow.

Moves parcels between hubs and hands parcels back to their merchant, using
the parcel state machine for every status change.
"""

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from courier_backend.app.core.config import settings
from courier_backend.app.core.exceptions import (
    CustodyMismatchError, StateConflictError, TransientStoreError, ValidationError
)
from courier_backend.app.core.time_utils import utcnow
from courier_backend.app.db.session import atomic
from courier_backend.app.domain.finance.ledger_service import ZERO
from courier_backend.app.domain.parcels.parcel_service import (
    RIDER_FIELDS_CLEARED, audit_transition, load_hub, load_parcel, require_custody, transition_result
)
from courier_backend.app.domain.parcels.state_machine import (
    TransitionEffect, ensure_transition, flush_parcel, write_status
)
from courier_backend.app.models.parcel import Parcel
from courier_backend.app.models.parcel_enums import ParcelStatus
from courier_backend.app.schemas.parcel import ParcelTransitionResult
from courier_backend.app.services.audit import AuditAction, log_event

logger = logging.getLogger("courier.transfers")


async def transfer_to_hub(
    db: AsyncSession,
    parcel_id: int,
    hub_id: int,
    destination_hub_id: int,
    notes: Optional[str] = None,
    actor_id: Optional[int] = None,
) -> ParcelTransitionResult:
    """
    IN_HUB -> IN_TRANSIT towards another hub.

    The parcel leaves the sending hub's custody until the destination
    accepts it.

    Raises:
        ValidationError: destination is the sending hub
        NotFoundError: destination hub unknown or inactive
        CustodyMismatchError: the parcel is not in the sending hub
    """
    if destination_hub_id == hub_id:
        raise ValidationError("Cannot transfer a parcel to the hub that holds it")

    async with atomic(db):
        parcel = await load_parcel(db, parcel_id)
        require_custody(parcel, hub_id)
        ensure_transition(parcel, ParcelStatus.IN_TRANSIT)
        await load_hub(db, destination_hub_id)

        previous = await write_status(
            db, parcel, ParcelStatus.IN_TRANSIT,
            origin_hub_id=hub_id,
            current_hub_id=None,
            destination_hub_id=destination_hub_id,
            is_inter_hub_transfer=True,
            transferred_at=utcnow(),
            received_at_destination_hub=None,
            transfer_notes=notes,
            **RIDER_FIELDS_CLEARED
        )
        await audit_transition(
            db, parcel, previous, actor_id, AuditAction.PARCEL_TRANSFERRED,
            from_hub_id=hub_id, to_hub_id=destination_hub_id
        )

    logger.info("Parcel %s in transit %s -> %s", parcel.tracking_number, hub_id, destination_hub_id)
    return transition_result(parcel, previous)


async def accept_incoming(
    db: AsyncSession, parcel_id: int, hub_id: int, actor_id: Optional[int] = None
) -> ParcelTransitionResult:
    """
    IN_TRANSIT -> IN_HUB at the destination hub.

    Raises:
        CustodyMismatchError: the parcel is not headed for this hub
        StateConflictError: the parcel is not in transit
    """
    async with atomic(db):
        parcel = await load_parcel(db, parcel_id)
        if parcel.destination_hub_id != hub_id:
            raise CustodyMismatchError(
                f"Parcel {parcel.tracking_number} is not being transferred to your hub",
                details={"parcel_id": parcel.id, "destination_hub_id": parcel.destination_hub_id, "hub_id": hub_id}
            )

        previous = await write_status(
            db, parcel, ParcelStatus.IN_HUB,
            current_hub_id=hub_id,
            destination_hub_id=None,
            is_inter_hub_transfer=False,
            received_at_destination_hub=utcnow(),
        )
        await audit_transition(
            db, parcel, previous, actor_id, AuditAction.PARCEL_TRANSFER_ACCEPTED,
            from_hub_id=parcel.origin_hub_id, hub_id=hub_id
        )
    return transition_result(parcel, previous)


def return_tracking_number(tracking_number: str) -> str:
    """
    RTN-<tracking> for a first return; a return of a return gets a numbered
    suffix (-R2, -R3, ...).
    """
    prefix = f"{settings.return_prefix}-"
    if not tracking_number.startswith(prefix):
        return f"{prefix}{tracking_number}"

    base, sep, suffix = tracking_number.rpartition("-R")
    if sep and suffix.isdigit():
        return f"{base}-R{int(suffix) + 1}"
    return f"{tracking_number}-R2"


async def mark_return_to_merchant(
    db: AsyncSession,
    parcel_id: int,
    hub_id: int,
    notes: Optional[str] = None,
    actor_id: Optional[int] = None,
) -> ParcelTransitionResult:
    """
    Spawn a return parcel that carries goods from this hub back to the merchant.

    The source parcel keeps its outcome status for financial reporting; only
    ``return_initiated_at`` is stamped on it. The return parcel starts IN_HUB
    with the route reversed, no COD and no charges.

    Raises:
        CustodyMismatchError: the parcel is not held by this hub
        StateConflictError: status has no return edge, or a return already exists
    """
    async with atomic(db):
        parcel = await load_parcel(db, parcel_id)
        require_custody(parcel, hub_id)
        effect = ensure_transition(parcel, ParcelStatus.RETURN_TO_MERCHANT)
        if effect != TransitionEffect.SPAWN_RETURN:
            raise StateConflictError(f"Parcel {parcel.tracking_number} cannot be returned to merchant")
        if parcel.return_initiated_at is not None:
            raise StateConflictError(
                f"A return parcel already exists for {parcel.tracking_number}",
                details={"parcel_id": parcel.id}
            )

        # Bookkeeping on the source; also bumps its version so a concurrent spawn loses
        parcel.return_initiated_at = utcnow()
        await flush_parcel(db, parcel)

        return_parcel = Parcel(
            tracking_number=return_tracking_number(parcel.tracking_number),
            merchant_id=parcel.merchant_id,
            store_id=parcel.store_id,
            pickup_address=parcel.delivery_address,
            delivery_address=parcel.pickup_address,
            pickup_coverage_area_id=parcel.delivery_coverage_area_id,
            delivery_coverage_area_id=parcel.pickup_coverage_area_id,
            current_hub_id=hub_id,
            origin_hub_id=hub_id,
            product_price=parcel.product_price,
            product_weight=parcel.product_weight,
            delivery_charge=ZERO,
            weight_charge=ZERO,
            cod_charge=ZERO,
            total_charge=ZERO,
            return_charge=ZERO,
            is_cod=False,
            cod_amount=ZERO,
            delivery_charge_applicable=False,
            return_charge_applicable=False,
            status=ParcelStatus.IN_HUB,
            is_return_parcel=True,
            original_parcel_id=parcel.id,
            transfer_notes=notes,
        )
        db.add(return_parcel)
        try:
            await db.flush()
        except IntegrityError as e:
            raise TransientStoreError("Return tracking number already taken") from e

        await log_event(
            db,
            action=AuditAction.RETURN_PARCEL_CREATED,
            actor_id=actor_id,
            entity_type="parcel",
            entity_id=return_parcel.id,
            metadata={
                "original_parcel_id": parcel.id,
                "original_status": parcel.status.value,
                "tracking_number": return_parcel.tracking_number,
            },
        )

    logger.info("Return parcel %s spawned from %s", return_parcel.tracking_number, parcel.tracking_number)
    return transition_result(
        parcel, parcel.status,
        return_parcel_id=return_parcel.id,
        return_tracking_number=return_parcel.tracking_number,
    )
