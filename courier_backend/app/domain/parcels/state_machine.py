"""
Parcel State Machine.

The transition table below is the single source of truth for which status
changes are legal. Every parcel write in the domain layer goes through
``ensure_transition`` before touching the row and ``write_status`` to apply
it under the parcel's optimistic version check.
"""

import enum
import logging
from typing import Dict, FrozenSet

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from courier_backend.app.core.exceptions import StateConflictError
from courier_backend.app.models.parcel import Parcel
from courier_backend.app.models.parcel_enums import ParcelStatus

logger = logging.getLogger("courier.parcels")


class TransitionEffect(str, enum.Enum):
    """Side effect hooked to an edge of the graph."""
    NONE = "NONE"
    SETTLE_OUTCOME = "SETTLE_OUTCOME"  # freeze COD and post to the merchant ledger
    SPAWN_RETURN = "SPAWN_RETURN"  # create a return parcel; source status untouched


S = ParcelStatus
E = TransitionEffect

TRANSITIONS: Dict[ParcelStatus, Dict[ParcelStatus, TransitionEffect]] = {
    S.PENDING: {
        S.OUT_FOR_PICKUP: E.NONE,
        S.PICKED_UP: E.NONE,
        S.IN_HUB: E.NONE,
        S.CANCELLED: E.NONE,
    },
    S.OUT_FOR_PICKUP: {
        S.PICKED_UP: E.NONE,
    },
    S.PICKED_UP: {
        S.IN_HUB: E.NONE,
        S.CANCELLED: E.NONE,
    },
    S.IN_HUB: {
        S.ASSIGNED_TO_RIDER: E.NONE,
        S.IN_TRANSIT: E.NONE,
        S.ASSIGNED_TO_THIRD_PARTY: E.NONE,
        S.CANCELLED: E.NONE,
    },
    S.IN_TRANSIT: {
        S.IN_HUB: E.NONE,
    },
    S.ASSIGNED_TO_RIDER: {
        S.OUT_FOR_DELIVERY: E.NONE,
    },
    S.OUT_FOR_DELIVERY: {
        S.DELIVERED: E.SETTLE_OUTCOME,
        S.PARTIAL_DELIVERY: E.SETTLE_OUTCOME,
        S.EXCHANGE: E.SETTLE_OUTCOME,
        S.PAID_RETURN: E.SETTLE_OUTCOME,
        S.RETURNED: E.SETTLE_OUTCOME,
        S.DELIVERY_RESCHEDULED: E.NONE,
        S.FAILED_DELIVERY: E.NONE,
    },
    S.DELIVERY_RESCHEDULED: {
        S.IN_HUB: E.NONE,
    },
    S.FAILED_DELIVERY: {
        S.RETURNED_TO_HUB: E.NONE,
    },
    S.PARTIAL_DELIVERY: {
        S.RETURN_TO_MERCHANT: E.SPAWN_RETURN,
    },
    S.EXCHANGE: {
        S.RETURN_TO_MERCHANT: E.SPAWN_RETURN,
    },
    S.PAID_RETURN: {
        S.RETURN_TO_MERCHANT: E.SPAWN_RETURN,
    },
    S.RETURNED: {
        S.RETURN_TO_MERCHANT: E.SPAWN_RETURN,
    },
    S.RETURNED_TO_HUB: {
        S.RETURN_TO_MERCHANT: E.SPAWN_RETURN,
    },
    S.DELIVERED: {},
    S.RETURN_TO_MERCHANT: {},
    S.ASSIGNED_TO_THIRD_PARTY: {},
    S.CANCELLED: {},
}

del S, E


def allowed_targets(status: ParcelStatus) -> FrozenSet[ParcelStatus]:
    return frozenset(TRANSITIONS.get(status, {}))


def is_terminal(status: ParcelStatus) -> bool:
    return not TRANSITIONS.get(status)


def ensure_transition(parcel: Parcel, target: ParcelStatus) -> TransitionEffect:
    """
    Check that ``parcel`` may move to ``target``.

    Returns:
        The side effect attached to the edge

    Raises:
        StateConflictError: the edge is not in the table
    """
    edges = TRANSITIONS.get(parcel.status, {})
    if target not in edges:
        raise StateConflictError(
            f"Parcel {parcel.tracking_number} cannot move from {parcel.status.value} to {target.value}",
            details={
                "parcel_id": parcel.id,
                "current_status": parcel.status.value,
                "requested_status": target.value,
                "allowed": sorted(s.value for s in edges),
            }
        )
    return edges[target]


async def write_status(db: AsyncSession, parcel: Parcel, target: ParcelStatus, **fields) -> ParcelStatus:
    """
    Apply a checked transition and flush it immediately.

    The flush runs the parcel's version compare-and-swap, so a parcel changed
    by another workflow since it was read is rejected here, before any
    dependent write.

    Returns:
        The previous status
    """
    ensure_transition(parcel, target)
    previous = parcel.status
    parcel.status = target
    for name, value in fields.items():
        setattr(parcel, name, value)

    await flush_parcel(db, parcel)
    logger.info(
        "Parcel %s: %s -> %s", parcel.tracking_number, previous.value, target.value
    )
    return previous


async def flush_parcel(db: AsyncSession, parcel: Parcel) -> None:
    try:
        await db.flush()
    except StaleDataError as e:
        raise StateConflictError(
            f"Parcel {parcel.tracking_number} was modified by another workflow",
            details={"parcel_id": parcel.id, "reason": "stale"},
        ) from e
