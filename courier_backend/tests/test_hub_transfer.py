"""
Hub transfer and return-to-merchant tests.
"""

import pytest
from decimal import Decimal

from courier_backend.app.core.exceptions import (
    CustodyMismatchError, NotFoundError, StateConflictError, ValidationError
)
from courier_backend.app.domain.parcels import parcel_service
from courier_backend.app.domain.transfers import transfer_workflow
from courier_backend.app.domain.transfers.transfer_workflow import return_tracking_number
from courier_backend.app.models.parcel_enums import FinancialStatus, ParcelStatus
from courier_backend.app.services.audit import AuditAction, get_audit_trail


@pytest.fixture
def parcel_in_hub(db_session, make_parcel, hub_id):
    async def _in_hub(**overrides):
        parcel_id = await make_parcel(**overrides)
        await parcel_service.mark_received(db_session, parcel_id, hub_id)
        return parcel_id
    return _in_hub


@pytest.mark.asyncio
async def test_transfer_accepted_only_by_destination(
    db_session, parcel_in_hub, hub_id, second_hub_id, third_hub_id, fetch
):
    """Hub A -> hub B; hub C cannot accept, hub B can."""
    parcel_id = await parcel_in_hub()

    result = await transfer_workflow.transfer_to_hub(db_session, parcel_id, hub_id, second_hub_id, notes="Overflow")
    assert result.status == ParcelStatus.IN_TRANSIT
    assert result.current_hub_id is None

    with pytest.raises(CustodyMismatchError) as exc:
        await transfer_workflow.accept_incoming(db_session, parcel_id, third_hub_id)
    assert exc.value.status_code == 403

    parcel = await fetch.parcel(db_session, parcel_id)
    assert parcel.status == ParcelStatus.IN_TRANSIT

    result = await transfer_workflow.accept_incoming(db_session, parcel_id, second_hub_id)
    assert result.status == ParcelStatus.IN_HUB
    assert result.current_hub_id == second_hub_id

    parcel = await fetch.parcel(db_session, parcel_id)
    assert parcel.origin_hub_id == hub_id
    assert parcel.destination_hub_id is None
    assert parcel.received_at_destination_hub is not None

    trail = await get_audit_trail(db_session, entity_type="parcel", entity_id=parcel_id)
    actions = [entry.action for entry in trail]
    assert AuditAction.PARCEL_TRANSFERRED in actions
    assert AuditAction.PARCEL_TRANSFER_ACCEPTED in actions


@pytest.mark.asyncio
async def test_in_transit_parcel_cannot_be_worked_by_sender(db_session, parcel_in_hub, hub_id, second_hub_id, rider_id):
    parcel_id = await parcel_in_hub()
    await transfer_workflow.transfer_to_hub(db_session, parcel_id, hub_id, second_hub_id)

    with pytest.raises(CustodyMismatchError):
        await parcel_service.assign_to_rider(db_session, parcel_id, hub_id, rider_id)


@pytest.mark.asyncio
async def test_transfer_validation(db_session, parcel_in_hub, hub_id, second_hub_id):
    parcel_id = await parcel_in_hub()

    with pytest.raises(ValidationError):
        await transfer_workflow.transfer_to_hub(db_session, parcel_id, hub_id, hub_id)
    with pytest.raises(NotFoundError):
        await transfer_workflow.transfer_to_hub(db_session, parcel_id, hub_id, 4040)
    with pytest.raises(CustodyMismatchError):
        await transfer_workflow.transfer_to_hub(db_session, parcel_id, second_hub_id, hub_id)


@pytest.mark.asyncio
async def test_pending_parcel_cannot_be_transferred(db_session, make_parcel, hub_id, second_hub_id):
    parcel_id = await make_parcel()
    with pytest.raises(StateConflictError):
        await transfer_workflow.transfer_to_hub(db_session, parcel_id, hub_id, second_hub_id)


@pytest.mark.asyncio
async def test_return_to_merchant_spawns_linked_parcel(
    db_session, out_for_delivery, deliver, hub_id, rider_id, fetch
):
    """P1 RETURNED -> return-to-merchant -> P2 linked back; P1 keeps its status."""
    p1 = await out_for_delivery(pickup_address="Store 4, Gulshan", delivery_address="Flat 2B, Banani")
    await deliver(p1, ParcelStatus.RETURNED, collected=Decimal("0"), reason="Customer refused")
    ledger_before = len(await fetch.ledger(db_session))

    result = await transfer_workflow.mark_return_to_merchant(db_session, p1, hub_id, notes="Back to store")

    assert result.status == ParcelStatus.RETURNED
    assert result.return_parcel_id is not None
    assert result.return_tracking_number.startswith("RTN-TRK-")

    original = await fetch.parcel(db_session, p1)
    assert original.status == ParcelStatus.RETURNED
    assert original.return_initiated_at is not None
    assert original.financial_status == FinancialStatus.PENDING

    p2 = await fetch.parcel(db_session, result.return_parcel_id)
    assert p2.original_parcel_id == p1
    assert p2.is_return_parcel is True
    assert p2.status == ParcelStatus.IN_HUB
    assert p2.current_hub_id == hub_id
    assert p2.pickup_address == "Flat 2B, Banani"
    assert p2.delivery_address == "Store 4, Gulshan"
    assert p2.is_cod is False
    assert p2.total_charge == Decimal("0")
    assert p2.delivery_charge_applicable is False

    # P1 is out of the delivery flow for good
    with pytest.raises(StateConflictError):
        await parcel_service.assign_to_rider(db_session, p1, hub_id, rider_id)

    # Spawning moves no money
    assert len(await fetch.ledger(db_session)) == ledger_before


@pytest.mark.asyncio
async def test_second_return_is_refused(db_session, out_for_delivery, deliver, hub_id):
    p1 = await out_for_delivery()
    await deliver(p1, ParcelStatus.RETURNED, collected=Decimal("0"), reason="Customer refused")
    await transfer_workflow.mark_return_to_merchant(db_session, p1, hub_id)

    with pytest.raises(StateConflictError):
        await transfer_workflow.mark_return_to_merchant(db_session, p1, hub_id)


@pytest.mark.asyncio
async def test_delivered_parcel_cannot_be_returned(db_session, out_for_delivery, deliver, hub_id):
    p1 = await out_for_delivery()
    await deliver(p1, ParcelStatus.DELIVERED, collected=Decimal("500"))

    with pytest.raises(StateConflictError):
        await transfer_workflow.mark_return_to_merchant(db_session, p1, hub_id)


@pytest.mark.asyncio
async def test_return_parcel_delivery_posts_nothing(db_session, out_for_delivery, deliver, hub_id, rider_id, fetch):
    """Carrying goods back to the merchant has no ledger consequences."""
    p1 = await out_for_delivery()
    await deliver(p1, ParcelStatus.RETURNED, collected=Decimal("0"), reason="Customer refused")
    result = await transfer_workflow.mark_return_to_merchant(db_session, p1, hub_id)
    ledger_before = len(await fetch.ledger(db_session))

    p2 = result.return_parcel_id
    await parcel_service.assign_to_rider(db_session, p2, hub_id, rider_id)
    await parcel_service.dispatch_for_delivery(db_session, p2, rider_id)
    outcome = await deliver(p2, ParcelStatus.DELIVERED)

    assert outcome.ledger_transaction_ids == []
    assert len(await fetch.ledger(db_session)) == ledger_before


@pytest.mark.asyncio
async def test_failed_delivery_return_path(db_session, out_for_delivery, deliver, hub_id):
    """FAILED_DELIVERY -> RETURNED_TO_HUB -> return parcel."""
    p1 = await out_for_delivery()
    await deliver(p1, ParcelStatus.FAILED_DELIVERY, reason="Address not found")
    await parcel_service.return_failed_to_hub(db_session, p1, hub_id)

    result = await transfer_workflow.mark_return_to_merchant(db_session, p1, hub_id)
    assert result.status == ParcelStatus.RETURNED_TO_HUB
    assert result.return_parcel_id is not None


def test_return_tracking_numbers():
    assert return_tracking_number("TRK-20260101-00001") == "RTN-TRK-20260101-00001"
    assert return_tracking_number("RTN-TRK-20260101-00001") == "RTN-TRK-20260101-00001-R2"
    assert return_tracking_number("RTN-TRK-20260101-00001-R2") == "RTN-TRK-20260101-00001-R3"
