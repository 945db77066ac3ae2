"""
Rider cash settlement tests.
"""

import pytest
from decimal import Decimal

from courier_backend.app.core.exceptions import (
    CustodyMismatchError, InsufficientPermissionsError, StateConflictError, ValidationError
)
from courier_backend.app.domain.settlement import rider_settlement_service as settlement_service
from courier_backend.app.domain.settlement.rider_settlement_service import compute_settlement_figures
from courier_backend.app.models.billing_enums import ReviewStatus, SettlementStatus
from courier_backend.app.models.enums import UserRole
from courier_backend.app.models.parcel_enums import ParcelStatus

from conftest import ADMIN_USER_ID, HUB_MANAGER_USER_ID


def test_partial_payment_carries_due_forward():
    """previous 100 + collected 2000, paid 1800 -> discrepancy -300, due 300."""
    figures = compute_settlement_figures(Decimal("2000"), Decimal("100"), Decimal("1800"))

    assert figures.total_due_to_hub == Decimal("2100.00")
    assert figures.discrepancy_amount == Decimal("-300.00")
    assert figures.new_due_amount == Decimal("300.00")
    assert figures.settlement_status == SettlementStatus.PARTIAL


@pytest.mark.parametrize("collected,previous,cash", [
    ("0", "0", "0"),
    ("500", "0", "500"),
    ("500", "0", "650"),
    ("1234.56", "10.44", "0"),
    ("0", "75", "20"),
])
def test_settlement_formula(collected, previous, cash):
    collected, previous, cash = Decimal(collected), Decimal(previous), Decimal(cash)
    figures = compute_settlement_figures(collected, previous, cash)

    assert figures.new_due_amount == max(collected + previous - cash, Decimal("0"))
    assert figures.discrepancy_amount == cash - (collected + previous)


def test_settlement_status():
    assert compute_settlement_figures(500, 0, 500).settlement_status == SettlementStatus.COMPLETED
    # Overpayment is not credited forward
    overpaid = compute_settlement_figures(500, 0, 600)
    assert overpaid.settlement_status == SettlementStatus.COMPLETED
    assert overpaid.new_due_amount == Decimal("0.00")
    assert overpaid.discrepancy_amount == Decimal("100.00")
    assert compute_settlement_figures(500, 0, 0).settlement_status == SettlementStatus.PENDING


def test_negative_inputs_rejected():
    with pytest.raises(ValidationError):
        compute_settlement_figures(100, 0, -1)


@pytest.mark.asyncio
async def test_calculate_counts_completed_verifications(db_session, out_for_delivery, deliver, hub_id, rider_id):
    first = await out_for_delivery()
    second = await out_for_delivery(cod_amount=Decimal("800"))
    third = await out_for_delivery()
    await deliver(first, ParcelStatus.DELIVERED, collected=Decimal("500"))
    await deliver(second, ParcelStatus.PARTIAL_DELIVERY, collected=Decimal("300"), reason="Half order")
    await deliver(third, ParcelStatus.DELIVERY_RESCHEDULED, reason="Customer away")

    calc = await settlement_service.calculate_settlement(db_session, rider_id, hub_id, cash_received=Decimal("700"))

    assert calc.total_collected_amount == Decimal("800.00")
    assert calc.previous_due_amount == Decimal("0.00")
    assert calc.new_due_amount == Decimal("100.00")
    assert calc.settlement_status == SettlementStatus.PARTIAL
    assert calc.breakdown.completed_deliveries == 3
    assert calc.breakdown.delivered_count == 1
    assert calc.breakdown.partial_delivery_count == 1


@pytest.mark.asyncio
async def test_recorded_settlement_closes_the_period(db_session, out_for_delivery, deliver, hub_id, rider_id):
    """Dues carry into the next settlement; settled deliveries are not counted twice."""
    first = await out_for_delivery()
    await deliver(first, ParcelStatus.DELIVERED, collected=Decimal("500"))

    settlement = await settlement_service.record_settlement(
        db_session, rider_id, hub_id, HUB_MANAGER_USER_ID, Decimal("400"), notes="Short by 100"
    )
    assert settlement.new_due_amount == Decimal("100.00")
    assert settlement.discrepancy_amount == Decimal("-100.00")
    assert settlement.settlement_status == SettlementStatus.PARTIAL
    assert settlement.review_status == ReviewStatus.PENDING
    assert settlement.delivered_count == 1

    second = await out_for_delivery(cod_amount=Decimal("300"))
    await deliver(second, ParcelStatus.DELIVERED, collected=Decimal("300"))

    calc = await settlement_service.calculate_settlement(db_session, rider_id, hub_id, cash_received=Decimal("400"))
    assert calc.previous_due_amount == Decimal("100.00")
    assert calc.total_collected_amount == Decimal("300.00")
    assert calc.period_start == settlement.settled_at
    assert calc.new_due_amount == Decimal("0.00")
    assert calc.settlement_status == SettlementStatus.COMPLETED
    assert calc.breakdown.completed_deliveries == 1


@pytest.mark.asyncio
async def test_settlement_scoped_to_riders_hub(db_session, other_rider_id, hub_id):
    with pytest.raises(CustodyMismatchError):
        await settlement_service.calculate_settlement(db_session, other_rider_id, hub_id)
    with pytest.raises(CustodyMismatchError):
        await settlement_service.record_settlement(db_session, other_rider_id, hub_id, HUB_MANAGER_USER_ID, Decimal("0"))


@pytest.mark.asyncio
async def test_settlement_review(db_session, hub_id, rider_id):
    settlement = await settlement_service.record_settlement(
        db_session, rider_id, hub_id, HUB_MANAGER_USER_ID, Decimal("0")
    )
    settlement_id = settlement.id

    with pytest.raises(InsufficientPermissionsError):
        await settlement_service.approve_settlement(db_session, settlement_id, HUB_MANAGER_USER_ID, UserRole.HUB_MANAGER)

    approved = await settlement_service.approve_settlement(db_session, settlement_id, ADMIN_USER_ID, UserRole.ADMIN)
    assert approved.review_status == ReviewStatus.APPROVED

    with pytest.raises(StateConflictError):
        await settlement_service.reject_settlement(
            db_session, settlement_id, ADMIN_USER_ID, UserRole.ADMIN, reason="Changed my mind"
        )
