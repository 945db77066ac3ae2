"""
Merchant ledger tests.

Ledger replay, chain-break detection and the manual balance controls.
"""

import pytest
from decimal import Decimal
from sqlalchemy import update

from courier_backend.app.core.exceptions import LedgerConsistencyError, ValidationError
from courier_backend.app.domain.finance import balance_operations
from courier_backend.app.domain.finance.ledger_service import LedgerService, to_money
from courier_backend.app.models.billing_enums import ReferenceType, TransactionType
from courier_backend.app.models.merchant_finance import MerchantFinance
from courier_backend.app.models.merchant_finance_transaction import MerchantFinanceTransaction
from courier_backend.app.models.parcel_enums import ParcelStatus

from conftest import ADMIN_USER_ID, MERCHANT_ID, OTHER_MERCHANT_ID


def test_to_money_rounds_half_up():
    assert to_money("10.005") == Decimal("10.01")
    assert to_money(None) == Decimal("0.00")
    assert to_money(3) == Decimal("3.00")


@pytest.mark.asyncio
async def test_replay_reproduces_balance(db_session, out_for_delivery, deliver):
    """Replaying every row from zero lands on current_balance."""
    first = await out_for_delivery()
    second = await out_for_delivery(return_charge=Decimal("40"))
    third = await out_for_delivery(cod_amount=Decimal("1200"), delivery_charge=Decimal("120"))

    await deliver(first, ParcelStatus.DELIVERED, collected=Decimal("500"))
    await deliver(second, ParcelStatus.EXCHANGE, collected=Decimal("150"), reason="Size swap")
    await deliver(third, ParcelStatus.PARTIAL_DELIVERY, collected=Decimal("700"), reason="One item kept")
    await balance_operations.adjust_merchant_balance(db_session, MERCHANT_ID, Decimal("-25"), "Damaged packaging")

    replayed, count = await LedgerService.replay_balance(db_session, MERCHANT_ID)
    report = await LedgerService.verify_ledger(db_session, MERCHANT_ID)

    # 440 + (150 - 60 - 40) + (700 - 120) - 25
    assert replayed == Decimal("1045.00")
    assert count == 8
    assert report["consistent"] is True
    assert report["projected_balance"] == replayed


@pytest.mark.asyncio
async def test_ledgers_are_per_merchant(db_session, out_for_delivery, deliver):
    mine = await out_for_delivery()
    theirs = await out_for_delivery(merchant_id=OTHER_MERCHANT_ID, cod_amount=Decimal("300"))
    await deliver(mine, ParcelStatus.DELIVERED, collected=Decimal("500"))
    await deliver(theirs, ParcelStatus.DELIVERED, collected=Decimal("300"))

    mine_overview = await LedgerService.get_overview(db_session, MERCHANT_ID)
    theirs_overview = await LedgerService.get_overview(db_session, OTHER_MERCHANT_ID)
    assert mine_overview.current_balance == Decimal("440.00")
    assert theirs_overview.current_balance == Decimal("240.00")

    rows, total, _ = await LedgerService.get_history(db_session, OTHER_MERCHANT_ID)
    assert total == 2
    assert [r.sequence for r in rows] == [2, 1]


@pytest.mark.asyncio
async def test_projection_drift_halts_writes(db_session, out_for_delivery, deliver, fetch):
    """A tampered projection is detected before the next append and nothing is written."""
    parcel_id = await out_for_delivery()
    await deliver(parcel_id, ParcelStatus.DELIVERED, collected=Decimal("500"))

    await db_session.execute(
        update(MerchantFinance)
        .where(MerchantFinance.merchant_id == MERCHANT_ID)
        .values(current_balance=Decimal("9999.00"))
    )
    await db_session.commit()

    with pytest.raises(LedgerConsistencyError) as exc:
        await balance_operations.adjust_merchant_balance(db_session, MERCHANT_ID, Decimal("10"), "Goodwill")
    assert exc.value.status_code == 500
    assert exc.value.details["ledger_balance"] == "440.00"

    with pytest.raises(LedgerConsistencyError):
        await LedgerService.verify_ledger(db_session, MERCHANT_ID)

    assert len(await fetch.ledger(db_session)) == 2


@pytest.mark.asyncio
async def test_broken_chain_detected_on_replay(db_session, out_for_delivery, deliver):
    parcel_id = await out_for_delivery()
    await deliver(parcel_id, ParcelStatus.DELIVERED, collected=Decimal("500"))

    await db_session.execute(
        update(MerchantFinanceTransaction)
        .where(MerchantFinanceTransaction.sequence == 2)
        .values(balance_before=Decimal("480.00"))
    )
    await db_session.commit()

    with pytest.raises(LedgerConsistencyError) as exc:
        await LedgerService.replay_balance(db_session, MERCHANT_ID)
    assert exc.value.details["sequence"] == 2


@pytest.mark.asyncio
async def test_adjustments_credit_and_debit(db_session, fetch):
    credit = await balance_operations.adjust_merchant_balance(
        db_session, MERCHANT_ID, Decimal("100"), "Compensation", actor_id=ADMIN_USER_ID
    )
    debit = await balance_operations.adjust_merchant_balance(
        db_session, MERCHANT_ID, Decimal("-30"), "Lost parcel recovery", actor_id=ADMIN_USER_ID
    )

    assert credit.transaction_type == TransactionType.CREDIT
    assert credit.reference_type == ReferenceType.ADJUSTMENT_CREDIT
    assert debit.transaction_type == TransactionType.DEBIT
    assert debit.reference_type == ReferenceType.ADJUSTMENT_DEBIT
    assert debit.amount == Decimal("30.00")
    assert debit.balance_after == Decimal("70.00")
    assert debit.created_by == ADMIN_USER_ID


@pytest.mark.asyncio
async def test_adjustment_validation(db_session):
    with pytest.raises(ValidationError):
        await balance_operations.adjust_merchant_balance(db_session, MERCHANT_ID, Decimal("0"), "Nothing")
    with pytest.raises(ValidationError):
        await balance_operations.adjust_merchant_balance(db_session, MERCHANT_ID, Decimal("5"), "  ")


@pytest.mark.asyncio
async def test_negative_amounts_never_reach_the_ledger(db_session):
    with pytest.raises(ValidationError):
        await LedgerService.post_transaction(
            db_session, MERCHANT_ID, TransactionType.CREDIT, Decimal("-1"), ReferenceType.REFUND
        )
    await db_session.rollback()


@pytest.mark.asyncio
async def test_hold_and_release(db_session):
    await balance_operations.adjust_merchant_balance(db_session, MERCHANT_ID, Decimal("500"), "Opening balance")

    overview = await balance_operations.hold_merchant_balance(db_session, MERCHANT_ID, Decimal("200"), "Dispute")
    assert overview.hold_amount == Decimal("200.00")
    assert overview.available_for_withdrawal == Decimal("300.00")

    with pytest.raises(ValidationError):
        await balance_operations.hold_merchant_balance(db_session, MERCHANT_ID, Decimal("301"))

    with pytest.raises(ValidationError):
        await balance_operations.release_merchant_hold(db_session, MERCHANT_ID, Decimal("250"))

    overview = await balance_operations.release_merchant_hold(db_session, MERCHANT_ID, Decimal("200"))
    assert overview.hold_amount == Decimal("0.00")
    assert overview.available_for_withdrawal == Decimal("500.00")
    # Holds move no money
    assert overview.current_balance == Decimal("500.00")


@pytest.mark.asyncio
async def test_overview_for_unknown_merchant_is_zero(db_session):
    overview = await LedgerService.get_overview(db_session, 999)
    assert overview.current_balance == Decimal("0")
    assert overview.available_for_withdrawal == Decimal("0")


@pytest.mark.asyncio
async def test_history_filters_and_summary(db_session, out_for_delivery, deliver):
    parcel_id = await out_for_delivery()
    await deliver(parcel_id, ParcelStatus.DELIVERED, collected=Decimal("500"))

    rows, total, summary = await LedgerService.get_history(
        db_session, MERCHANT_ID, reference_type=ReferenceType.DELIVERY_CHARGE
    )
    assert total == 1
    assert rows[0].amount == Decimal("60.00")
    assert summary == {"total_credits": Decimal("0.00"), "total_debits": Decimal("60.00")}
