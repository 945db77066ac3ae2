"""
Concurrency Tests.

Validates that competing workflows on the same parcel or rider are
serialised: the Redis workflow lock turns the second caller away, and the
version check rejects writes made from stale reads.
"""

import pytest
from decimal import Decimal

from courier_backend.app.core.exceptions import StateConflictError, TransientStoreError
from courier_backend.app.core.reliability import run_with_retry
from courier_backend.app.domain.finance import balance_operations
from courier_backend.app.domain.finance.ledger_service import LedgerService
from courier_backend.app.domain.parcels import parcel_service
from courier_backend.app.domain.parcels.state_machine import flush_parcel
from courier_backend.app.domain.review import finalize_review, flush_review
from courier_backend.app.domain.settlement import rider_settlement_service
from courier_backend.app.domain.transfers import remittance_service
from courier_backend.app.models.billing_enums import ReviewStatus
from courier_backend.app.models.enums import UserRole
from courier_backend.app.models.hub_transfer_record import HubTransferRecord
from courier_backend.app.models.rider_settlement import RiderSettlement
from courier_backend.app.models.parcel import Parcel
from courier_backend.app.models.parcel_enums import ParcelStatus
from courier_backend.app.services.parcel_lock import (
    acquire_parcel_lock, parcel_lock_key, parcel_workflow_lock, release_parcel_lock
)
from courier_backend.app.schemas.transfer_record import ProofReference, TransferRecordCreate

from conftest import ADMIN_USER_ID, HUB_MANAGER_USER_ID, MERCHANT_ID


@pytest.mark.asyncio
async def test_second_workflow_is_turned_away(redis_client):
    """Two workflows on the same parcel: the second one gets a conflict."""
    async with parcel_workflow_lock(redis_client, 42):
        with pytest.raises(StateConflictError):
            async with parcel_workflow_lock(redis_client, 42):
                pass
        # Other parcels are unaffected
        async with parcel_workflow_lock(redis_client, 43):
            pass

    assert await redis_client.exists(parcel_lock_key(42)) == 0


@pytest.mark.asyncio
async def test_lock_released_when_workflow_fails(redis_client):
    with pytest.raises(RuntimeError):
        async with parcel_workflow_lock(redis_client, 7):
            raise RuntimeError("boom")

    async with parcel_workflow_lock(redis_client, 7):
        pass


@pytest.mark.asyncio
async def test_expired_lock_is_not_released_by_old_owner(redis_client):
    token = await acquire_parcel_lock(redis_client, 9)
    # Lease expired and another workflow took it
    redis_client.store[parcel_lock_key(9)] = "someone-else"

    assert await release_parcel_lock(redis_client, 9, token) is False
    assert redis_client.store[parcel_lock_key(9)] == "someone-else"


@pytest.mark.asyncio
async def test_lock_store_outage_is_transient(mocker):
    from redis.exceptions import ConnectionError as RedisConnectionError

    broken = mocker.AsyncMock()
    broken.set.side_effect = RedisConnectionError("connection refused")

    with pytest.raises(TransientStoreError):
        await acquire_parcel_lock(broken, 1)


@pytest.mark.asyncio
async def test_stale_parcel_write_is_rejected(session_factory, make_parcel, hub_id, fetch):
    """A write based on an outdated read loses to the one that committed first."""
    parcel_id = await make_parcel()

    async with session_factory() as stale_session:
        stale = await stale_session.get(Parcel, parcel_id)
        assert stale.status == ParcelStatus.PENDING

        async with session_factory() as fresh_session:
            await parcel_service.mark_received(fresh_session, parcel_id, hub_id)

        stale.transfer_notes = "written from an old read"
        with pytest.raises(StateConflictError) as exc:
            await flush_parcel(stale_session, stale)
        assert exc.value.details["reason"] == "stale"
        await stale_session.rollback()

    async with session_factory() as check:
        parcel = await fetch.parcel(check, parcel_id)
        assert parcel.status == ParcelStatus.IN_HUB
        assert parcel.transfer_notes is None


@pytest.mark.asyncio
async def test_double_assignment_conflicts(db_session, make_parcel, hub_id, rider_id):
    """Assigning an already-assigned parcel is a conflict, not an overwrite."""
    from courier_backend.app.models.rider import Rider

    parcel_id = await make_parcel()
    await parcel_service.mark_received(db_session, parcel_id, hub_id)
    await parcel_service.assign_to_rider(db_session, parcel_id, hub_id, rider_id)

    second = Rider(hub_id=hub_id, full_name="Second Rider")
    db_session.add(second)
    await db_session.commit()
    second_id = second.id

    with pytest.raises(StateConflictError):
        await parcel_service.assign_to_rider(db_session, parcel_id, hub_id, second_id)


@pytest.mark.asyncio
async def test_outcome_applied_once(db_session, out_for_delivery, deliver, fetch):
    """Replaying the same delivery outcome cannot post twice."""
    parcel_id = await out_for_delivery()
    await deliver(parcel_id, ParcelStatus.DELIVERED, collected=Decimal("500"))

    with pytest.raises(StateConflictError):
        await deliver(parcel_id, ParcelStatus.DELIVERED, collected=Decimal("500"))

    assert len(await fetch.ledger(db_session)) == 2


async def _remittance(db_session, hub_id) -> int:
    from datetime import datetime

    record = await remittance_service.create_record(
        db_session, hub_id, HUB_MANAGER_USER_ID,
        TransferRecordCreate(
            transferred_amount=Decimal("8000"),
            admin_bank_name="City Bank",
            admin_bank_account_number="1234567890",
            admin_account_holder_name="Courier Ltd",
            transfer_date=datetime(2026, 3, 2, 9, 0),
            proof=ProofReference(url="https://files.example.com/proof/8000.jpg"),
        ),
    )
    return record.id


@pytest.mark.asyncio
async def test_review_from_stale_read_cannot_overwrite(session_factory, db_session, hub_id):
    """Two admins review the same record: the later one gets a conflict."""
    record_id = await _remittance(db_session, hub_id)

    async with session_factory() as stale_session:
        stale = await stale_session.get(HubTransferRecord, record_id)
        assert stale.review_status == ReviewStatus.PENDING

        async with session_factory() as fresh_session:
            await remittance_service.approve_record(fresh_session, record_id, ADMIN_USER_ID, UserRole.ADMIN)

        finalize_review(
            stale, "Transfer record", ReviewStatus.REJECTED, ADMIN_USER_ID + 1, UserRole.ADMIN,
            reason="Slip is unreadable",
        )
        with pytest.raises(StateConflictError) as exc:
            await flush_review(stale_session, stale, "Transfer record")
        assert exc.value.details["reason"] == "stale"
        await stale_session.rollback()

    async with session_factory() as check:
        record = await check.get(HubTransferRecord, record_id)
        assert record.review_status == ReviewStatus.APPROVED
        assert record.reviewed_by == ADMIN_USER_ID
        assert record.review_reason is None


@pytest.mark.asyncio
async def test_edit_from_stale_read_cannot_touch_reviewed_record(session_factory, db_session, hub_id):
    record_id = await _remittance(db_session, hub_id)

    async with session_factory() as stale_session:
        stale = await stale_session.get(HubTransferRecord, record_id)

        async with session_factory() as fresh_session:
            await remittance_service.approve_record(fresh_session, record_id, ADMIN_USER_ID, UserRole.ADMIN)

        stale.transferred_amount = Decimal("1")
        with pytest.raises(StateConflictError):
            await flush_review(stale_session, stale, "Transfer record")
        await stale_session.rollback()

        # Deleting from the same stale read is refused too
        stale = await stale_session.get(HubTransferRecord, record_id)
        async with session_factory() as fresh_session:
            record = await fresh_session.get(HubTransferRecord, record_id)
            record.admin_notes = "Matched with bank statement"
            await fresh_session.commit()

        await stale_session.delete(stale)
        with pytest.raises(StateConflictError):
            await flush_review(stale_session, stale, "Transfer record")
        await stale_session.rollback()

    async with session_factory() as check:
        record = await check.get(HubTransferRecord, record_id)
        assert record is not None
        assert record.transferred_amount == Decimal("8000.00")


@pytest.mark.asyncio
async def test_settlement_review_from_stale_read_conflicts(session_factory, db_session, hub_id, rider_id):
    settlement = await rider_settlement_service.record_settlement(
        db_session, rider_id, hub_id, HUB_MANAGER_USER_ID, Decimal("0")
    )
    settlement_id = settlement.id

    async with session_factory() as stale_session:
        stale = await stale_session.get(RiderSettlement, settlement_id)

        async with session_factory() as fresh_session:
            await rider_settlement_service.reject_settlement(
                fresh_session, settlement_id, ADMIN_USER_ID, UserRole.ADMIN, reason="Cash count mismatch"
            )

        finalize_review(stale, "Rider settlement", ReviewStatus.APPROVED, ADMIN_USER_ID, UserRole.ADMIN)
        with pytest.raises(StateConflictError):
            await flush_review(stale_session, stale, "Rider settlement")
        await stale_session.rollback()

    async with session_factory() as check:
        settlement = await check.get(RiderSettlement, settlement_id)
        assert settlement.review_status == ReviewStatus.REJECTED


@pytest.mark.asyncio
async def test_concurrent_balance_write_retried_with_intact_chain(mocker, session_factory, db_session):
    """
    Another writer commits to the merchant's balance between our read and
    our write. The write fails as transient and succeeds on retry.
    """
    await balance_operations.adjust_merchant_balance(db_session, MERCHANT_ID, Decimal("100"), "Opening credit")

    real_check_chain = LedgerService.check_chain
    interleaved = {"done": False}

    async def check_then_let_competitor_commit(db, finance):
        await real_check_chain(db, finance)
        if not interleaved["done"]:
            interleaved["done"] = True
            async with session_factory() as competitor:
                await balance_operations.adjust_merchant_balance(
                    competitor, MERCHANT_ID, Decimal("50"), "Competing credit"
                )

    mocker.patch.object(LedgerService, "check_chain", side_effect=check_then_let_competitor_commit)

    failures = []

    async def late_adjustment():
        try:
            return await balance_operations.adjust_merchant_balance(
                db_session, MERCHANT_ID, Decimal("25"), "Late credit"
            )
        except TransientStoreError as e:
            failures.append(e)
            raise

    await run_with_retry(late_adjustment, attempts=3, backoff_base=0)

    assert len(failures) == 1
    report = await LedgerService.verify_ledger(db_session, MERCHANT_ID)
    assert report["consistent"] is True
    assert report["transaction_count"] == 3
    overview = await LedgerService.get_overview(db_session, MERCHANT_ID)
    assert overview.current_balance == Decimal("175.00")


@pytest.mark.asyncio
async def test_concurrent_settlements_for_one_rider(mocker, session_factory, db_session, hub_id, rider_id):
    """Two hub managers settle the same rider at once: the later one conflicts."""
    real_calculate = rider_settlement_service._calculate
    interleaved = {"done": False}

    async def calculate_then_let_competitor_commit(db, rider, hub, cash_received, now):
        calc = await real_calculate(db, rider, hub, cash_received, now)
        if not interleaved["done"]:
            interleaved["done"] = True
            async with session_factory() as competitor:
                await rider_settlement_service.record_settlement(
                    competitor, rider_id, hub_id, HUB_MANAGER_USER_ID, Decimal("0")
                )
        return calc

    mocker.patch.object(rider_settlement_service, "_calculate", side_effect=calculate_then_let_competitor_commit)

    with pytest.raises(StateConflictError) as exc:
        await rider_settlement_service.record_settlement(
            db_session, rider_id, hub_id, HUB_MANAGER_USER_ID, Decimal("0")
        )
    assert exc.value.details["rider_id"] == rider_id

    async with session_factory() as check:
        from sqlalchemy import func, select

        count = (await check.execute(
            select(func.count()).select_from(RiderSettlement).where(RiderSettlement.rider_id == rider_id)
        )).scalar_one()
        assert count == 1
