"""
Merchant Ledger Service (Domain Logic).

The only writer of merchant_finances and merchant_finance_transactions.
Every balance change is an appended ledger row plus the matching projection
update, flushed together inside the caller's transaction.

Projection buckets:
    current_balance = pending_balance + invoiced_balance + processing_balance

Parcel postings land in ``pending``; invoice generation moves money
pending -> invoiced, the PROCESSING step moves invoiced -> processing and
the INVOICE_PAID posting takes it out of whichever bucket the invoice sits in.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func, desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from courier_backend.app.core.exceptions import (
    LedgerConsistencyError, TransientStoreError, ValidationError
)
from courier_backend.app.core.time_utils import utcnow
from courier_backend.app.models.billing_enums import ReferenceType, TransactionType
from courier_backend.app.models.merchant_finance import MerchantFinance
from courier_backend.app.models.merchant_finance_transaction import MerchantFinanceTransaction
from courier_backend.app.models.parcel import Parcel
from courier_backend.app.models.parcel_enums import FINANCIAL_OUTCOMES, ParcelStatus
from courier_backend.app.schemas.finance import MerchantFinanceOverview

logger = logging.getLogger("courier.ledger")

ZERO = Decimal("0.00")
CENTS = Decimal("0.01")

PENDING_BUCKET = "pending_balance"
INVOICED_BUCKET = "invoiced_balance"
PROCESSING_BUCKET = "processing_balance"
BUCKETS = (PENDING_BUCKET, INVOICED_BUCKET, PROCESSING_BUCKET)

OUTCOME_REFERENCES: Dict[ParcelStatus, ReferenceType] = {
    ParcelStatus.DELIVERED: ReferenceType.PARCEL_DELIVERED,
    ParcelStatus.PARTIAL_DELIVERY: ReferenceType.PARCEL_PARTIAL_DELIVERY,
    ParcelStatus.EXCHANGE: ReferenceType.PARCEL_EXCHANGE,
    ParcelStatus.PAID_RETURN: ReferenceType.PARCEL_PAID_RETURN,
    ParcelStatus.RETURNED: ReferenceType.PARCEL_RETURNED,
}

# Outcomes where the parcel (or part of it) travels back and a return charge applies
RETURN_CHARGE_OUTCOMES = frozenset({
    ParcelStatus.PARTIAL_DELIVERY,
    ParcelStatus.EXCHANGE,
    ParcelStatus.PAID_RETURN,
    ParcelStatus.RETURNED,
})

# Lifetime total fed by each reference type
LIFETIME_TOTALS: Dict[ReferenceType, str] = {
    ReferenceType.PARCEL_DELIVERED: "total_cod_collected",
    ReferenceType.PARCEL_PARTIAL_DELIVERY: "total_cod_collected",
    ReferenceType.PARCEL_EXCHANGE: "total_cod_collected",
    ReferenceType.PARCEL_PAID_RETURN: "total_cod_collected",
    ReferenceType.PARCEL_RETURNED: "total_cod_collected",
    ReferenceType.DELIVERY_CHARGE: "total_delivery_charges",
    ReferenceType.RETURN_CHARGE: "total_return_charges",
}


def to_money(value: Any) -> Decimal:
    """Normalise a number to a 2-decimal Decimal."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def delivery_charge_amount(parcel: Parcel) -> Decimal:
    """The charge the operator keeps for carrying a parcel."""
    total = to_money(parcel.total_charge)
    if total > ZERO:
        return total
    return to_money(parcel.delivery_charge) + to_money(parcel.weight_charge) + to_money(parcel.cod_charge)


def signed(transaction_type: TransactionType, amount: Decimal) -> Decimal:
    return amount if transaction_type == TransactionType.CREDIT else -amount


class LedgerService:

    @staticmethod
    async def lock_finance(db: AsyncSession, merchant_id: int) -> MerchantFinance:
        """
        Read the merchant's projection row with a row lock, creating it on
        first use.

        Raises:
            TransientStoreError: another transaction created the row first
        """
        result = await db.execute(
            select(MerchantFinance)
            .where(MerchantFinance.merchant_id == merchant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        finance = result.scalar_one_or_none()
        if finance is not None:
            return finance

        finance = MerchantFinance(
            merchant_id=merchant_id,
            current_balance=ZERO,
            pending_balance=ZERO,
            invoiced_balance=ZERO,
            processing_balance=ZERO,
            hold_amount=ZERO,
            total_earned=ZERO,
            total_withdrawn=ZERO,
            total_delivery_charges=ZERO,
            total_return_charges=ZERO,
            total_cod_collected=ZERO,
            total_parcels_delivered=0,
            total_parcels_returned=0,
            credit_limit=ZERO,
            credit_used=ZERO,
            transaction_count=0,
        )
        db.add(finance)
        try:
            await db.flush()
        except IntegrityError as e:
            raise TransientStoreError(
                "Merchant finance row created concurrently",
                details={"merchant_id": merchant_id}
            ) from e
        return finance

    @staticmethod
    async def check_chain(db: AsyncSession, finance: MerchantFinance) -> None:
        """
        Compare the projection with the tail of the merchant's ledger.

        Raises:
            LedgerConsistencyError: the last row's balance_after or sequence
                does not match the projection
        """
        result = await db.execute(
            select(MerchantFinanceTransaction)
            .where(MerchantFinanceTransaction.merchant_id == finance.merchant_id)
            .order_by(desc(MerchantFinanceTransaction.sequence))
            .limit(1)
        )
        last = result.scalar_one_or_none()

        current = to_money(finance.current_balance)
        expected_sequence = last.sequence if last else 0
        expected_balance = to_money(last.balance_after) if last else ZERO

        if expected_sequence != finance.transaction_count or expected_balance != current:
            details = {
                "projected_balance": str(current),
                "ledger_balance": str(expected_balance),
                "projected_sequence": finance.transaction_count,
                "ledger_sequence": expected_sequence,
            }
            logger.critical(
                "Ledger chain mismatch for merchant %s", finance.merchant_id, extra=details
            )
            raise LedgerConsistencyError(
                finance.merchant_id,
                "Merchant balance does not match the ledger; writes halted",
                details=details,
            )

    @staticmethod
    async def post_transaction(
        db: AsyncSession,
        merchant_id: int,
        transaction_type: TransactionType,
        amount: Any,
        reference_type: ReferenceType,
        reference_id: Optional[int] = None,
        reference_code: Optional[str] = None,
        description: Optional[str] = None,
        created_by: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        bucket: str = PENDING_BUCKET,
        finance: Optional[MerchantFinance] = None,
    ) -> MerchantFinanceTransaction:
        """
        Append one ledger row and apply it to the projection.

        Args:
            db: Database session (transaction owned by the caller)
            merchant_id: Merchant whose ledger is written
            transaction_type: CREDIT or DEBIT
            amount: Non-negative amount; the sign comes from transaction_type
            reference_type: Why the money moved
            bucket: Projection bucket absorbing the movement
            finance: Already locked projection row, if the caller holds one

        Returns:
            The new MerchantFinanceTransaction

        Raises:
            ValidationError: negative amount or unknown bucket
            LedgerConsistencyError: projection and ledger disagree
            TransientStoreError: projection changed under us
        """
        amount = to_money(amount)
        if amount < ZERO:
            raise ValidationError(
                "Ledger amounts must be non-negative",
                details={"amount": str(amount), "reference_type": reference_type.value}
            )
        if bucket not in BUCKETS:
            raise ValidationError(f"Unknown balance bucket '{bucket}'")

        if finance is None:
            finance = await LedgerService.lock_finance(db, merchant_id)
        await LedgerService.check_chain(db, finance)

        delta = signed(transaction_type, amount)
        balance_before = to_money(finance.current_balance)
        balance_after = balance_before + delta
        now = utcnow()

        transaction = MerchantFinanceTransaction(
            merchant_id=merchant_id,
            sequence=finance.transaction_count + 1,
            transaction_type=transaction_type,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            reference_type=reference_type,
            reference_id=reference_id,
            reference_code=reference_code,
            description=description,
            created_by=created_by,
            meta_data=metadata,
            created_at=now,
        )
        db.add(transaction)

        finance.current_balance = balance_after
        setattr(finance, bucket, to_money(getattr(finance, bucket)) + delta)
        finance.transaction_count = finance.transaction_count + 1
        finance.last_transaction_at = now
        LedgerService._apply_lifetime_totals(finance, transaction, now)

        await LedgerService._flush(db, merchant_id)

        logger.info(
            "Ledger %s %s %s for merchant %s (%s -> %s)",
            transaction_type.value, amount, reference_type.value, merchant_id,
            balance_before, balance_after
        )
        return transaction

    @staticmethod
    def _apply_lifetime_totals(
        finance: MerchantFinance,
        transaction: MerchantFinanceTransaction,
        now,
    ) -> None:
        reference_type = transaction.reference_type
        amount = transaction.amount

        total_field = LIFETIME_TOTALS.get(reference_type)
        if total_field:
            setattr(finance, total_field, to_money(getattr(finance, total_field)) + amount)

        if reference_type == ReferenceType.PARCEL_RETURNED:
            finance.total_parcels_returned = finance.total_parcels_returned + 1
        elif reference_type in OUTCOME_REFERENCES.values():
            finance.total_parcels_delivered = finance.total_parcels_delivered + 1

        if transaction.transaction_type == TransactionType.DEBIT and reference_type in (
            ReferenceType.INVOICE_PAID, ReferenceType.WITHDRAWAL
        ):
            finance.total_withdrawn = to_money(finance.total_withdrawn) + amount
            finance.last_withdrawal_at = now
            if reference_type == ReferenceType.INVOICE_PAID:
                finance.total_earned = to_money(finance.total_earned) + amount

    @staticmethod
    async def _flush(db: AsyncSession, merchant_id: int) -> None:
        try:
            await db.flush()
        except (StaleDataError, IntegrityError) as e:
            raise TransientStoreError(
                "Merchant balance changed concurrently",
                details={"merchant_id": merchant_id}
            ) from e

    @staticmethod
    async def post_parcel_outcome(
        db: AsyncSession,
        parcel: Parcel,
        outcome: ParcelStatus,
        collected_amount: Decimal,
        created_by: Optional[int] = None,
    ) -> List[MerchantFinanceTransaction]:
        """
        Post the financial consequences of a delivery outcome.

        Order: one CREDIT for the collected COD (even when zero), then the
        delivery charge DEBIT, then the return charge DEBIT where applicable.
        Zero charges are not posted.

        Returns:
            Posted transactions in order
        """
        if outcome not in FINANCIAL_OUTCOMES:
            raise ValidationError(f"{outcome.value} has no ledger consequences")

        finance = await LedgerService.lock_finance(db, parcel.merchant_id)
        common = {
            "reference_id": parcel.id,
            "reference_code": parcel.tracking_number,
            "created_by": created_by,
            "finance": finance,
        }

        postings = [
            await LedgerService.post_transaction(
                db, parcel.merchant_id, TransactionType.CREDIT, collected_amount,
                OUTCOME_REFERENCES[outcome],
                description=f"COD collected for {parcel.tracking_number} ({outcome.value})",
                metadata={"outcome": outcome.value, "expected_cod": str(to_money(parcel.cod_amount))},
                **common
            )
        ]

        if parcel.delivery_charge_applicable:
            charge = delivery_charge_amount(parcel)
            if charge > ZERO:
                postings.append(await LedgerService.post_transaction(
                    db, parcel.merchant_id, TransactionType.DEBIT, charge,
                    ReferenceType.DELIVERY_CHARGE,
                    description=f"Delivery charge for {parcel.tracking_number}",
                    **common
                ))

        if parcel.return_charge_applicable:
            return_charge = to_money(parcel.return_charge)
            if return_charge > ZERO:
                postings.append(await LedgerService.post_transaction(
                    db, parcel.merchant_id, TransactionType.DEBIT, return_charge,
                    ReferenceType.RETURN_CHARGE,
                    description=f"Return charge for {parcel.tracking_number}",
                    **common
                ))

        return postings

    @staticmethod
    async def adjust_balance(
        db: AsyncSession,
        merchant_id: int,
        amount: Any,
        reason: str,
        created_by: Optional[int] = None,
    ) -> MerchantFinanceTransaction:
        """
        Manual correction. Positive amounts credit the merchant, negative
        amounts debit them.
        """
        amount = to_money(amount)
        if amount == ZERO:
            raise ValidationError("Adjustment amount cannot be zero")
        if not reason or not reason.strip():
            raise ValidationError("Adjustment reason is required")

        if amount > ZERO:
            transaction_type, reference_type = TransactionType.CREDIT, ReferenceType.ADJUSTMENT_CREDIT
        else:
            transaction_type, reference_type = TransactionType.DEBIT, ReferenceType.ADJUSTMENT_DEBIT

        return await LedgerService.post_transaction(
            db, merchant_id, transaction_type, abs(amount), reference_type,
            description=reason.strip(), created_by=created_by
        )

    @staticmethod
    async def move_between_buckets(
        db: AsyncSession,
        merchant_id: int,
        amount: Any,
        source: str,
        target: str,
    ) -> MerchantFinance:
        """
        Move money between projection buckets. current_balance is unchanged,
        so no ledger row is written.
        """
        if source not in BUCKETS or target not in BUCKETS:
            raise ValidationError("Unknown balance bucket")
        amount = to_money(amount)

        finance = await LedgerService.lock_finance(db, merchant_id)
        await LedgerService.check_chain(db, finance)
        setattr(finance, source, to_money(getattr(finance, source)) - amount)
        setattr(finance, target, to_money(getattr(finance, target)) + amount)
        await LedgerService._flush(db, merchant_id)
        return finance

    @staticmethod
    async def move_to_invoiced(db: AsyncSession, merchant_id: int, amount: Any) -> MerchantFinance:
        return await LedgerService.move_between_buckets(db, merchant_id, amount, PENDING_BUCKET, INVOICED_BUCKET)

    @staticmethod
    async def move_to_processing(db: AsyncSession, merchant_id: int, amount: Any) -> MerchantFinance:
        return await LedgerService.move_between_buckets(db, merchant_id, amount, INVOICED_BUCKET, PROCESSING_BUCKET)

    @staticmethod
    async def hold_balance(db: AsyncSession, merchant_id: int, amount: Any) -> MerchantFinance:
        """Reserve part of the available balance against withdrawal."""
        amount = to_money(amount)
        if amount <= ZERO:
            raise ValidationError("Hold amount must be positive")

        finance = await LedgerService.lock_finance(db, merchant_id)
        available = to_money(finance.current_balance) - to_money(finance.hold_amount)
        if amount > available:
            raise ValidationError(
                "Insufficient available balance to hold",
                details={"available": str(max(available, ZERO)), "requested": str(amount)}
            )
        finance.hold_amount = to_money(finance.hold_amount) + amount
        await LedgerService._flush(db, merchant_id)
        return finance

    @staticmethod
    async def release_hold(db: AsyncSession, merchant_id: int, amount: Any) -> MerchantFinance:
        amount = to_money(amount)
        if amount <= ZERO:
            raise ValidationError("Release amount must be positive")

        finance = await LedgerService.lock_finance(db, merchant_id)
        if amount > to_money(finance.hold_amount):
            raise ValidationError(
                "Cannot release more than the held amount",
                details={"held": str(to_money(finance.hold_amount)), "requested": str(amount)}
            )
        finance.hold_amount = to_money(finance.hold_amount) - amount
        await LedgerService._flush(db, merchant_id)
        return finance

    @staticmethod
    async def get_finance(db: AsyncSession, merchant_id: int) -> Optional[MerchantFinance]:
        result = await db.execute(
            select(MerchantFinance).where(MerchantFinance.merchant_id == merchant_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_overview(db: AsyncSession, merchant_id: int) -> MerchantFinanceOverview:
        finance = await LedgerService.get_finance(db, merchant_id)
        return build_overview(merchant_id, finance)

    @staticmethod
    async def get_history(
        db: AsyncSession,
        merchant_id: int,
        page: int = 1,
        limit: int = 50,
        reference_type: Optional[ReferenceType] = None,
    ) -> Tuple[List[MerchantFinanceTransaction], int, Dict[str, Decimal]]:
        """
        Page through a merchant's ledger, newest first.

        Returns:
            (transactions, total_count, {"total_credits": .., "total_debits": ..})
        """
        filters = [MerchantFinanceTransaction.merchant_id == merchant_id]
        if reference_type is not None:
            filters.append(MerchantFinanceTransaction.reference_type == reference_type)

        total = (await db.execute(
            select(func.count(MerchantFinanceTransaction.id)).where(*filters)
        )).scalar_one()

        rows = (await db.execute(
            select(MerchantFinanceTransaction)
            .where(*filters)
            .order_by(desc(MerchantFinanceTransaction.sequence))
            .offset((page - 1) * limit)
            .limit(limit)
        )).scalars().all()

        sums = (await db.execute(
            select(MerchantFinanceTransaction.transaction_type, func.sum(MerchantFinanceTransaction.amount))
            .where(*filters)
            .group_by(MerchantFinanceTransaction.transaction_type)
        )).all()
        by_type = {transaction_type: to_money(amount) for transaction_type, amount in sums}
        summary = {
            "total_credits": by_type.get(TransactionType.CREDIT, ZERO),
            "total_debits": by_type.get(TransactionType.DEBIT, ZERO),
        }
        return list(rows), total, summary

    @staticmethod
    async def replay_balance(db: AsyncSession, merchant_id: int) -> Tuple[Decimal, int]:
        """
        Rebuild a merchant's balance from zero by walking the ledger in
        sequence order, checking every row's before/after pair on the way.

        Returns:
            (replayed_balance, transaction_count)

        Raises:
            LedgerConsistencyError: a row does not chain onto its predecessor
        """
        result = await db.execute(
            select(MerchantFinanceTransaction)
            .where(MerchantFinanceTransaction.merchant_id == merchant_id)
            .order_by(MerchantFinanceTransaction.sequence)
        )
        running = ZERO
        count = 0
        for row in result.scalars():
            count += 1
            expected_after = running + signed(row.transaction_type, to_money(row.amount))
            if (
                row.sequence != count
                or to_money(row.balance_before) != running
                or to_money(row.balance_after) != expected_after
            ):
                details = {
                    "transaction_id": row.id,
                    "sequence": row.sequence,
                    "expected_before": str(running),
                    "recorded_before": str(to_money(row.balance_before)),
                    "recorded_after": str(to_money(row.balance_after)),
                }
                logger.critical("Broken ledger chain for merchant %s", merchant_id, extra=details)
                raise LedgerConsistencyError(merchant_id, "Ledger chain is broken", details=details)
            running = expected_after
        return running, count

    @staticmethod
    async def verify_ledger(db: AsyncSession, merchant_id: int) -> Dict[str, Any]:
        """
        Replay the ledger and compare it with the projection.

        Raises:
            LedgerConsistencyError: replayed balance differs from current_balance
        """
        replayed, count = await LedgerService.replay_balance(db, merchant_id)
        finance = await LedgerService.get_finance(db, merchant_id)
        projected = to_money(finance.current_balance) if finance else ZERO

        if replayed != projected:
            details = {"replayed_balance": str(replayed), "projected_balance": str(projected)}
            logger.critical("Ledger replay mismatch for merchant %s", merchant_id, extra=details)
            raise LedgerConsistencyError(
                merchant_id, "Replayed ledger does not match the merchant balance", details=details
            )

        return {
            "merchant_id": merchant_id,
            "transaction_count": count,
            "replayed_balance": replayed,
            "projected_balance": projected,
            "consistent": True,
        }


def build_overview(merchant_id: int, finance: Optional[MerchantFinance]) -> MerchantFinanceOverview:
    """Balance summary; merchants without a ledger yet read as all zeros."""
    if finance is None:
        return MerchantFinanceOverview(merchant_id=merchant_id)

    current = to_money(finance.current_balance)
    hold = to_money(finance.hold_amount)
    credit_limit = to_money(finance.credit_limit)
    credit_used = to_money(finance.credit_used)
    return MerchantFinanceOverview(
        merchant_id=merchant_id,
        current_balance=current,
        pending_balance=to_money(finance.pending_balance),
        invoiced_balance=to_money(finance.invoiced_balance),
        processing_balance=to_money(finance.processing_balance),
        hold_amount=hold,
        available_for_withdrawal=max(current - hold, ZERO),
        total_earned=to_money(finance.total_earned),
        total_withdrawn=to_money(finance.total_withdrawn),
        total_delivery_charges=to_money(finance.total_delivery_charges),
        total_return_charges=to_money(finance.total_return_charges),
        total_cod_collected=to_money(finance.total_cod_collected),
        total_parcels_delivered=finance.total_parcels_delivered,
        total_parcels_returned=finance.total_parcels_returned,
        credit_limit=credit_limit,
        credit_used=credit_used,
        credit_available=max(credit_limit - credit_used, ZERO),
        last_transaction_at=finance.last_transaction_at,
    )
