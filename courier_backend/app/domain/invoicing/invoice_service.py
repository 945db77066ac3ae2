"""
Merchant Invoice Generator.

Batches a merchant's finished, unpaid parcels into invoices and pays them
out through the merchant ledger.

Per parcel:
    collected = cod_collected_amount (or cod_amount when never recorded)
    due       = collected - delivery charge - return charge
using only the charges flagged applicable on the parcel.
"""

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from courier_backend.app.core.config import settings
from courier_backend.app.core.exceptions import NotFoundError, StateConflictError, ValidationError
from courier_backend.app.core.time_utils import utcnow
from courier_backend.app.db.session import atomic
from courier_backend.app.domain.finance.ledger_service import (
    INVOICED_BUCKET, PROCESSING_BUCKET, LedgerService, ZERO, delivery_charge_amount, to_money
)
from courier_backend.app.domain.parcels.state_machine import flush_parcel
from courier_backend.app.models.billing_enums import InvoiceStatus, ReferenceType, TransactionType
from courier_backend.app.models.merchant_invoice import MerchantInvoice
from courier_backend.app.models.parcel import Parcel
from courier_backend.app.models.parcel_enums import FINANCIAL_OUTCOMES, FinancialStatus, ParcelStatus
from courier_backend.app.schemas.invoice import ClearanceEntry, InvoicePaymentResult, InvoiceResponse
from courier_backend.app.services.audit import AuditAction, log_event

logger = logging.getLogger("courier.invoicing")

COUNT_FIELDS = {
    ParcelStatus.DELIVERED: "delivered_count",
    ParcelStatus.PARTIAL_DELIVERY: "partial_delivery_count",
    ParcelStatus.EXCHANGE: "exchange_count",
    ParcelStatus.PAID_RETURN: "paid_return_count",
    ParcelStatus.RETURNED: "returned_count",
}


def parcel_amounts(parcel: Parcel) -> Dict[str, Decimal]:
    collected = parcel.cod_collected_amount
    collected = to_money(parcel.cod_amount if collected is None else collected)
    delivery = delivery_charge_amount(parcel) if parcel.delivery_charge_applicable else ZERO
    returned = to_money(parcel.return_charge) if parcel.return_charge_applicable else ZERO
    return {
        "cod_amount": to_money(parcel.cod_amount),
        "collected": collected,
        "delivery_charge": delivery,
        "return_charge": returned,
        "due": collected - delivery - returned,
    }


def _eligibility_filters(include_invoiced: bool = False) -> list:
    filters = [
        Parcel.paid_to_merchant.is_(False),
        Parcel.is_return_parcel.is_(False),
        Parcel.status.in_(list(FINANCIAL_OUTCOMES)),
    ]
    if not include_invoiced:
        filters += [
            Parcel.invoice_id.is_(None),
            Parcel.financial_status == FinancialStatus.PENDING,
        ]
    return filters


def is_eligible(parcel: Parcel) -> bool:
    return (
        not parcel.paid_to_merchant
        and not parcel.is_return_parcel
        and parcel.invoice_id is None
        and parcel.financial_status == FinancialStatus.PENDING
        and parcel.status in FINANCIAL_OUTCOMES
    )


async def eligible_parcels(
    db: AsyncSession,
    merchant_id: Optional[int] = None,
    include_invoiced: bool = False,
) -> List[Parcel]:
    query = (
        select(Parcel)
        .where(*_eligibility_filters(include_invoiced))
        .order_by(Parcel.merchant_id, Parcel.id)
        .execution_options(populate_existing=True)
    )
    if merchant_id is not None:
        query = query.where(Parcel.merchant_id == merchant_id)
    return list((await db.execute(query)).scalars().all())


def _group_by_merchant(parcels: Iterable[Parcel]) -> Dict[int, List[Parcel]]:
    groups: Dict[int, List[Parcel]] = defaultdict(list)
    for parcel in parcels:
        groups[parcel.merchant_id].append(parcel)
    return groups


async def clearance_list(
    db: AsyncSession, merchant_id: Optional[int] = None, include_invoiced: bool = False
) -> List[ClearanceEntry]:
    """Read-only payable summary of unpaid finished parcels, per merchant."""
    parcels = await eligible_parcels(db, merchant_id, include_invoiced)
    entries = []
    for merchant, group in _group_by_merchant(parcels).items():
        amounts = [parcel_amounts(p) for p in group]
        entries.append(ClearanceEntry(
            merchant_id=merchant,
            parcel_count=len(group),
            parcel_ids=[p.id for p in group],
            total_cod_amount=sum((a["cod_amount"] for a in amounts), ZERO),
            total_collected=sum((a["collected"] for a in amounts), ZERO),
            total_delivery_charges=sum((a["delivery_charge"] for a in amounts), ZERO),
            total_return_charges=sum((a["return_charge"] for a in amounts), ZERO),
            due_amount=sum((a["due"] for a in amounts), ZERO),
        ))
    return entries


async def _invoice_number(db: AsyncSession) -> str:
    """INV-YYYYMM-NNNN, numbered per month."""
    prefix = f"{settings.invoice_prefix}-{utcnow():%Y%m}-"
    count = (await db.execute(
        select(func.count(MerchantInvoice.id)).where(MerchantInvoice.invoice_number.like(f"{prefix}%"))
    )).scalar_one()
    return f"{prefix}{count + 1:04d}"


async def _build_invoice(
    db: AsyncSession, merchant_id: int, parcels: List[Parcel], created_by: Optional[int]
) -> MerchantInvoice:
    invoice = MerchantInvoice(
        invoice_number=await _invoice_number(db),
        merchant_id=merchant_id,
        total_parcels=len(parcels),
        delivered_count=0,
        partial_delivery_count=0,
        exchange_count=0,
        paid_return_count=0,
        returned_count=0,
        total_cod_amount=ZERO,
        total_cod_collected=ZERO,
        total_delivery_charges=ZERO,
        total_return_charges=ZERO,
        payable_amount=ZERO,
        status=InvoiceStatus.UNPAID,
        created_by=created_by,
    )
    for parcel in parcels:
        amounts = parcel_amounts(parcel)
        field = COUNT_FIELDS[parcel.status]
        setattr(invoice, field, getattr(invoice, field) + 1)
        invoice.total_cod_amount += amounts["cod_amount"]
        invoice.total_cod_collected += amounts["collected"]
        invoice.total_delivery_charges += amounts["delivery_charge"]
        invoice.total_return_charges += amounts["return_charge"]
        invoice.payable_amount += amounts["due"]

    db.add(invoice)
    await db.flush()

    for parcel in parcels:
        parcel.invoice_id = invoice.id
        parcel.financial_status = FinancialStatus.INVOICED
    if parcels:
        await flush_parcel(db, parcels[0])

    await LedgerService.move_to_invoiced(db, merchant_id, invoice.payable_amount)
    await log_event(
        db, AuditAction.INVOICE_GENERATED, actor_id=created_by,
        entity_type="merchant_invoice", entity_id=invoice.id,
        metadata={
            "invoice_number": invoice.invoice_number,
            "merchant_id": merchant_id,
            "parcel_ids": [p.id for p in parcels],
            "payable_amount": str(invoice.payable_amount),
        },
    )
    logger.info(
        "Invoice %s: %d parcels, payable %s to merchant %s",
        invoice.invoice_number, len(parcels), invoice.payable_amount, merchant_id
    )
    return invoice


async def generate_invoices(
    db: AsyncSession, merchant_id: Optional[int] = None, created_by: Optional[int] = None
) -> List[MerchantInvoice]:
    """
    Invoice every eligible parcel, one invoice per merchant.

    Invoiced parcels drop out of eligibility, so an immediate second run
    returns an empty list.
    """
    async with atomic(db):
        parcels = await eligible_parcels(db, merchant_id)
        invoices = [
            await _build_invoice(db, merchant, group, created_by)
            for merchant, group in _group_by_merchant(parcels).items()
        ]
    return invoices


async def generate_invoice_for_parcels(
    db: AsyncSession, parcel_ids: List[int], created_by: Optional[int] = None
) -> MerchantInvoice:
    """
    Invoice an explicit parcel selection.

    Raises:
        NotFoundError: a parcel id does not exist
        ValidationError: parcels belong to different merchants
        StateConflictError: a parcel is unfinished, already invoiced or paid
    """
    unique_ids = sorted(set(parcel_ids))
    if not unique_ids:
        raise ValidationError("Select at least one parcel to invoice")

    async with atomic(db):
        result = await db.execute(
            select(Parcel).where(Parcel.id.in_(unique_ids)).execution_options(populate_existing=True)
        )
        parcels = list(result.scalars().all())
        missing = set(unique_ids) - {p.id for p in parcels}
        if missing:
            raise NotFoundError("Parcel", sorted(missing)[0])

        merchants = {p.merchant_id for p in parcels}
        if len(merchants) > 1:
            raise ValidationError(
                "All parcels on an invoice must belong to one merchant",
                details={"merchant_ids": sorted(merchants)}
            )

        ineligible = [p.id for p in parcels if not is_eligible(p)]
        if ineligible:
            raise StateConflictError(
                "Some parcels are unfinished, already invoiced or already paid",
                details={"parcel_ids": ineligible}
            )

        invoice = await _build_invoice(db, merchants.pop(), parcels, created_by)
    return invoice


async def _load_invoice(db: AsyncSession, invoice_id: int) -> MerchantInvoice:
    result = await db.execute(
        select(MerchantInvoice)
        .where(MerchantInvoice.id == invoice_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    invoice = result.scalar_one_or_none()
    if invoice is None:
        raise NotFoundError("Invoice", invoice_id)
    return invoice


async def _flush_invoice(db: AsyncSession, invoice: MerchantInvoice) -> None:
    try:
        await db.flush()
    except StaleDataError as e:
        raise StateConflictError(
            f"Invoice {invoice.invoice_number} was modified concurrently",
            details={"invoice_id": invoice.id}
        ) from e


async def mark_processing(db: AsyncSession, invoice_id: int, actor_id: Optional[int] = None) -> MerchantInvoice:
    """UNPAID -> PROCESSING while the payout is in flight."""
    async with atomic(db):
        invoice = await _load_invoice(db, invoice_id)
        if invoice.status != InvoiceStatus.UNPAID:
            raise StateConflictError(
                f"Invoice {invoice.invoice_number} is {invoice.status.value}, expected UNPAID",
                details={"invoice_id": invoice.id, "status": invoice.status.value}
            )
        invoice.status = InvoiceStatus.PROCESSING
        await _flush_invoice(db, invoice)
        await LedgerService.move_to_processing(db, invoice.merchant_id, invoice.payable_amount)
        await log_event(
            db, AuditAction.INVOICE_PROCESSING, actor_id=actor_id,
            entity_type="merchant_invoice", entity_id=invoice.id,
        )
    return invoice


async def mark_paid(
    db: AsyncSession,
    invoice_id: int,
    paid_by: int,
    payment_reference: str,
    notes: Optional[str] = None,
) -> InvoicePaymentResult:
    """
    Pay an invoice out to its merchant.

    In one transaction: every parcel on the invoice is flagged paid, the
    invoice is stamped PAID and an INVOICE_PAID ledger row takes the payable
    out of the bucket the invoice sits in. A negative payable (charges
    exceeding collections) is posted as a CREDIT settling what the merchant
    owed.

    Raises:
        StateConflictError: invoice already PAID
    """
    async with atomic(db):
        invoice = await _load_invoice(db, invoice_id)
        if invoice.status == InvoiceStatus.PAID:
            raise StateConflictError(
                f"Invoice {invoice.invoice_number} is already paid",
                details={"invoice_id": invoice.id, "paid_at": invoice.paid_at.isoformat() if invoice.paid_at else None}
            )
        bucket = PROCESSING_BUCKET if invoice.status == InvoiceStatus.PROCESSING else INVOICED_BUCKET

        now = utcnow()
        parcels = list((await db.execute(
            select(Parcel).where(Parcel.invoice_id == invoice.id).execution_options(populate_existing=True)
        )).scalars().all())
        for parcel in parcels:
            parcel.paid_to_merchant = True
            parcel.paid_to_merchant_at = now
            parcel.paid_amount = parcel_amounts(parcel)["due"]
            parcel.financial_status = FinancialStatus.PAID
        if parcels:
            await flush_parcel(db, parcels[0])

        payable = to_money(invoice.payable_amount)
        transaction = await LedgerService.post_transaction(
            db,
            invoice.merchant_id,
            TransactionType.DEBIT if payable >= ZERO else TransactionType.CREDIT,
            abs(payable),
            ReferenceType.INVOICE_PAID,
            reference_id=invoice.id,
            reference_code=invoice.invoice_number,
            description=f"Payout for invoice {invoice.invoice_number}",
            created_by=paid_by,
            metadata={"payment_reference": payment_reference},
            bucket=bucket,
        )

        invoice.status = InvoiceStatus.PAID
        invoice.paid_at = now
        invoice.paid_by = paid_by
        invoice.payment_reference = payment_reference
        invoice.notes = notes
        await _flush_invoice(db, invoice)

        await log_event(
            db, AuditAction.INVOICE_PAID, actor_id=paid_by,
            entity_type="merchant_invoice", entity_id=invoice.id,
            metadata={"payment_reference": payment_reference, "ledger_transaction_id": transaction.id},
        )

    logger.info("Invoice %s paid (%s)", invoice.invoice_number, payable)
    return InvoicePaymentResult(
        invoice=InvoiceResponse.model_validate(invoice),
        ledger_transaction_id=transaction.id,
        merchant_balance=transaction.balance_after,
        parcels_paid=len(parcels),
    )
