"""
Admin Merchant Invoice API Endpoints.

Clearance list, invoice generation and the PROCESSING / PAID steps of the
merchant payout.
"""

from typing import List, Optional
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from courier_backend.app.db.session import get_db
from courier_backend.app.core.dependencies import IdentityContext, require_scope
from courier_backend.app.core.reliability import run_with_retry
from courier_backend.app.models.enums import UserRole
from courier_backend.app.schemas.invoice import (
    ClearanceEntry,
    GenerateInvoicesRequest,
    InvoicePaymentResult,
    InvoiceResponse,
    MarkPaidRequest,
)
from courier_backend.app.domain.invoicing import invoice_service

router = APIRouter(prefix="/admin/invoices", tags=["Admin - Invoices"])
admin_only = require_scope(UserRole.ADMIN)


@router.get("/clearance", response_model=List[ClearanceEntry])
async def clearance_list(
    merchant_id: Optional[int] = Query(None),
    include_invoiced: bool = Query(False, description="Also list parcels already on an unpaid invoice"),
    identity: IdentityContext = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    return await invoice_service.clearance_list(db, merchant_id, include_invoiced)


@router.post("/generate", response_model=List[InvoiceResponse], status_code=status.HTTP_201_CREATED)
async def generate_invoices(
    body: GenerateInvoicesRequest,
    identity: IdentityContext = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    """
    Invoice every eligible parcel, one invoice per merchant.

    With ``parcel_ids`` only those parcels are invoiced (they must share a
    merchant). Running it again with nothing eligible returns an empty list.
    """
    if body.parcel_ids:
        invoice = await run_with_retry(lambda: invoice_service.generate_invoice_for_parcels(
            db, body.parcel_ids, created_by=identity.user_id
        ))
        invoices = [invoice]
    else:
        invoices = await run_with_retry(lambda: invoice_service.generate_invoices(
            db, body.merchant_id, created_by=identity.user_id
        ))
    return [InvoiceResponse.model_validate(invoice) for invoice in invoices]


@router.post("/{invoice_id}/processing", response_model=InvoiceResponse)
async def mark_processing(
    invoice_id: int,
    identity: IdentityContext = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    invoice = await run_with_retry(lambda: invoice_service.mark_processing(
        db, invoice_id, actor_id=identity.user_id
    ))
    return InvoiceResponse.model_validate(invoice)


@router.post("/{invoice_id}/pay", response_model=InvoicePaymentResult)
async def mark_paid(
    invoice_id: int,
    body: MarkPaidRequest,
    identity: IdentityContext = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    """Pay out an invoice. Paying an invoice twice answers 409."""
    return await run_with_retry(lambda: invoice_service.mark_paid(
        db, invoice_id, identity.user_id, body.payment_reference, notes=body.notes
    ))
