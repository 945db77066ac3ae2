"""
Merchant invoice schemas.
"""

from decimal import Decimal
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field
from courier_backend.app.models.billing_enums import InvoiceStatus


class GenerateInvoicesRequest(BaseModel):
    """Either a merchant to batch, an explicit parcel selection, or neither (all merchants)."""
    merchant_id: Optional[int] = None
    parcel_ids: Optional[List[int]] = Field(None, min_length=1)


class MarkPaidRequest(BaseModel):
    payment_reference: str = Field(..., min_length=1, max_length=100)
    notes: Optional[str] = Field(None, max_length=1000)


class ClearanceEntry(BaseModel):
    """Per-merchant payable summary of unpaid parcels."""
    merchant_id: int
    parcel_count: int
    parcel_ids: List[int]
    total_cod_amount: Decimal
    total_collected: Decimal
    total_delivery_charges: Decimal
    total_return_charges: Decimal
    due_amount: Decimal


class InvoiceResponse(BaseModel):
    id: int
    invoice_number: str
    merchant_id: int
    total_parcels: int
    delivered_count: int
    partial_delivery_count: int
    exchange_count: int
    paid_return_count: int
    returned_count: int
    total_cod_amount: Decimal
    total_cod_collected: Decimal
    total_delivery_charges: Decimal
    total_return_charges: Decimal
    payable_amount: Decimal
    status: InvoiceStatus
    paid_at: Optional[datetime]
    paid_by: Optional[int]
    payment_reference: Optional[str]
    notes: Optional[str]

    class Config:
        from_attributes = True


class InvoicePaymentResult(BaseModel):
    invoice: InvoiceResponse
    ledger_transaction_id: int
    merchant_balance: Decimal
    parcels_paid: int
