"""
Merchant finance schemas.
"""

from decimal import Decimal
from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field
from courier_backend.app.models.billing_enums import ReferenceType, TransactionType


class LedgerTransactionResponse(BaseModel):
    id: int
    merchant_id: int
    sequence: int
    transaction_type: TransactionType
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    reference_type: ReferenceType
    reference_id: Optional[int]
    reference_code: Optional[str]
    description: Optional[str]
    created_by: Optional[int]
    created_at: datetime

    class Config:
        from_attributes = True


class MerchantFinanceOverview(BaseModel):
    merchant_id: int
    current_balance: Decimal = Decimal("0.00")
    pending_balance: Decimal = Decimal("0.00")
    invoiced_balance: Decimal = Decimal("0.00")
    processing_balance: Decimal = Decimal("0.00")
    hold_amount: Decimal = Decimal("0.00")
    available_for_withdrawal: Decimal = Decimal("0.00")
    total_earned: Decimal = Decimal("0.00")
    total_withdrawn: Decimal = Decimal("0.00")
    total_delivery_charges: Decimal = Decimal("0.00")
    total_return_charges: Decimal = Decimal("0.00")
    total_cod_collected: Decimal = Decimal("0.00")
    total_parcels_delivered: int = 0
    total_parcels_returned: int = 0
    credit_limit: Decimal = Decimal("0.00")
    credit_used: Decimal = Decimal("0.00")
    credit_available: Decimal = Decimal("0.00")
    last_transaction_at: Optional[datetime] = None


class LedgerHistoryResponse(BaseModel):
    items: List[LedgerTransactionResponse]
    total: int
    page: int
    limit: int
    summary: Dict[str, Decimal]


class LedgerVerificationResponse(BaseModel):
    merchant_id: int
    transaction_count: int
    replayed_balance: Decimal
    projected_balance: Decimal
    consistent: bool


class BalanceAdjustmentRequest(BaseModel):
    amount: Decimal = Field(..., description="Positive credits the merchant, negative debits")
    reason: str = Field(..., min_length=1, max_length=500)


class HoldRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    reason: Optional[str] = Field(None, max_length=500)
