"""
Rider settlement schemas.
"""

from decimal import Decimal
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field
from courier_backend.app.models.billing_enums import ReviewStatus, SettlementStatus


class SettlementRequest(BaseModel):
    cash_received: Decimal = Field(..., ge=0)
    notes: Optional[str] = Field(None, max_length=1000)
    adjustment_note: Optional[str] = Field(None, max_length=1000)


class OutcomeBreakdown(BaseModel):
    completed_deliveries: int = 0
    delivered_count: int = 0
    partial_delivery_count: int = 0
    exchange_count: int = 0
    paid_return_count: int = 0
    returned_count: int = 0


class SettlementCalculation(BaseModel):
    """Preview of what recording a settlement now would store."""
    rider_id: int
    hub_id: int
    period_start: datetime
    period_end: datetime
    total_collected_amount: Decimal
    previous_due_amount: Decimal
    total_due_to_hub: Decimal
    cash_received: Decimal
    discrepancy_amount: Decimal
    new_due_amount: Decimal
    settlement_status: SettlementStatus
    breakdown: OutcomeBreakdown


class RiderSettlementResponse(BaseModel):
    id: int
    rider_id: int
    hub_id: int
    hub_manager_id: int
    total_collected_amount: Decimal
    previous_due_amount: Decimal
    cash_received: Decimal
    discrepancy_amount: Decimal
    new_due_amount: Decimal
    completed_deliveries: int
    delivered_count: int
    partial_delivery_count: int
    exchange_count: int
    paid_return_count: int
    returned_count: int
    settlement_status: SettlementStatus
    period_start: datetime
    period_end: datetime
    settled_at: datetime
    notes: Optional[str]
    adjustment_note: Optional[str]
    review_status: ReviewStatus
    reviewed_by: Optional[int]
    reviewed_at: Optional[datetime]
    review_reason: Optional[str]

    class Config:
        from_attributes = True
