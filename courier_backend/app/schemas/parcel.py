"""
Parcel Pydantic schemas.

Request bodies for parcel workflows and the result object every parcel
mutation returns.
"""

from decimal import Decimal
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List
from courier_backend.app.models.parcel_enums import ParcelStatus


class ParcelCreate(BaseModel):
    """Booking request for a new parcel."""
    merchant_id: int
    store_id: Optional[int] = None
    pickup_hub_id: int = Field(..., description="Hub responsible for the store's pickups")
    customer_id: Optional[int] = None
    customer_name: Optional[str] = Field(None, max_length=200)
    customer_phone: Optional[str] = Field(None, max_length=30)
    pickup_address: Optional[str] = Field(None, max_length=500)
    delivery_address: str = Field(..., min_length=1, max_length=500)
    pickup_coverage_area_id: Optional[int] = None
    delivery_coverage_area_id: Optional[int] = None
    product_price: Decimal = Field(default=Decimal("0"), ge=0)
    product_weight: Decimal = Field(default=Decimal("0"), ge=0)
    delivery_charge: Decimal = Field(default=Decimal("0"), ge=0)
    weight_charge: Decimal = Field(default=Decimal("0"), ge=0)
    cod_charge: Decimal = Field(default=Decimal("0"), ge=0)
    return_charge: Decimal = Field(default=Decimal("0"), ge=0)
    is_cod: bool = False
    cod_amount: Decimal = Field(default=Decimal("0"), ge=0)


class DeliveryOutcome(BaseModel):
    """
    Output of the delivery verification flow: the only input allowed to
    move a parcel out of OUT_FOR_DELIVERY.
    """
    parcel_id: int
    selected_status: ParcelStatus
    collected_amount: Optional[Decimal] = None
    expected_cod_amount: Optional[Decimal] = None
    reason: Optional[str] = Field(None, max_length=1000)


class DeliveryOutcomeRequest(BaseModel):
    selected_status: ParcelStatus
    collected_amount: Optional[Decimal] = None
    expected_cod_amount: Optional[Decimal] = None
    reason: Optional[str] = Field(None, max_length=1000)


class AssignRiderRequest(BaseModel):
    rider_id: int


class StartPickupRequest(BaseModel):
    rider_id: int


class ReasonRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class TransferRequest(BaseModel):
    destination_hub_id: int
    notes: Optional[str] = Field(None, max_length=1000)


class ThirdPartyRequest(BaseModel):
    provider: str = Field(..., min_length=1, max_length=100)


class NotesRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=1000)


class ParcelTransitionResult(BaseModel):
    """What changed on a parcel, plus any money that moved with it."""
    parcel_id: int
    tracking_number: str
    previous_status: Optional[ParcelStatus] = None
    status: ParcelStatus
    current_hub_id: Optional[int] = None
    assigned_rider_id: Optional[int] = None
    ledger_transaction_ids: List[int] = Field(default_factory=list)
    merchant_balance: Optional[Decimal] = None
    return_parcel_id: Optional[int] = None
    return_tracking_number: Optional[str] = None


class ParcelResponse(BaseModel):
    """Schema for parcel response."""
    id: int
    tracking_number: str
    merchant_id: int
    status: ParcelStatus
    current_hub_id: Optional[int]
    origin_hub_id: Optional[int]
    destination_hub_id: Optional[int]
    assigned_rider_id: Optional[int]
    is_cod: bool
    cod_amount: Decimal
    cod_collected_amount: Optional[Decimal]
    total_charge: Decimal
    is_return_parcel: bool
    original_parcel_id: Optional[int]
    created_at: datetime

    class Config:
        from_attributes = True
