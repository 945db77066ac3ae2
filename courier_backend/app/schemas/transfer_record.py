"""
Hub transfer record (cash remittance) schemas.
"""

from decimal import Decimal
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, field_validator
from courier_backend.app.models.billing_enums import ReviewStatus


class ProofReference(BaseModel):
    """Where the proof-of-transfer document was stored."""
    url: str = Field(..., min_length=1, max_length=1000)
    content_type: Optional[str] = Field(None, max_length=100)
    size: Optional[int] = Field(None, ge=0)


class TransferRecordCreate(BaseModel):
    transferred_amount: Decimal = Field(..., ge=Decimal("0.01"))
    admin_bank_name: str = Field(..., min_length=1, max_length=200)
    admin_bank_account_number: str = Field(..., min_length=1, max_length=100)
    admin_account_holder_name: str = Field(..., min_length=1, max_length=200)
    transaction_reference_id: Optional[str] = Field(None, max_length=200)
    transfer_date: datetime
    notes: Optional[str] = None
    proof: ProofReference


class TransferRecordUpdate(BaseModel):
    transferred_amount: Optional[Decimal] = Field(None, ge=Decimal("0.01"))
    admin_bank_name: Optional[str] = Field(None, min_length=1, max_length=200)
    admin_bank_account_number: Optional[str] = Field(None, min_length=1, max_length=100)
    admin_account_holder_name: Optional[str] = Field(None, min_length=1, max_length=200)
    transaction_reference_id: Optional[str] = Field(None, max_length=200)
    transfer_date: Optional[datetime] = None
    notes: Optional[str] = None
    proof: Optional[ProofReference] = None

    @field_validator(
        "transferred_amount", "admin_bank_name", "admin_bank_account_number",
        "admin_account_holder_name", "transfer_date", "proof",
    )
    @classmethod
    def required_fields_not_cleared(cls, value, info):
        # Omit a field to keep it; these columns cannot be emptied
        if value is None:
            raise ValueError(f"{info.field_name} cannot be cleared")
        return value


class ReviewDecisionRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)
    admin_notes: Optional[str] = Field(None, max_length=1000)


class TransferRecordResponse(BaseModel):
    id: int
    hub_id: int
    hub_manager_id: int
    transferred_amount: Decimal
    admin_bank_name: str
    admin_bank_account_number: str
    admin_account_holder_name: str
    transaction_reference_id: Optional[str]
    proof_file_url: str
    proof_file_type: Optional[str]
    proof_file_size: Optional[int]
    transfer_date: datetime
    notes: Optional[str]
    review_status: ReviewStatus
    reviewed_by: Optional[int]
    reviewed_at: Optional[datetime]
    review_reason: Optional[str]
    admin_notes: Optional[str]

    class Config:
        from_attributes = True
