"""
Billing enumerations: merchant ledger, invoices, rider settlements and
remittance review.
"""

import enum


class TransactionType(str, enum.Enum):
    """Ledger transaction direction, from the merchant's point of view."""
    DEBIT = "DEBIT"  # Reduces what the operator owes the merchant
    CREDIT = "CREDIT"  # Increases what the operator owes the merchant


class ReferenceType(str, enum.Enum):
    """What a ledger transaction was posted for."""
    PARCEL_DELIVERED = "PARCEL_DELIVERED"
    PARCEL_PARTIAL_DELIVERY = "PARCEL_PARTIAL_DELIVERY"
    PARCEL_EXCHANGE = "PARCEL_EXCHANGE"
    PARCEL_PAID_RETURN = "PARCEL_PAID_RETURN"
    PARCEL_RETURNED = "PARCEL_RETURNED"
    DELIVERY_CHARGE = "DELIVERY_CHARGE"
    RETURN_CHARGE = "RETURN_CHARGE"
    INVOICE_PAID = "INVOICE_PAID"
    WITHDRAWAL = "WITHDRAWAL"
    ADJUSTMENT_CREDIT = "ADJUSTMENT_CREDIT"
    ADJUSTMENT_DEBIT = "ADJUSTMENT_DEBIT"
    CLEARANCE = "CLEARANCE"
    REFUND = "REFUND"


class InvoiceStatus(str, enum.Enum):
    """Merchant invoice status: UNPAID -> PROCESSING -> PAID."""
    UNPAID = "UNPAID"
    PROCESSING = "PROCESSING"
    PAID = "PAID"


class SettlementStatus(str, enum.Enum):
    """Rider settlement outcome."""
    PENDING = "PENDING"  # No cash handed over
    PARTIAL = "PARTIAL"  # Some cash handed over, dues remain
    COMPLETED = "COMPLETED"  # Nothing left due


class ReviewStatus(str, enum.Enum):
    """Admin review of a submitted remittance or settlement."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
