"""
Parcel enumerations.
"""

import enum


class ParcelStatus(str, enum.Enum):
    """
    Parcel lifecycle status.

    Allowed edges live in domain/parcels/state_machine.py.
    """
    PENDING = "PENDING"
    OUT_FOR_PICKUP = "OUT_FOR_PICKUP"
    PICKED_UP = "PICKED_UP"
    IN_HUB = "IN_HUB"
    IN_TRANSIT = "IN_TRANSIT"
    ASSIGNED_TO_RIDER = "ASSIGNED_TO_RIDER"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"

    # Delivery outcomes
    DELIVERED = "DELIVERED"
    PARTIAL_DELIVERY = "PARTIAL_DELIVERY"
    EXCHANGE = "EXCHANGE"
    PAID_RETURN = "PAID_RETURN"
    RETURNED = "RETURNED"
    DELIVERY_RESCHEDULED = "DELIVERY_RESCHEDULED"
    FAILED_DELIVERY = "FAILED_DELIVERY"

    RETURNED_TO_HUB = "RETURNED_TO_HUB"
    RETURN_TO_MERCHANT = "RETURN_TO_MERCHANT"
    ASSIGNED_TO_THIRD_PARTY = "ASSIGNED_TO_THIRD_PARTY"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, enum.Enum):
    """Customer-side payment status."""
    UNPAID = "UNPAID"
    PAID = "PAID"
    COD_COLLECTED = "COD_COLLECTED"


class FinancialStatus(str, enum.Enum):
    """Merchant-side payout status."""
    PENDING = "PENDING"
    INVOICED = "INVOICED"
    PAID = "PAID"
    CLEARANCE_PENDING = "CLEARANCE_PENDING"
    CLEARANCE_INVOICED = "CLEARANCE_INVOICED"
    SETTLED = "SETTLED"


class VerificationStatus(str, enum.Enum):
    """Delivery verification (OTP / confirmation) status."""
    PENDING = "PENDING"
    OTP_SENT = "OTP_SENT"
    OTP_VERIFIED = "OTP_VERIFIED"
    OTP_FAILED = "OTP_FAILED"
    COMPLETED = "COMPLETED"


# Outcomes a rider may select at verification time
DELIVERY_OUTCOMES = frozenset({
    ParcelStatus.DELIVERED,
    ParcelStatus.PARTIAL_DELIVERY,
    ParcelStatus.EXCHANGE,
    ParcelStatus.PAID_RETURN,
    ParcelStatus.RETURNED,
    ParcelStatus.DELIVERY_RESCHEDULED,
    ParcelStatus.FAILED_DELIVERY,
})

# Outcomes that freeze cod_collected_amount and post to the merchant ledger
FINANCIAL_OUTCOMES = frozenset({
    ParcelStatus.DELIVERED,
    ParcelStatus.PARTIAL_DELIVERY,
    ParcelStatus.EXCHANGE,
    ParcelStatus.PAID_RETURN,
    ParcelStatus.RETURNED,
})
