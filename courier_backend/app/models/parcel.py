"""
Parcel database model.

A parcel is the unit of work moving merchant → hub → rider → customer.
Status changes go through domain/parcels/state_machine.py only.
"""

from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Enum, Boolean, Text
from sqlalchemy.sql import func
from courier_backend.app.core.time_utils import utcnow
from courier_backend.app.db.session import Base
from courier_backend.app.models.parcel_enums import ParcelStatus, PaymentStatus, FinancialStatus


class Parcel(Base):
    """
    Parcel model.

    ``version`` is an optimistic counter: an UPDATE issued from a stale read
    matches zero rows and is rejected.
    Return parcels are new rows pointing back at their source through
    ``original_parcel_id``; the source never points forward.
    """
    __tablename__ = "parcels"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    tracking_number = Column(String(50), unique=True, nullable=False, index=True)

    # Parties
    merchant_id = Column(Integer, nullable=False, index=True)
    store_id = Column(Integer, nullable=True, index=True)
    customer_id = Column(Integer, nullable=True)
    customer_name = Column(String(200), nullable=True)
    customer_phone = Column(String(30), nullable=True)
    assigned_rider_id = Column(Integer, ForeignKey('riders.id'), nullable=True, index=True)

    # Route / custody
    pickup_address = Column(String(500), nullable=True)
    delivery_address = Column(String(500), nullable=True)
    pickup_coverage_area_id = Column(Integer, nullable=True)
    delivery_coverage_area_id = Column(Integer, nullable=True)
    current_hub_id = Column(Integer, ForeignKey('hubs.id'), nullable=True, index=True)
    origin_hub_id = Column(Integer, ForeignKey('hubs.id'), nullable=True)
    destination_hub_id = Column(Integer, ForeignKey('hubs.id'), nullable=True, index=True)
    is_inter_hub_transfer = Column(Boolean, default=False, nullable=False)
    transfer_notes = Column(Text, nullable=True)
    return_initiated_at = Column(DateTime(timezone=True), nullable=True)
    third_party_provider = Column(String(200), nullable=True)

    # Commercial
    product_price = Column(Numeric(12, 2), default=0, nullable=False)
    product_weight = Column(Numeric(10, 3), default=0, nullable=False)
    delivery_charge = Column(Numeric(12, 2), default=0, nullable=False)
    weight_charge = Column(Numeric(12, 2), default=0, nullable=False)
    cod_charge = Column(Numeric(12, 2), default=0, nullable=False)
    total_charge = Column(Numeric(12, 2), default=0, nullable=False)
    return_charge = Column(Numeric(12, 2), default=0, nullable=False)
    is_cod = Column(Boolean, default=False, nullable=False)
    cod_amount = Column(Numeric(12, 2), default=0, nullable=False)
    cod_collected_amount = Column(Numeric(12, 2), nullable=True)

    # Lifecycle
    status = Column(Enum(ParcelStatus), default=ParcelStatus.PENDING, nullable=False, index=True)
    payment_status = Column(Enum(PaymentStatus), default=PaymentStatus.UNPAID, nullable=False)
    financial_status = Column(Enum(FinancialStatus), default=FinancialStatus.PENDING, nullable=False, index=True)
    delivery_reason = Column(Text, nullable=True)

    picked_up_at = Column(DateTime(timezone=True), nullable=True)
    assigned_at = Column(DateTime(timezone=True), nullable=True)
    rider_accepted_at = Column(DateTime(timezone=True), nullable=True)
    out_for_delivery_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    transferred_at = Column(DateTime(timezone=True), nullable=True)
    received_at_destination_hub = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    # Return linkage
    is_return_parcel = Column(Boolean, default=False, nullable=False)
    original_parcel_id = Column(Integer, ForeignKey('parcels.id'), nullable=True, index=True)

    # Merchant payout
    delivery_charge_applicable = Column(Boolean, default=True, nullable=False)
    return_charge_applicable = Column(Boolean, default=False, nullable=False)
    invoice_id = Column(Integer, ForeignKey('merchant_invoices.id'), nullable=True, index=True)
    paid_to_merchant = Column(Boolean, default=False, nullable=False, index=True)
    paid_to_merchant_at = Column(DateTime(timezone=True), nullable=True)
    paid_amount = Column(Numeric(12, 2), nullable=True)
    clearance_required = Column(Boolean, default=False, nullable=False)
    clearance_done = Column(Boolean, default=False, nullable=False)

    version = Column(Integer, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<Parcel(id={self.id}, tracking='{self.tracking_number}', status='{self.status.value}')>"
