"""
Merchant invoice model.

A point-in-time batch of a merchant's eligible parcels.
"""

from sqlalchemy import Column, Integer, Numeric, DateTime, Enum, String, Text
from sqlalchemy.sql import func
from courier_backend.app.core.time_utils import utcnow
from courier_backend.app.db.session import Base
from courier_backend.app.models.billing_enums import InvoiceStatus


class MerchantInvoice(Base):
    __tablename__ = "merchant_invoices"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    invoice_number = Column(String(50), unique=True, nullable=False, index=True)
    merchant_id = Column(Integer, nullable=False, index=True)

    # Parcel counts
    total_parcels = Column(Integer, default=0, nullable=False)
    delivered_count = Column(Integer, default=0, nullable=False)
    partial_delivery_count = Column(Integer, default=0, nullable=False)
    exchange_count = Column(Integer, default=0, nullable=False)
    paid_return_count = Column(Integer, default=0, nullable=False)
    returned_count = Column(Integer, default=0, nullable=False)

    # Totals
    total_cod_amount = Column(Numeric(14, 2), default=0, nullable=False)
    total_cod_collected = Column(Numeric(14, 2), default=0, nullable=False)
    total_delivery_charges = Column(Numeric(14, 2), default=0, nullable=False)
    total_return_charges = Column(Numeric(14, 2), default=0, nullable=False)
    payable_amount = Column(Numeric(14, 2), default=0, nullable=False)

    status = Column(Enum(InvoiceStatus), default=InvoiceStatus.UNPAID, nullable=False, index=True)
    created_by = Column(Integer, nullable=True)

    # Payment
    paid_at = Column(DateTime(timezone=True), nullable=True)
    paid_by = Column(Integer, nullable=True)
    payment_reference = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<MerchantInvoice(id={self.id}, number='{self.invoice_number}', status='{self.status.value}')>"
