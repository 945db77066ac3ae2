"""
Delivery verification model.

Written when a confirmed delivery attempt is applied to a parcel. The rider
settlement engine sums ``collected_amount`` over COMPLETED rows.
"""

from sqlalchemy import Column, Integer, Numeric, DateTime, ForeignKey, Enum, Text
from sqlalchemy.sql import func
from courier_backend.app.core.time_utils import utcnow
from courier_backend.app.db.session import Base
from courier_backend.app.models.parcel_enums import ParcelStatus, VerificationStatus


class DeliveryVerification(Base):
    __tablename__ = "delivery_verifications"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    parcel_id = Column(Integer, ForeignKey('parcels.id'), nullable=False, index=True)
    rider_id = Column(Integer, ForeignKey('riders.id'), nullable=False, index=True)

    selected_status = Column(Enum(ParcelStatus), nullable=False)
    collected_amount = Column(Numeric(12, 2), default=0, nullable=False)
    expected_cod_amount = Column(Numeric(12, 2), default=0, nullable=False)
    reason = Column(Text, nullable=True)

    verification_status = Column(Enum(VerificationStatus), default=VerificationStatus.PENDING, nullable=False, index=True)
    delivery_completed_at = Column(DateTime(timezone=True), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<DeliveryVerification(id={self.id}, parcel_id={self.parcel_id}, status='{self.selected_status.value}')>"
