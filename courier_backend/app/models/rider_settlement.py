"""
Rider settlement model.

Snapshot of a cash hand-over between a rider and their hub manager.
Figures, period and settlement_status never change after insert.
"""

from sqlalchemy import Column, Integer, Numeric, DateTime, ForeignKey, Enum, Text
from sqlalchemy.sql import func
from courier_backend.app.core.time_utils import utcnow
from courier_backend.app.db.session import Base
from courier_backend.app.models.billing_enums import SettlementStatus
from courier_backend.app.models.review import ReviewMixin


class RiderSettlement(ReviewMixin, Base):
    __tablename__ = "rider_settlements"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    rider_id = Column(Integer, ForeignKey('riders.id'), nullable=False, index=True)
    hub_id = Column(Integer, ForeignKey('hubs.id'), nullable=False, index=True)
    hub_manager_id = Column(Integer, nullable=False)

    # Figures
    total_collected_amount = Column(Numeric(14, 2), nullable=False)
    previous_due_amount = Column(Numeric(14, 2), nullable=False)
    cash_received = Column(Numeric(14, 2), nullable=False)
    discrepancy_amount = Column(Numeric(14, 2), nullable=False)
    new_due_amount = Column(Numeric(14, 2), nullable=False)

    # Outcome breakdown
    completed_deliveries = Column(Integer, default=0, nullable=False)
    delivered_count = Column(Integer, default=0, nullable=False)
    partial_delivery_count = Column(Integer, default=0, nullable=False)
    exchange_count = Column(Integer, default=0, nullable=False)
    paid_return_count = Column(Integer, default=0, nullable=False)
    returned_count = Column(Integer, default=0, nullable=False)

    settlement_status = Column(Enum(SettlementStatus), nullable=False, index=True)
    period_start = Column(DateTime(timezone=True), nullable=False)
    period_end = Column(DateTime(timezone=True), nullable=False)
    settled_at = Column(DateTime(timezone=True), nullable=False, index=True)
    notes = Column(Text, nullable=True)
    adjustment_note = Column(Text, nullable=True)

    # Bumped by each review write
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<RiderSettlement(id={self.id}, rider_id={self.rider_id}, status='{self.settlement_status.value}')>"
