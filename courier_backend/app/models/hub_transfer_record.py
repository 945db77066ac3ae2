"""
Hub transfer record model.

A hub manager's declaration that cash was moved from the hub to the
operator's bank account, with a proof document reference. Not related to
parcel transfers between hubs.
"""

from sqlalchemy import Column, Integer, Numeric, DateTime, ForeignKey, String, Text
from sqlalchemy.sql import func
from courier_backend.app.core.time_utils import utcnow
from courier_backend.app.db.session import Base
from courier_backend.app.models.review import ReviewMixin


class HubTransferRecord(ReviewMixin, Base):
    __tablename__ = "hub_transfer_records"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    hub_id = Column(Integer, ForeignKey('hubs.id'), nullable=False, index=True)
    hub_manager_id = Column(Integer, nullable=False, index=True)

    transferred_amount = Column(Numeric(14, 2), nullable=False)

    # Destination account
    admin_bank_name = Column(String(200), nullable=False)
    admin_bank_account_number = Column(String(100), nullable=False)
    admin_account_holder_name = Column(String(200), nullable=False)
    transaction_reference_id = Column(String(200), nullable=True)

    # Proof (stored elsewhere, reference only)
    proof_file_url = Column(String(1000), nullable=False)
    proof_file_type = Column(String(100), nullable=True)
    proof_file_size = Column(Integer, nullable=True)

    transfer_date = Column(DateTime(timezone=True), nullable=False)
    notes = Column(Text, nullable=True)

    version = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<HubTransferRecord(id={self.id}, hub_id={self.hub_id}, status='{self.review_status.value}')>"
