"""
Merchant balance projection.

One row per merchant, derived from merchant_finance_transactions. Only
domain/finance/ledger_service.py writes to it.
"""

from sqlalchemy import Column, Integer, Numeric, DateTime
from sqlalchemy.sql import func
from courier_backend.app.core.time_utils import utcnow
from courier_backend.app.db.session import Base


class MerchantFinance(Base):
    """
    Running balances for a merchant.

    current_balance = pending_balance + invoiced_balance + processing_balance.
    ``transaction_count`` is the sequence number of the last ledger row.
    """
    __tablename__ = "merchant_finances"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    merchant_id = Column(Integer, unique=True, nullable=False, index=True)

    # Balances
    current_balance = Column(Numeric(14, 2), default=0, nullable=False)
    pending_balance = Column(Numeric(14, 2), default=0, nullable=False)
    invoiced_balance = Column(Numeric(14, 2), default=0, nullable=False)
    processing_balance = Column(Numeric(14, 2), default=0, nullable=False)
    hold_amount = Column(Numeric(14, 2), default=0, nullable=False)

    # Lifetime totals
    total_earned = Column(Numeric(14, 2), default=0, nullable=False)
    total_withdrawn = Column(Numeric(14, 2), default=0, nullable=False)
    total_delivery_charges = Column(Numeric(14, 2), default=0, nullable=False)
    total_return_charges = Column(Numeric(14, 2), default=0, nullable=False)
    total_cod_collected = Column(Numeric(14, 2), default=0, nullable=False)
    total_parcels_delivered = Column(Integer, default=0, nullable=False)
    total_parcels_returned = Column(Integer, default=0, nullable=False)

    # Credit
    credit_limit = Column(Numeric(14, 2), default=0, nullable=False)
    credit_used = Column(Numeric(14, 2), default=0, nullable=False)

    transaction_count = Column(Integer, default=0, nullable=False)
    last_transaction_at = Column(DateTime(timezone=True), nullable=True)
    last_withdrawal_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<MerchantFinance(merchant_id={self.merchant_id}, current={self.current_balance})>"
