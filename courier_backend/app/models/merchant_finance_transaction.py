"""
Merchant ledger transaction model.

Immutable rows. NO updates or deletions; corrections are new offsetting rows.
"""

from sqlalchemy import Column, Integer, Numeric, DateTime, Enum, String, Text, JSON, UniqueConstraint
from sqlalchemy.sql import func
from courier_backend.app.core.time_utils import utcnow
from courier_backend.app.db.session import Base
from courier_backend.app.models.billing_enums import TransactionType, ReferenceType


class MerchantFinanceTransaction(Base):
    """
    One signed movement on a merchant's balance.

    balance_after = balance_before + amount (CREDIT) or - amount (DEBIT).
    (merchant_id, sequence) is unique so two writers can never both append
    the same position in a merchant's chain.
    """
    __tablename__ = "merchant_finance_transactions"
    __table_args__ = (
        UniqueConstraint("merchant_id", "sequence", name="uq_merchant_ledger_sequence"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    merchant_id = Column(Integer, nullable=False, index=True)
    sequence = Column(Integer, nullable=False)

    transaction_type = Column(Enum(TransactionType), nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    balance_before = Column(Numeric(14, 2), nullable=False)
    balance_after = Column(Numeric(14, 2), nullable=False)

    reference_type = Column(Enum(ReferenceType), nullable=False, index=True)
    reference_id = Column(Integer, nullable=True, index=True)
    reference_code = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    created_by = Column(Integer, nullable=True)
    meta_data = Column(JSON, nullable=True)

    # Immutable - no updated_at
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    def __repr__(self):
        return (
            f"<MerchantFinanceTransaction(merchant_id={self.merchant_id}, seq={self.sequence}, "
            f"type='{self.transaction_type.value}', amount={self.amount})>"
        )
