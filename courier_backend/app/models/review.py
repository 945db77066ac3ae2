"""
Shared review columns for records an admin approves or rejects once.
"""

from sqlalchemy import Column, Integer, DateTime, Enum, Text
from courier_backend.app.models.billing_enums import ReviewStatus


class ReviewMixin:
    """
    PENDING -> APPROVED | REJECTED, single shot.

    Once a record leaves PENDING its review fields are frozen; the domain
    services refuse any further change.
    """
    review_status = Column(Enum(ReviewStatus), default=ReviewStatus.PENDING, nullable=False, index=True)
    reviewed_by = Column(Integer, nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    review_reason = Column(Text, nullable=True)
    admin_notes = Column(Text, nullable=True)

    @property
    def is_finalized(self) -> bool:
        return self.review_status != ReviewStatus.PENDING
