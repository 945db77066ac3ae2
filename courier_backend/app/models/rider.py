"""
Rider database model.

Riders belong to one hub. ``last_settled_at`` mirrors the latest recorded
settlement and, with ``version``, serialises concurrent settlements.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey
from sqlalchemy.sql import func
from courier_backend.app.core.time_utils import utcnow
from courier_backend.app.db.session import Base


class Rider(Base):
    __tablename__ = "riders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, nullable=True, index=True)
    hub_id = Column(Integer, ForeignKey('hubs.id'), nullable=False, index=True)
    full_name = Column(String(200), nullable=False)
    phone = Column(String(30), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    last_settled_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<Rider(id={self.id}, hub_id={self.hub_id}, active={self.is_active})>"
