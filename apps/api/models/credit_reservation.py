"""CreditReservation model tracking provisional holds against a balance."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String
from sqlalchemy.sql import func

from database import Base


class CreditReservation(Base):
    """Credits deducted up front for a metered operation, later committed or refunded."""

    __tablename__ = "credit_reservations"

    id = Column(String, primary_key=True, default=lambda: f"res_{uuid.uuid4().hex}")
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="reserved", index=True)  # reserved, committed, refunded
    allocations_json = Column(JSON, nullable=False, default=list)  # [{"source_id": ..., "deducted": ...}]
    reason = Column(String, nullable=True)
    reference_type = Column(String, nullable=True)
    reference_id = Column(String, nullable=True)
    refund_reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
