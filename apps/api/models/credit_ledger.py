"""CreditLedger model: append-only audit trail of balance changes."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditLedger(Base):
    """Immutable credit ledger entry."""

    __tablename__ = "credit_ledger"
    __table_args__ = (Index("ix_credit_ledger_user_created", "user_id", "created_at"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    entry_type = Column(String, nullable=False)  # purchase, reserve, refund
    delta_credits = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=True)
    reason = Column(String, nullable=True)
    reservation_id = Column(String, nullable=True, index=True)
    reference_type = Column(String, nullable=True)
    reference_id = Column(String, nullable=True)
    billing_provider = Column(String, nullable=True)
    billing_reference = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="credit_entries")
