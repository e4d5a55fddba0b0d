"""UserCredit model: one spendable pool of credits (subscription or top-up)."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class UserCredit(Base):
    """Credit source owned by a user."""

    __tablename__ = "user_credits"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    credits = Column(Integer, nullable=False, default=0)
    plan_type = Column(String, nullable=False, default="one_time")  # subscription, one_time
    status = Column(String, nullable=False, default="active")  # active, expired
    membership = Column(String, nullable=True)
    billing_provider = Column(String, nullable=True)
    billing_reference = Column(String, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_user_credits_non_negative"),
    )

    user = relationship("User", back_populates="credit_sources")
