"""FrontViewApproval model gating remaining-view generation."""

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text, text
from sqlalchemy.sql import func
import uuid

from database import Base


class FrontViewApproval(Base):
    """Front view awaiting (or past) the creator's decision."""

    __tablename__ = "front_view_approvals"
    __table_args__ = (
        # At most one approval per product may await a decision or a regenerated front view.
        Index(
            "uq_front_view_approvals_in_flight",
            "product_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'revision_requested')"),
            sqlite_where=text("status IN ('pending', 'revision_requested')"),
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False, index=True)
    session_id = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending")  # pending, approved, revision_requested, completed
    iteration_number = Column(Integer, nullable=False, default=1)
    front_view_url = Column(String, nullable=True)
    front_view_prompt = Column(Text, nullable=True)
    feedback = Column(Text, nullable=True)
    extracted_features = Column(JSON, nullable=True)
    views_json = Column(JSON, nullable=True)  # {"back": url, "side": url, "top": url, "bottom": url}
    credits_consumed = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    approved_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
