"""ProductRevision model: one view image of a finalized multiview revision."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.sql import func
import uuid

from database import Base


class ProductRevision(Base):
    """View image belonging to a numbered product revision."""

    __tablename__ = "product_revisions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False, index=True)
    approval_id = Column(String, ForeignKey("front_view_approvals.id"), nullable=True)
    revision_number = Column(Integer, nullable=False, default=0)
    batch_id = Column(String, nullable=False)
    view_type = Column(String, nullable=False)  # front, back, side, top, bottom
    image_url = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
