"""GeneratedAsset model for tech pack images (close-ups, components, sketches)."""

from sqlalchemy import Column, DateTime, ForeignKey, String, Text
from sqlalchemy.sql import func
import uuid

from database import Base


class GeneratedAsset(Base):
    """Single image produced by an enrichment stage."""

    __tablename__ = "generated_assets"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False, index=True)
    approval_id = Column(String, ForeignKey("front_view_approvals.id"), nullable=True)
    stage = Column(String, nullable=False, index=True)  # closeups, components, sketches
    label = Column(String, nullable=False)
    image_url = Column(String, nullable=False)
    prompt = Column(Text, nullable=True)
    reservation_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
