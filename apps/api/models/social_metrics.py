"""Daily aggregate metrics snapshots for connected accounts."""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Float, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class SocialMetricsSnapshot(Base):
    """Aggregated account metrics captured at a point in time."""

    __tablename__ = "social_metrics"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("social_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    platform = Column(String, nullable=False)
    followers = Column(Integer, default=0)
    engagement_rate = Column(Float, default=0.0)
    total_posts = Column(Integer, default=0)
    total_views = Column(Integer, default=0)
    avg_likes = Column(Float, default=0.0)
    avg_comments = Column(Float, default=0.0)
    raw_data = Column(JSON, nullable=True)  # Serialized SocialMetrics payload
    captured_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    account = relationship("SocialAccount", back_populates="metrics")
