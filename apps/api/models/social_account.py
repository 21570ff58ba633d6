"""SocialAccount model holding per-platform OAuth credentials."""

from sqlalchemy import Column, String, DateTime, Text, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class SocialAccount(Base):
    """One connected platform account per (user, platform)."""

    __tablename__ = "social_accounts"
    __table_args__ = (
        UniqueConstraint("user_id", "platform", name="uq_social_accounts_user_platform"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    platform = Column(String, nullable=False)  # twitter, youtube, instagram
    platform_user_id = Column(String, nullable=True, index=True)
    platform_username = Column(String, nullable=True)
    access_token_encrypted = Column(Text, nullable=False)
    refresh_token_encrypted = Column(Text, nullable=True)
    token_secret_encrypted = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    scopes = Column(String, nullable=True)
    account_metadata = Column("metadata", JSON, nullable=True)
    last_metrics_refresh = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    metrics = relationship("SocialMetricsSnapshot", back_populates="account", cascade="all, delete-orphan")
