"""Server-side OAuth handshake sessions."""

from sqlalchemy import Column, String, DateTime, Boolean, Text

from database import Base


class OAuthSession(Base):
    """Short-lived handshake state keyed by login id."""

    __tablename__ = "oauth_sessions"

    login_id = Column(String, primary_key=True)
    platform = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    state = Column(String, nullable=False)
    code_verifier = Column(Text, nullable=True)
    is_reconnect = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
