"""
OAuth token model.

One row per (user, provider). Refresh replaces access_token and expires_at
together; refresh_token changes only when the provider issues a new one.
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import Column, String, DateTime, Integer, ForeignKey, Text, UniqueConstraint

from ridesync.models.base import Base
from ridesync.shared.timeutils import utcnow


class OAuthToken(Base):
    """Provider OAuth token storage."""

    __tablename__ = "oauth_tokens"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_oauth_tokens_user_provider"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(20), nullable=False)  # garmin, whoop, strava

    # OAuth tokens (should be encrypted in production)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=False)  # naive UTC

    # Timestamps
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def expires_within(self, seconds: int, now: Optional[datetime] = None) -> bool:
        """True if the token expires within `seconds` (or already has)."""
        now = now or utcnow()
        return now >= self.expires_at - timedelta(seconds=seconds)

    def __repr__(self):
        return f"<OAuthToken user_id={self.user_id} provider={self.provider}>"
