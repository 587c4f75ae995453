"""
User and provider account link models.

The user table is owned by the surrounding application; only the columns
the ingestion pipeline relies on are mapped here.
"""

import uuid

from sqlalchemy import Column, String, DateTime, ForeignKey, UniqueConstraint

from ridesync.models.base import Base
from ridesync.shared.timeutils import utcnow


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self):
        return f"<User {self.id}>"


class UserAccount(Base):
    """
    Link between an internal user and a provider-side account.

    Webhooks identify users by provider_user_id; this table resolves them
    to internal ids.
    """

    __tablename__ = "user_accounts"
    __table_args__ = (
        UniqueConstraint("provider", "provider_user_id", name="uq_user_accounts_provider_user"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(20), nullable=False)
    provider_user_id = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self):
        return f"<UserAccount {self.provider}:{self.provider_user_id} -> {self.user_id}>"
