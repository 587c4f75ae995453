"""
Backfill request model.

One row per (user, provider, year key). The year key is a four digit year
or "ytd". Status moves pending -> in_progress -> completed | failed, and
failed may go back to in_progress on retry. Completed is terminal: every
status write excludes completed rows.
"""

import enum

from sqlalchemy import Column, String, DateTime, Integer, ForeignKey, UniqueConstraint

from ridesync.models.base import Base
from ridesync.shared.timeutils import utcnow


YTD = "ytd"


class BackfillStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class BackfillRequest(Base):
    """Durable state of one historical import window."""

    __tablename__ = "backfill_requests"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", "year", name="uq_backfill_requests_user_provider_year"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(20), nullable=False)
    year = Column(String(4), nullable=False)  # "2023" or "ytd"

    status = Column(String(20), nullable=False, default=BackfillStatus.PENDING.value)
    rides_found = Column(Integer, nullable=False, default=0)

    # Resume checkpoint, meaningful only for the ytd key
    backfilled_up_to = Column(DateTime, nullable=True)

    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def to_summary(self) -> dict:
        return {
            "id": self.id,
            "provider": self.provider,
            "year": self.year,
            "status": self.status,
            "ridesFound": self.rides_found,
            "backfilledUpTo": self.backfilled_up_to.isoformat() + "Z" if self.backfilled_up_to else None,
            "completedAt": self.completed_at.isoformat() + "Z" if self.completed_at else None,
            "updatedAt": self.updated_at.isoformat() + "Z" if self.updated_at else None,
        }

    def __repr__(self):
        return f"<BackfillRequest {self.provider}:{self.user_id}:{self.year} {self.status}>"
