"""
Import session model.

Spans one import run: backfill chunks plus the webhook deliveries they
produce. At most one running session per (user, provider).
"""

import enum
import uuid

from sqlalchemy import Column, String, DateTime, Integer, ForeignKey, Boolean, Index

from ridesync.models.base import Base
from ridesync.shared.timeutils import utcnow


class ImportSessionStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"


class ImportSession(Base):
    __tablename__ = "import_sessions"
    __table_args__ = (
        Index("ix_import_sessions_user_provider_status", "user_id", "provider", "status"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=ImportSessionStatus.RUNNING.value)

    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    last_activity_received_at = Column(DateTime, nullable=True)
    unassigned_ride_count = Column(Integer, nullable=False, default=0)

    # Set once the user has seen the completion prompt
    user_acknowledged = Column(Boolean, nullable=False, default=False)

    def to_summary(self) -> dict:
        return {
            "id": self.id,
            "provider": self.provider,
            "status": self.status,
            "startedAt": self.started_at.isoformat() + "Z" if self.started_at else None,
            "completedAt": self.completed_at.isoformat() + "Z" if self.completed_at else None,
            "lastActivityReceivedAt": (
                self.last_activity_received_at.isoformat() + "Z"
                if self.last_activity_received_at else None
            ),
            "unassignedRideCount": self.unassigned_ride_count,
            "userAcknowledged": self.user_acknowledged,
        }

    def __repr__(self):
        return f"<ImportSession {self.id} {self.provider}:{self.user_id} {self.status}>"
