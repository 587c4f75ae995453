"""
Ride model (ingestion-relevant columns only).

Each provider's native activity id is unique; ingestion upserts on it.
"""

import uuid

from sqlalchemy import Column, String, DateTime, Integer, Float, ForeignKey, Boolean, Text

from ridesync.models.base import Base
from ridesync.shared.timeutils import utcnow


class Ride(Base):
    __tablename__ = "rides"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # Provider identifiers (one of them is set)
    garmin_activity_id = Column(String(64), unique=True, nullable=True)
    strava_activity_id = Column(String(64), unique=True, nullable=True)
    whoop_workout_id = Column(String(64), unique=True, nullable=True)

    start_time = Column(DateTime, nullable=False, index=True)
    duration_seconds = Column(Integer, nullable=False, default=0)
    distance_miles = Column(Float, nullable=False, default=0.0)
    elevation_gain_feet = Column(Float, nullable=False, default=0.0)
    average_hr = Column(Integer, nullable=True)
    ride_type = Column(String(50), nullable=True)
    notes = Column(Text, nullable=True)
    location = Column(String(255), nullable=True)

    bike_id = Column(String(36), nullable=True)
    import_session_id = Column(String(36), ForeignKey("import_sessions.id", ondelete="SET NULL"), nullable=True, index=True)

    # Duplicate tracking
    is_duplicate = Column(Boolean, nullable=False, default=False)
    duplicate_of_id = Column(String(36), nullable=True)

    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def provider(self) -> str | None:
        if self.garmin_activity_id:
            return "garmin"
        if self.strava_activity_id:
            return "strava"
        if self.whoop_workout_id:
            return "whoop"
        return None

    def __repr__(self):
        return f"<Ride {self.id} {self.provider} {self.start_time}>"
