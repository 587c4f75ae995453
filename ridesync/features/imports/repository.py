"""
Import session repository.
"""

from datetime import datetime

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from ridesync.features.rides.models import Ride
from ridesync.shared.repository import BaseRepository
from ridesync.shared.timeutils import utcnow
from .models import ImportSession, ImportSessionStatus

RUNNING = ImportSessionStatus.RUNNING.value
COMPLETED = ImportSessionStatus.COMPLETED.value


class ImportSessionRepository(BaseRepository[ImportSession]):
    """Repository for import sessions."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, ImportSession)

    async def get_running(self, user_id: str, provider: str) -> ImportSession | None:
        result = await self.db.execute(
            select(ImportSession)
            .where(
                ImportSession.user_id == user_id,
                ImportSession.provider == provider,
                ImportSession.status == RUNNING,
            )
            .order_by(ImportSession.started_at.desc())
        )
        return result.scalars().first()

    async def list_for_user(self, user_id: str, limit: int = 20) -> list[ImportSession]:
        result = await self.db.execute(
            select(ImportSession)
            .where(ImportSession.user_id == user_id)
            .order_by(ImportSession.started_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def complete(self, session_id: str, unassigned_ride_count: int, now: datetime | None = None) -> int:
        """Complete a running session with a known count. Returns rows updated."""
        result = await self.db.execute(
            update(ImportSession)
            .where(ImportSession.id == session_id, ImportSession.status == RUNNING)
            .values(
                status=COMPLETED,
                completed_at=now or utcnow(),
                unassigned_ride_count=unassigned_ride_count,
            )
        )
        return result.rowcount

    async def complete_counting_unassigned(self, session_id: str, now: datetime | None = None) -> int:
        """
        Complete a running session, counting its unassigned rides in the
        same statement so a concurrent bike assignment cannot skew it.
        """
        unassigned = (
            select(func.count(Ride.id))
            .where(
                Ride.import_session_id == session_id,
                Ride.bike_id.is_(None),
                Ride.deleted_at.is_(None),
            )
            .scalar_subquery()
        )
        result = await self.db.execute(
            update(ImportSession)
            .where(ImportSession.id == session_id, ImportSession.status == RUNNING)
            .values(
                status=COMPLETED,
                completed_at=now or utcnow(),
                unassigned_ride_count=unassigned,
            )
        )
        return result.rowcount

    async def record_activity(self, session_id: str, now: datetime | None = None) -> int:
        result = await self.db.execute(
            update(ImportSession)
            .where(ImportSession.id == session_id, ImportSession.status == RUNNING)
            .values(last_activity_received_at=now or utcnow())
        )
        return result.rowcount

    async def find_idle(self, idle_cutoff: datetime) -> list[ImportSession]:
        """Running sessions that received something, but nothing since the cutoff."""
        result = await self.db.execute(
            select(ImportSession).where(
                ImportSession.status == RUNNING,
                ImportSession.last_activity_received_at.is_not(None),
                ImportSession.last_activity_received_at <= idle_cutoff,
            )
        )
        return list(result.scalars().all())

    async def find_stale(self, stale_cutoff: datetime) -> list[ImportSession]:
        """Running sessions that never received anything and started before the cutoff."""
        result = await self.db.execute(
            select(ImportSession).where(
                ImportSession.status == RUNNING,
                ImportSession.last_activity_received_at.is_(None),
                ImportSession.started_at <= stale_cutoff,
            )
        )
        return list(result.scalars().all())
