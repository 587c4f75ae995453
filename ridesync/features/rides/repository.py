"""
Ride repository.

Create vs update is decided by the unique native-id column alone
(INSERT ... ON CONFLICT DO UPDATE), so concurrent or repeated deliveries
of the same activity converge on one row.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from ridesync.shared.repository import BaseRepository, dialect_insert
from ridesync.shared.timeutils import utcnow
from .models import Ride
from .normalize import RideCandidate


NATIVE_ID_COLUMNS = {
    "garmin": "garmin_activity_id",
    "strava": "strava_activity_id",
    "whoop": "whoop_workout_id",
}


def native_id_column(provider: str) -> str:
    try:
        return NATIVE_ID_COLUMNS[provider]
    except KeyError:
        raise ValueError(f"Unknown provider: {provider}")


class RideRepository(BaseRepository[Ride]):
    """Repository for rides."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, Ride)

    async def get_by_native_id(self, provider: str, activity_id: str) -> Ride | None:
        return await self.get_by(**{native_id_column(provider): str(activity_id)})

    async def list_for_user(self, user_id: str, include_deleted: bool = False) -> list[Ride]:
        query = select(Ride).where(Ride.user_id == user_id)
        if not include_deleted:
            query = query.where(Ride.deleted_at.is_(None))
        result = await self.db.execute(query.order_by(Ride.start_time.desc()))
        return list(result.scalars().all())

    async def upsert(
        self,
        user_id: str,
        candidate: RideCandidate,
        import_session_id: Optional[str] = None,
    ) -> tuple[str, bool]:
        """
        Create or update the ride keyed by the provider's native id.

        On update the measured fields are replaced, while import_session_id
        and a non-blank stored location are kept.

        Args:
            user_id: Owner
            candidate: Normalized activity
            import_session_id: Running import session, stamped on create only

        Returns:
            (ride_id, created)
        """
        column = native_id_column(candidate.provider)
        new_id = str(uuid.uuid4())
        now = utcnow()

        measured = {
            "start_time": candidate.start_time,
            "duration_seconds": candidate.duration_seconds,
            "distance_miles": candidate.distance_miles,
            "elevation_gain_feet": candidate.elevation_gain_feet,
            "average_hr": candidate.average_hr,
            "ride_type": candidate.ride_type,
            "notes": candidate.notes,
        }
        stmt = dialect_insert(self.db, Ride).values(
            id=new_id,
            user_id=user_id,
            location=candidate.location,
            import_session_id=import_session_id,
            is_duplicate=False,
            created_at=now,
            updated_at=now,
            **{column: candidate.provider_activity_id},
            **measured,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[column],
            set_={
                **measured,
                # Keep a stored location; fill an empty one
                "location": func.coalesce(
                    func.nullif(func.trim(Ride.location), ""),
                    stmt.excluded.location,
                ),
                "updated_at": now,
            },
        ).returning(Ride.id)

        result = await self.db.execute(stmt)
        ride_id = result.scalar_one()
        return ride_id, ride_id == new_id

    async def soft_delete(self, user_id: str, provider: str, activity_id: str, now: Optional[datetime] = None) -> int:
        """Stamp deleted_at on the user's ride with this native id. Returns rows updated."""
        column = getattr(Ride, native_id_column(provider))
        now = now or utcnow()
        result = await self.db.execute(
            update(Ride)
            .where(
                Ride.user_id == user_id,
                column == str(activity_id),
                Ride.deleted_at.is_(None),
            )
            .values(deleted_at=now, updated_at=now)
        )
        return result.rowcount
