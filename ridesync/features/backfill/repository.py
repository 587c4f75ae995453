"""
Backfill request repository.

Every status write after a run has started is conditional on the row not
being completed, and reports how many rows it touched.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from ridesync.shared.repository import BaseRepository, dialect_insert
from ridesync.shared.timeutils import utcnow
from .models import BackfillRequest, BackfillStatus, YTD

COMPLETED = BackfillStatus.COMPLETED.value


class BackfillRequestRepository(BaseRepository[BackfillRequest]):
    """Repository for backfill requests."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, BackfillRequest)

    def _key(self, user_id: str, provider: str, year: str):
        return (
            BackfillRequest.user_id == user_id,
            BackfillRequest.provider == provider,
            BackfillRequest.year == year,
        )

    async def get_for(self, user_id: str, provider: str, year: str) -> BackfillRequest | None:
        result = await self.db.execute(
            select(BackfillRequest).where(*self._key(user_id, provider, year))
        )
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: str, provider: Optional[str] = None) -> list[BackfillRequest]:
        query = select(BackfillRequest).where(BackfillRequest.user_id == user_id)
        if provider:
            query = query.where(BackfillRequest.provider == provider)
        result = await self.db.execute(query.order_by(BackfillRequest.year.desc()))
        return list(result.scalars().all())

    async def ensure(self, user_id: str, provider: str, year: str, status: BackfillStatus) -> None:
        """Create the row with `status` if it does not exist (existing rows untouched)."""
        now = utcnow()
        stmt = dialect_insert(self.db, BackfillRequest).values(
            user_id=user_id,
            provider=provider,
            year=year,
            status=status.value,
            rides_found=0,
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(index_elements=["user_id", "provider", "year"])
        await self.db.execute(stmt)

    async def set_status(
        self,
        user_id: str,
        provider: str,
        year: str,
        status: BackfillStatus,
        reopen_completed: bool = False,
        **values,
    ) -> int:
        """
        Conditional status write.

        Args:
            reopen_completed: Also apply to a completed row (an explicit new
                ytd run, never a late update)
            **values: Extra columns (backfilled_up_to, completed_at, ...)

        Returns:
            Number of rows updated (0 when the row is completed)
        """
        query = update(BackfillRequest).where(*self._key(user_id, provider, year))
        if not reopen_completed:
            query = query.where(BackfillRequest.status != COMPLETED)
        result = await self.db.execute(
            query.values(status=status.value, updated_at=utcnow(), **values)
        )
        return result.rowcount

    async def mark_pending(self, user_id: str, provider: str, year: str) -> int:
        await self.ensure(user_id, provider, year, BackfillStatus.PENDING)
        return await self.set_status(user_id, provider, year, BackfillStatus.PENDING)

    async def begin_run(self, user_id: str, provider: str, year: str) -> int:
        """Move to in_progress at the start of a run (failed and pending rows too)."""
        await self.ensure(user_id, provider, year, BackfillStatus.IN_PROGRESS)
        return await self.set_status(
            user_id, provider, year, BackfillStatus.IN_PROGRESS,
            reopen_completed=(year == YTD),
        )

    async def mark_completed(
        self,
        user_id: str,
        provider: str,
        year: str,
        backfilled_up_to: Optional[datetime] = None,
    ) -> int:
        values = {"completed_at": utcnow()}
        if backfilled_up_to is not None:
            values["backfilled_up_to"] = backfilled_up_to
        return await self.set_status(user_id, provider, year, BackfillStatus.COMPLETED, **values)

    async def complete_in_progress(self, user_id: str, provider: str) -> int:
        """Complete every in_progress request of (user, provider)."""
        now = utcnow()
        result = await self.db.execute(
            update(BackfillRequest)
            .where(
                BackfillRequest.user_id == user_id,
                BackfillRequest.provider == provider,
                BackfillRequest.status == BackfillStatus.IN_PROGRESS.value,
            )
            .values(status=COMPLETED, completed_at=now, updated_at=now)
        )
        return result.rowcount

    async def increment_rides_found(self, user_id: str, provider: str, start_time: datetime) -> int:
        """
        Count a newly created ride towards the in-progress request covering it:
        its own year, and ytd when it falls in the current year.
        """
        years = [str(start_time.year)]
        if start_time.year == utcnow().year:
            years.append(YTD)
        result = await self.db.execute(
            update(BackfillRequest)
            .where(
                BackfillRequest.user_id == user_id,
                BackfillRequest.provider == provider,
                BackfillRequest.year.in_(years),
                or_(
                    BackfillRequest.status == BackfillStatus.IN_PROGRESS.value,
                    BackfillRequest.status == BackfillStatus.PENDING.value,
                ),
            )
            .values(rides_found=BackfillRequest.rides_found + 1, updated_at=utcnow())
        )
        return result.rowcount
