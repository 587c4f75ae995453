"""
Import session tracker.

An import session spans one import run (backfill chunks plus the webhook
deliveries they cause). Only one session per (user, provider) may run at a
time; starting a second one is a conflict.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridesync.shared.errors import DuplicateWindow
from ridesync.shared.timeutils import utcnow
from .models import ImportSession, ImportSessionStatus
from .repository import ImportSessionRepository

logger = logging.getLogger(__name__)


class ImportSessionTracker:
    """
    Durable import-run records.

    Usage:
        tracker = ImportSessionTracker(AsyncSessionLocal)
        session = await tracker.start_session(user_id, "garmin")
        ...
        await tracker.complete_session(session.id, unassigned_ride_count=3)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_running(self, user_id: str, provider: str) -> Optional[ImportSession]:
        async with self.session_factory() as db:
            return await ImportSessionRepository(db).get_running(user_id, provider)

    async def ensure_not_running(self, user_id: str, provider: str) -> None:
        """
        Raises:
            DuplicateWindow: A session is already running for (user, provider)
        """
        if await self.get_running(user_id, provider) is not None:
            raise DuplicateWindow(
                DuplicateWindow.IMPORT_RUNNING,
                f"A {provider} import is already in progress. "
                "Please wait for it to complete before starting another.",
            )

    async def start_session(self, user_id: str, provider: str) -> ImportSession:
        """
        Create a running session.

        Raises:
            DuplicateWindow: A session is already running for (user, provider)
        """
        async with self.session_factory() as db:
            repo = ImportSessionRepository(db)
            if await repo.get_running(user_id, provider) is not None:
                raise DuplicateWindow(
                    DuplicateWindow.IMPORT_RUNNING,
                    f"A {provider} import is already in progress. "
                    "Please wait for it to complete before starting another.",
                )
            session = await repo.create(
                user_id=user_id,
                provider=provider,
                status=ImportSessionStatus.RUNNING.value,
                started_at=utcnow(),
            )
            await db.commit()

        logger.info(f"Started import session {session.id} ({provider}, user {user_id})")
        return session

    async def complete_session(self, session_id: str, unassigned_ride_count: int) -> bool:
        """Complete a running session. Returns False if it was not running."""
        async with self.session_factory() as db:
            updated = await ImportSessionRepository(db).complete(session_id, unassigned_ride_count)
            await db.commit()

        if updated:
            logger.info(f"Completed import session {session_id} ({unassigned_ride_count} unassigned)")
        return bool(updated)

    async def record_activity(self, session_id: str) -> None:
        """Stamp last_activity_received_at; called once per ingested batch."""
        async with self.session_factory() as db:
            await ImportSessionRepository(db).record_activity(session_id)
            await db.commit()

    # =========================================================================
    # Queries for the UI
    # =========================================================================

    async def get_for_user(self, session_id: str, user_id: str) -> Optional[ImportSession]:
        async with self.session_factory() as db:
            return await ImportSessionRepository(db).get_by(id=session_id, user_id=user_id)

    async def list_for_user(self, user_id: str) -> list[ImportSession]:
        async with self.session_factory() as db:
            return await ImportSessionRepository(db).list_for_user(user_id)

    async def acknowledge(self, session_id: str, user_id: str) -> Optional[ImportSession]:
        """Mark a completed session as seen. None if not found or still running."""
        async with self.session_factory() as db:
            repo = ImportSessionRepository(db)
            session = await repo.get_by(id=session_id, user_id=user_id)
            if session is None or session.status != ImportSessionStatus.COMPLETED.value:
                return None
            session = await repo.update(session, user_acknowledged=True)
            await db.commit()
            return session
