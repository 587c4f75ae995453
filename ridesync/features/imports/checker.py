"""
Import session checker.

Background task that closes import sessions once their webhook stream has
gone quiet:
- idle: received something, nothing for `import_idle_minutes`
- stale: received nothing within `import_stale_minutes` of starting

Runs under a global lock that fails closed, so with several processes only
one checks at a time and none checks while the lock store is down.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridesync.config import Settings
from ridesync.features.backfill.repository import BackfillRequestRepository
from ridesync.features.locks.service import LockService
from ridesync.shared.timeutils import utcnow
from .repository import ImportSessionRepository

logger = logging.getLogger(__name__)

CHECKER_LOCK_KEY = "lock:import-session-checker:global"
CHECKER_LOCK_TTL_SECONDS = 120


@dataclass
class CheckResult:
    skipped: bool = False
    idle_completed: int = 0
    stale_completed: int = 0
    backfills_completed: int = 0


class ImportSessionChecker:
    """
    Usage:
        checker = ImportSessionChecker(AsyncSessionLocal, locks, settings)
        await checker.start()
        # ... later ...
        await checker.stop()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: LockService,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.settings = settings
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._processing = False

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Import session checker started")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Import session checker stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except SQLAlchemyError as e:
                logger.error(f"Import session check failed: {e}")
            except Exception:
                logger.exception("Unexpected error in import session check")
            await asyncio.sleep(self.settings.import_check_interval_seconds)

    async def run_once(self) -> CheckResult:
        """One checking round. Skipped when another round or process holds the lock."""
        if self._processing:
            logger.debug("Previous import session check still running, skipping")
            return CheckResult(skipped=True)

        handle = await self.locks.acquire_key(
            CHECKER_LOCK_KEY, ttl=CHECKER_LOCK_TTL_SECONDS, fail_open=False
        )
        if not handle.acquired:
            if handle.degraded:
                logger.warning("Lock store unavailable, skipping import session check")
            return CheckResult(skipped=True)

        self._processing = True
        try:
            return await self._check(self._clock())
        finally:
            self._processing = False
            await self.locks.release(handle.lock_key, handle.lock_value)

    async def _check(self, now: datetime) -> CheckResult:
        result = CheckResult()
        idle_cutoff = now - timedelta(minutes=self.settings.import_idle_minutes)
        stale_cutoff = now - timedelta(minutes=self.settings.import_stale_minutes)

        async with self.session_factory() as db:
            repo = ImportSessionRepository(db)
            idle = await repo.find_idle(idle_cutoff)
            stale = await repo.find_stale(stale_cutoff)

        if idle:
            logger.info(f"Found {len(idle)} idle import sessions to complete")

        for session in idle:
            try:
                completed = await self._finish(session.id, session.user_id, session.provider, now, count=True)
            except SQLAlchemyError as e:
                logger.error(f"Error completing import session {session.id}: {e}")
                continue
            if completed is not None:
                result.idle_completed += 1
                result.backfills_completed += completed

        for session in stale:
            try:
                completed = await self._finish(session.id, session.user_id, session.provider, now, count=False)
            except SQLAlchemyError as e:
                logger.error(f"Error completing stale import session {session.id}: {e}")
                continue
            if completed is not None:
                result.stale_completed += 1
                result.backfills_completed += completed

        if result.stale_completed:
            logger.info(f"Completed {result.stale_completed} stale import sessions with no activity")
        return result

    async def _finish(
        self,
        session_id: str,
        user_id: str,
        provider: str,
        now: datetime,
        count: bool,
    ) -> Optional[int]:
        """
        Complete one session and the in-progress backfills it covered.

        Returns:
            Number of backfill requests completed, or None if the session was
            no longer running
        """
        async with self.session_factory() as db:
            async with db.begin():
                repo = ImportSessionRepository(db)
                if count:
                    updated = await repo.complete_counting_unassigned(session_id, now)
                else:
                    updated = await repo.complete(session_id, 0, now)
                if not updated:
                    return None
                backfills = await BackfillRequestRepository(db).complete_in_progress(user_id, provider)
            session = await repo.get_by_id(session_id)

        logger.info(
            f"Completed import session {session_id} "
            f"(unassigned: {session.unassigned_ride_count if session else 0}, backfills completed: {backfills})"
        )
        return backfills
