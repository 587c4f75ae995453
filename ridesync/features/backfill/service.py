"""
Backfill orchestrator.

Requests historical activities from Garmin for a year key ("2023" or
"ytd") or a number of days. The window is walked in 30 day chunks; each
chunk is either accepted (activities arrive later through the webhook),
a duplicate of an earlier request, rejected for starting before the
provider's minimum (the chunk is retried from that minimum), or an error
that is reported and skipped.

Status transitions (BackfillRequest):
    pending -> in_progress -> completed | failed
    failed -> in_progress (retry)
Completed is terminal; every write after the run starts is conditional.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridesync.config import Settings
from ridesync.features.imports.service import ImportSessionTracker
from ridesync.features.locks import LockService, LockKind
from ridesync.features.tokens import TokenVault
from ridesync.features.tokens.providers import GARMIN
from ridesync.shared.errors import (
    RideSyncError,
    NotConnected,
    ProviderRequestFailed,
    ProviderRangeRejected,
    DuplicateWindow,
    InvalidBackfillRequest,
    InvalidPayload,
)
from ridesync.shared.queue import JobQueue
from ridesync.shared.timeutils import utcnow, ceil_to_second
from .client import GarminBackfillClient, ChunkResult
from .models import BackfillRequest, BackfillStatus, YTD
from .repository import BackfillRequestRepository
from .windows import BackfillWindow, resolve_window, validate_year_key, days_window, chunk_end

logger = logging.getLogger(__name__)


BACKFILL_YEAR_JOB = "backfillYear"


def backfill_job_id(provider: str, user_id: str, year: str) -> str:
    return f"{BACKFILL_YEAR_JOB}_{provider}_{user_id}_{year}"


@dataclass
class ChunkReport:
    """Outcome of walking one window."""

    total: int = 0
    accepted: int = 0
    duplicates: int = 0
    adjustments: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def all_duplicates(self) -> bool:
        return self.accepted == 0 and not self.errors


@dataclass
class BackfillOutcome:
    window: BackfillWindow
    chunks: ChunkReport
    status: Optional[BackfillStatus] = None
    import_session_id: Optional[str] = None

    @property
    def message(self) -> str:
        if self.window.is_empty:
            return "Nothing new to import"
        if self.chunks.accepted == 0 and self.chunks.errors:
            return f"Backfill for {self.window.description} failed"
        if self.chunks.accepted == 0:
            return f"{self.window.description.capitalize()} was already imported"
        return (
            f"Requested {self.window.description}: {self.chunks.accepted} of "
            f"{self.chunks.total} chunks accepted. Activities will arrive shortly."
        )

    def to_dict(self) -> dict:
        return {
            "success": self.chunks.accepted > 0 or not self.chunks.errors,
            "message": self.message,
            "year": self.window.year,
            "status": self.status.value if self.status else None,
            "startDate": self.window.start.isoformat() + "Z",
            "endDate": self.window.end.isoformat() + "Z",
            "chunks": {
                "total": self.chunks.total,
                "accepted": self.chunks.accepted,
                "duplicates": self.chunks.duplicates,
                "failed": len(self.chunks.errors),
            },
            "warnings": self.chunks.errors,
            "importSessionId": self.import_session_id,
        }


@dataclass
class BatchQueueResult:
    queued: list[dict]
    skipped: list[dict]
    import_session_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": True,
            "message": f"Queued {len(self.queued)} backfill request(s)",
            "queued": self.queued,
            "skipped": self.skipped,
            "importSessionId": self.import_session_id,
        }


class BackfillOrchestrator:
    """
    Usage:
        orchestrator = BackfillOrchestrator(AsyncSessionLocal, vault, locks, tracker, settings)
        outcome = await orchestrator.trigger_backfill(user_id, "garmin", "2023")
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        vault: TokenVault,
        locks: LockService,
        tracker: ImportSessionTracker,
        settings: Settings,
        client: Optional[GarminBackfillClient] = None,
        queue: Optional[JobQueue] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.vault = vault
        self.locks = locks
        self.tracker = tracker
        self.settings = settings
        self.client = client or GarminBackfillClient(settings)
        self.queue = queue
        self.clock = clock

    # =========================================================================
    # Triggers
    # =========================================================================

    async def trigger_backfill(self, user_id: str, provider: str, year: str) -> BackfillOutcome:
        """
        Backfill one year key now.

        Raises:
            InvalidBackfillRequest: Unsupported provider or year out of range
            LockUnavailable: Another backfill for this user is running
            DuplicateWindow: Already backfilled, ytd in progress or import running
            NotConnected: No usable token
        """
        self._require_supported(provider)
        now = self.clock()
        year = validate_year_key(year, now, self.settings.backfill_min_year)

        async with self.locks.hold(LockKind.BACKFILL, provider, user_id):
            await self.tracker.ensure_not_running(user_id, provider)
            previous = await self._get_request(user_id, provider, year)
            window = resolve_window(year, now, self.settings.backfill_min_year, previous)
            token = await self._token(user_id, provider)

            session = await self.tracker.start_session(user_id, provider)
            outcome = await self._run_window(user_id, provider, window, token, session.id)

            if outcome.chunks.accepted == 0:
                # No webhook will follow
                await self.tracker.complete_session(session.id, 0)
            return outcome

    async def trigger_days(self, user_id: str, provider: str, days: int) -> BackfillOutcome:
        """Backfill the last `days` days. Not tracked as a BackfillRequest or session."""
        self._require_supported(provider)
        window = days_window(days, self.clock())

        async with self.locks.hold(LockKind.BACKFILL, provider, user_id):
            token = await self._token(user_id, provider)
            report = await self.request_chunks(token, window.start, window.end)

        logger.info(
            f"Untracked {days} day backfill for user {user_id}: "
            f"{report.accepted} accepted, {report.duplicates} duplicates, {len(report.errors)} errors"
        )
        return BackfillOutcome(window=window, chunks=report)

    async def queue_backfills(self, user_id: str, provider: str, years: list[str]) -> BatchQueueResult:
        """
        Queue one backfillYear job per year key under a single import session.

        Raises:
            InvalidBackfillRequest: Empty or oversized list, or a bad year key
            DuplicateWindow: Import running, or every year skipped
            NotConnected: No usable token
        """
        self._require_supported(provider)
        if self.queue is None:
            raise RuntimeError("Backfill queue not configured")

        max_years = self.settings.backfill_max_batch_years
        if not years or len(years) > max_years:
            raise InvalidBackfillRequest(f"Provide between 1 and {max_years} years")

        now = self.clock()
        keys = list(dict.fromkeys(
            validate_year_key(str(y), now, self.settings.backfill_min_year) for y in years
        ))

        await self.tracker.ensure_not_running(user_id, provider)

        async with self.session_factory() as db:
            existing = {r.year: r for r in await BackfillRequestRepository(db).list_for_user(user_id, provider)}

        to_queue, skipped = [], []
        for key in keys:
            previous = existing.get(key)
            if key == YTD and previous is not None and previous.status == BackfillStatus.IN_PROGRESS.value:
                skipped.append({"year": key, "reason": DuplicateWindow.YTD_IN_PROGRESS})
            elif key != YTD and previous is not None and previous.status != BackfillStatus.FAILED.value:
                skipped.append({"year": key, "reason": DuplicateWindow.ALREADY_BACKFILLED})
            else:
                to_queue.append(key)

        if not to_queue:
            raise DuplicateWindow(
                DuplicateWindow.ALL_SKIPPED,
                "All requested years are already imported or in progress.",
                details={"skipped": skipped},
            )

        await self._token(user_id, provider)
        session = await self.tracker.start_session(user_id, provider)

        async with self.session_factory() as db:
            repo = BackfillRequestRepository(db)
            for key in to_queue:
                await repo.mark_pending(user_id, provider, key)
            await db.commit()

        queued = []
        for key in to_queue:
            result = await self.queue.enqueue(
                BACKFILL_YEAR_JOB,
                {"userId": user_id, "provider": provider, "year": key},
                job_id=backfill_job_id(provider, user_id, key),
            )
            queued.append({"year": key, "status": result.status, "jobId": result.job_id})

        logger.info(f"Queued {len(queued)} backfill years for user {user_id}, skipped {len(skipped)}")
        return BatchQueueResult(queued=queued, skipped=skipped, import_session_id=session.id)

    async def run_backfill_job(self, payload: dict) -> Optional[BackfillOutcome]:
        """
        backfillYear job handler.

        Marks the request failed and re-raises on error so the queue retries.

        Raises:
            InvalidPayload: userId, provider or year missing
            LockUnavailable: Another backfill for this user is running
        """
        try:
            user_id = str(payload["userId"])
            provider = str(payload["provider"])
            year = str(payload["year"])
        except KeyError as e:
            raise InvalidPayload(f"backfillYear job missing {e}") from e

        async with self.locks.hold(LockKind.BACKFILL, provider, user_id):
            previous = await self._get_request(user_id, provider, year)
            if year != YTD and previous is not None and previous.status == BackfillStatus.COMPLETED.value:
                logger.info(f"Backfill {provider}:{user_id}:{year} already completed, nothing to do")
                return None

            try:
                window = resolve_window(
                    year, self.clock(), self.settings.backfill_min_year, previous, enforce_conflicts=False
                )
                token = await self._token(user_id, provider)
                session = await self.tracker.get_running(user_id, provider)
                outcome = await self._run_window(
                    user_id, provider, window, token, session.id if session else None
                )
            except RideSyncError:
                await self._set_failed(user_id, provider, year)
                raise

        if outcome.chunks.accepted == 0 and outcome.chunks.errors:
            raise ProviderRequestFailed(None, "; ".join(outcome.chunks.errors))
        return outcome

    async def history(self, user_id: str, provider: Optional[str] = None) -> list[BackfillRequest]:
        async with self.session_factory() as db:
            return await BackfillRequestRepository(db).list_for_user(user_id, provider)

    # =========================================================================
    # Window processing
    # =========================================================================

    async def _run_window(
        self,
        user_id: str,
        provider: str,
        window: BackfillWindow,
        token: str,
        import_session_id: Optional[str],
    ) -> BackfillOutcome:
        async with self.session_factory() as db:
            await BackfillRequestRepository(db).begin_run(user_id, provider, window.year)
            await db.commit()

        logger.info(
            f"Backfill {provider}:{user_id}:{window.year} started: "
            f"{window.start.isoformat()} - {window.end.isoformat()}"
        )
        report = await self.request_chunks(token, window.start, window.end)
        status = await self._finalize(user_id, provider, window, report)
        return BackfillOutcome(window=window, chunks=report, status=status, import_session_id=import_session_id)

    async def request_chunks(self, token: str, start: datetime, end: datetime) -> ChunkReport:
        """
        Request [start, end) chunk by chunk.

        A minimum-start rejection moves the chunk start forward (rounded up to
        a whole second) and retries; other failures are recorded and skipped.
        Chunk boundaries are contiguous.
        """
        report = ChunkReport()
        days = self.settings.backfill_chunk_days
        current = start

        while current < end:
            end_of_chunk = chunk_end(current, end, days)
            try:
                result = await self.client.request_backfill(token, current, end_of_chunk)
            except ProviderRangeRejected as e:
                min_start = ceil_to_second(e.min_start)
                if min_start > current:
                    logger.info(f"Provider minimum start is {min_start.isoformat()}, moving chunk start")
                    report.adjustments += 1
                    current = min_start
                    continue
                report.total += 1
                report.errors.append(self._chunk_error(current, end_of_chunk, e))
            except ProviderRequestFailed as e:
                report.total += 1
                report.errors.append(self._chunk_error(current, end_of_chunk, e))
            else:
                report.total += 1
                if result == ChunkResult.ACCEPTED:
                    report.accepted += 1
                else:
                    report.duplicates += 1
            current = end_of_chunk

        return report

    @staticmethod
    def _chunk_error(start: datetime, end: datetime, error: ProviderRequestFailed) -> str:
        message = f"{start.date().isoformat()} to {end.date().isoformat()}: {error}"
        logger.warning(f"Backfill chunk failed: {message}")
        return message

    async def _finalize(
        self,
        user_id: str,
        provider: str,
        window: BackfillWindow,
        report: ChunkReport,
    ) -> BackfillStatus:
        checkpoint = window.end if window.year == YTD else None

        async with self.session_factory() as db:
            repo = BackfillRequestRepository(db)
            if report.all_duplicates:
                # Nothing new will arrive through the webhook
                status = BackfillStatus.COMPLETED
                updated = await repo.mark_completed(user_id, provider, window.year, backfilled_up_to=checkpoint)
            elif report.accepted == 0:
                status = BackfillStatus.FAILED
                updated = await repo.set_status(user_id, provider, window.year, status)
            else:
                status = BackfillStatus.IN_PROGRESS
                values = {"backfilled_up_to": checkpoint} if checkpoint else {}
                updated = await repo.set_status(user_id, provider, window.year, status, **values)
            await db.commit()

        if not updated:
            logger.warning(f"Backfill {provider}:{user_id}:{window.year} already completed, {status.value} not applied")
        else:
            logger.info(
                f"Backfill {provider}:{user_id}:{window.year} -> {status.value} "
                f"({report.accepted} accepted, {report.duplicates} duplicates, {len(report.errors)} errors)"
            )
        return status

    async def _set_failed(self, user_id: str, provider: str, year: str) -> None:
        async with self.session_factory() as db:
            await BackfillRequestRepository(db).set_status(user_id, provider, year, BackfillStatus.FAILED)
            await db.commit()

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _require_supported(provider: str) -> None:
        if provider != GARMIN:
            raise InvalidBackfillRequest(f"Backfill is not supported for {provider}")

    async def _get_request(self, user_id: str, provider: str, year: str) -> Optional[BackfillRequest]:
        async with self.session_factory() as db:
            return await BackfillRequestRepository(db).get_for(user_id, provider, year)

    async def _token(self, user_id: str, provider: str) -> str:
        token = await self.vault.get_valid_token(user_id, provider)
        if token is None:
            raise NotConnected(user_id, provider)
        return token
