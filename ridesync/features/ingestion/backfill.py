"""
Pull backfill for WHOOP and Strava.

Unlike Garmin, these providers have no asynchronous backfill endpoint:
the year window is listed page by page and every item goes through the
regular ingestion path, so the run is complete when the request returns.

Status transitions (BackfillRequest) follow the Garmin orchestrator:
    in_progress -> completed | failed
    failed -> in_progress (retry)
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridesync.config import Settings
from ridesync.features.backfill.models import BackfillRequest, BackfillStatus, YTD
from ridesync.features.backfill.repository import BackfillRequestRepository
from ridesync.features.backfill.windows import BackfillWindow, resolve_window, validate_year_key
from ridesync.features.locks import LockService, LockKind
from ridesync.features.tokens import TokenVault
from ridesync.features.tokens.providers import STRAVA, WHOOP
from ridesync.shared.errors import (
    NotConnected,
    ProviderRequestFailed,
    InvalidBackfillRequest,
    InvalidPayload,
)
from ridesync.shared.timeutils import utcnow
from .clients import ActivityClient
from .service import RideIngestionService, BatchResult

logger = logging.getLogger(__name__)


PULL_PROVIDERS = (STRAVA, WHOOP)

# WHOOP has no data before its public launch
PROVIDER_MIN_YEARS = {WHOOP: 2015}


@dataclass
class PullBackfillOutcome:
    window: BackfillWindow
    fetched: int
    result: BatchResult
    status: BackfillStatus

    def to_dict(self) -> dict:
        return {
            "success": True,
            "message": f"Imported {self.result.created} rides for {self.window.description}.",
            "year": self.window.year,
            "status": self.status.value,
            "startDate": self.window.start.isoformat() + "Z",
            "endDate": self.window.end.isoformat() + "Z",
            "totalActivities": self.fetched,
            "imported": self.result.created,
            "updated": self.result.updated,
            "duplicates": self.result.duplicates,
            "skipped": self.result.skipped,
            "warnings": self.result.errors,
        }


class PullBackfillService:
    """
    Usage:
        service = PullBackfillService(AsyncSessionLocal, vault, locks, ingestion, settings)
        outcome = await service.pull_backfill(user_id, "strava", "2023")
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        vault: TokenVault,
        locks: LockService,
        ingestion: RideIngestionService,
        settings: Settings,
        client: Optional[ActivityClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.vault = vault
        self.locks = locks
        self.ingestion = ingestion
        self.settings = settings
        self.client = client or ingestion.client
        self.clock = clock

    def min_year(self, provider: str) -> int:
        return max(self.settings.backfill_min_year, PROVIDER_MIN_YEARS.get(provider, 0))

    async def pull_backfill(self, user_id: str, provider: str, year: str) -> PullBackfillOutcome:
        """
        List and ingest one year key now.

        Raises:
            InvalidBackfillRequest: Unsupported provider or year out of range
            LockUnavailable: Another backfill for this user is running
            DuplicateWindow: Year already backfilled or ytd in progress
            NotConnected: No usable token
            ProviderRequestFailed: Listing failed (request marked failed)
            InvalidPayload: Listing had an unexpected shape (request marked failed)
        """
        if provider not in PULL_PROVIDERS:
            raise InvalidBackfillRequest(f"Pull backfill is not supported for {provider}")
        now = self.clock()
        min_year = self.min_year(provider)
        year = validate_year_key(year, now, min_year)

        async with self.locks.hold(LockKind.BACKFILL, provider, user_id):
            previous = await self._get_request(user_id, provider, year)
            window = resolve_window(year, now, min_year, previous)

            token = await self.vault.get_valid_token(user_id, provider)
            if token is None:
                raise NotConnected(user_id, provider)

            async with self.session_factory() as db:
                await BackfillRequestRepository(db).begin_run(user_id, provider, year)
                await db.commit()

            logger.info(f"Pull backfill {provider}:{user_id}:{year} from {window.start} to {window.end}")
            try:
                activities = await self.client.list_activities(provider, token, window.start, window.end)
            except (ProviderRequestFailed, InvalidPayload) as e:
                logger.error(f"Pull backfill {provider}:{user_id}:{year} failed: {e}")
                async with self.session_factory() as db:
                    await BackfillRequestRepository(db).set_status(
                        user_id, provider, year, BackfillStatus.FAILED
                    )
                    await db.commit()
                raise

            # Created rides count towards rides_found while the row is in_progress
            result = await self.ingestion.ingest_batch(user_id, provider, activities)

            async with self.session_factory() as db:
                await BackfillRequestRepository(db).mark_completed(
                    user_id, provider, year,
                    backfilled_up_to=window.end if year == YTD else None,
                )
                await db.commit()

        logger.info(
            f"Pull backfill {provider}:{user_id}:{year} completed: "
            f"{len(activities)} listed, {result.created} created"
        )
        return PullBackfillOutcome(
            window=window, fetched=len(activities), result=result, status=BackfillStatus.COMPLETED
        )

    async def _get_request(self, user_id: str, provider: str, year: str) -> Optional[BackfillRequest]:
        async with self.session_factory() as db:
            return await BackfillRequestRepository(db).get_for(user_id, provider, year)
