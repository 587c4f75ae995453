"""
Ride ingestion.

Background side of the webhook pipeline: fetch activity detail with a
valid token, drop non-cycling activities, skip cross-provider duplicates,
upsert by native id and keep the running import session informed.
"""

import enum
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridesync.features.backfill.repository import BackfillRequestRepository
from ridesync.features.imports.repository import ImportSessionRepository
from ridesync.features.locks import LockService, LockKind
from ridesync.features.rides.duplicates import find_potential_duplicate
from ridesync.features.rides.normalize import normalize_activity
from ridesync.features.rides.repository import RideRepository
from ridesync.features.tokens import TokenVault
from ridesync.shared.errors import NotConnected, InvalidPayload
from .clients import ActivityClient

logger = logging.getLogger(__name__)


SYNC_ACTIVITY_JOB = "syncActivity"
PROCESS_CALLBACK_JOB = "processCallback"


def sync_job_id(provider: str, user_id: str, activity_id: str) -> str:
    return f"{SYNC_ACTIVITY_JOB}:{provider}:{user_id}:{activity_id}"


def callback_job_id(provider: str, user_id: str, callback_url: str) -> str:
    digest = hashlib.sha1(callback_url.encode()).hexdigest()[:16]
    return f"{PROCESS_CALLBACK_JOB}:{provider}:{user_id}:{digest}"


def require_field(payload: dict, key: str) -> str:
    """
    Raises:
        InvalidPayload: Required job field missing
    """
    value = payload.get(key)
    if value in (None, ""):
        raise InvalidPayload(f"Job payload missing '{key}'")
    return str(value)


class IngestOutcome(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"  # not a cycling activity


@dataclass
class BatchResult:
    created: int = 0
    updated: int = 0
    duplicates: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.created + self.updated

    def add(self, outcome: IngestOutcome) -> None:
        if outcome == IngestOutcome.CREATED:
            self.created += 1
        elif outcome == IngestOutcome.UPDATED:
            self.updated += 1
        elif outcome == IngestOutcome.DUPLICATE:
            self.duplicates += 1
        else:
            self.skipped += 1


class RideIngestionService:
    """
    Usage:
        service = RideIngestionService(AsyncSessionLocal, vault, locks)
        await service.process_notification(user_id, "strava", "123456")
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        vault: TokenVault,
        locks: LockService,
        client: Optional[ActivityClient] = None,
    ):
        self.session_factory = session_factory
        self.vault = vault
        self.locks = locks
        self.client = client or ActivityClient(vault.settings)

    # =========================================================================
    # Job handlers
    # =========================================================================

    async def handle_sync_job(self, payload: dict) -> BatchResult:
        """
        syncActivity job: one activity, under the per-user sync lock.

        Raises:
            InvalidPayload: userId, provider or activityId missing
            LockUnavailable: Another sync for this user is running
        """
        user_id = require_field(payload, "userId")
        provider = require_field(payload, "provider")
        activity_id = payload.get("activityId")
        if activity_id in (None, ""):
            raise InvalidPayload("syncActivity requires activityId")

        async with self.locks.hold(LockKind.SYNC, provider, user_id):
            return await self.process_notification(user_id, provider, str(activity_id))

    async def handle_callback_job(self, payload: dict) -> BatchResult:
        """processCallback job: pull a Garmin callback URL and ingest its items."""
        return await self.process_callback(
            require_field(payload, "userId"),
            require_field(payload, "provider"),
            require_field(payload, "callbackURL"),
        )

    # =========================================================================
    # Processing
    # =========================================================================

    async def _token(self, user_id: str, provider: str) -> str:
        token = await self.vault.get_valid_token(user_id, provider)
        if token is None:
            raise NotConnected(user_id, provider)
        return token

    async def process_notification(self, user_id: str, provider: str, activity_id: str) -> BatchResult:
        """
        Fetch and ingest one activity.

        Raises:
            NotConnected: No usable token (job is retried)
            ProviderRequestFailed: Detail fetch failed (job is retried)
            InvalidPayload: Detail lacks required fields
        """
        token = await self._token(user_id, provider)
        activity = await self.client.fetch_activity(provider, token, activity_id)

        session_id = await self._running_session_id(user_id, provider)
        result = BatchResult()
        result.add(await self.ingest_activity(user_id, provider, activity, session_id))
        await self._touch_session(session_id, result)
        return result

    async def process_callback(self, user_id: str, provider: str, callback_url: str) -> BatchResult:
        """
        Fetch a callback URL and ingest every item; a bad item is logged
        and does not stop the rest.
        """
        token = await self._token(user_id, provider)
        activities = await self.client.fetch_callback(callback_url, token)
        logger.info(f"Callback for user {user_id} returned {len(activities)} {provider} activities")
        return await self.ingest_batch(user_id, provider, activities)

    async def ingest_batch(self, user_id: str, provider: str, activities: list) -> BatchResult:
        session_id = await self._running_session_id(user_id, provider)
        result = BatchResult()
        for activity in activities:
            try:
                result.add(await self.ingest_activity(user_id, provider, activity, session_id))
            except InvalidPayload as e:
                logger.warning(f"Skipping unparseable {provider} activity for user {user_id}: {e}")
                result.errors.append(str(e))
            except SQLAlchemyError:
                raise
            except Exception as e:
                logger.exception(f"Failed to ingest {provider} activity for user {user_id}")
                result.errors.append(f"{type(e).__name__}: {e}")

        await self._touch_session(session_id, result)
        logger.info(
            f"Ingested {provider} batch for user {user_id}: {result.created} created, "
            f"{result.updated} updated, {result.duplicates} duplicates, {result.skipped} skipped, "
            f"{len(result.errors)} errors"
        )
        return result

    async def ingest_activity(
        self,
        user_id: str,
        provider: str,
        activity: dict,
        import_session_id: Optional[str] = None,
    ) -> IngestOutcome:
        """
        Normalize, dedupe and upsert one provider activity.

        Raises:
            InvalidPayload: Required fields missing
        """
        candidate = normalize_activity(provider, activity)
        if candidate is None:
            logger.debug(f"Skipping non-cycling {provider} activity for user {user_id}")
            return IngestOutcome.SKIPPED

        async with self.session_factory() as db:
            rides = RideRepository(db)
            # Known native ids are updates; only new ones can duplicate another provider
            existing = await rides.get_by_native_id(provider, candidate.provider_activity_id)
            duplicate = None if existing is not None else await find_potential_duplicate(db, user_id, candidate)
            if duplicate is not None:
                logger.info(
                    f"Skipping {provider} activity {candidate.provider_activity_id}: "
                    f"duplicate of ride {duplicate.id} ({duplicate.provider})"
                )
                return IngestOutcome.DUPLICATE

            ride_id, created = await rides.upsert(user_id, candidate, import_session_id)
            if created:
                await BackfillRequestRepository(db).increment_rides_found(
                    user_id, provider, candidate.start_time
                )
            await db.commit()

        logger.info(
            f"{'Created' if created else 'Updated'} ride {ride_id} from {provider} "
            f"activity {candidate.provider_activity_id}"
        )
        return IngestOutcome.CREATED if created else IngestOutcome.UPDATED

    async def soft_delete(self, user_id: str, provider: str, activity_id: str) -> int:
        async with self.session_factory() as db:
            deleted = await RideRepository(db).soft_delete(user_id, provider, activity_id)
            await db.commit()
        logger.info(f"Soft-deleted {deleted} ride(s) for {provider} activity {activity_id} (user {user_id})")
        return deleted

    async def _running_session_id(self, user_id: str, provider: str) -> Optional[str]:
        async with self.session_factory() as db:
            session = await ImportSessionRepository(db).get_running(user_id, provider)
        return session.id if session else None

    async def _touch_session(self, session_id: Optional[str], result: BatchResult) -> None:
        # Once per batch, not per ride
        if session_id is None or result.processed == 0:
            return
        async with self.session_factory() as db:
            await ImportSessionRepository(db).record_activity(session_id)
            await db.commit()
