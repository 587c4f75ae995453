"""
Webhook dispatch.

Runs after the HTTP response has been sent: maps provider user ids to
internal users and turns each notification into a queued job. Unknown
provider users are logged and skipped. A failure on one item is logged
and the remaining items are still handled.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridesync.features.tokens import TokenVault
from ridesync.features.tokens.providers import GARMIN, STRAVA, WHOOP
from ridesync.features.tokens.repository import UserAccountRepository
from ridesync.shared.queue import JobQueue
from .schemas import (
    ActivityNotification,
    GarminDeregistrationPing,
    GarminPermissionsPing,
    WhoopWebhookEvent,
    StravaWebhookEvent,
    WHOOP_WORKOUT_CREATED,
    WHOOP_WORKOUT_UPDATED,
    WHOOP_WORKOUT_DELETED,
)
from .service import (
    RideIngestionService,
    SYNC_ACTIVITY_JOB,
    PROCESS_CALLBACK_JOB,
    sync_job_id,
    callback_job_id,
)

logger = logging.getLogger(__name__)


ACTIVITY_EXPORT_PERMISSION = "ACTIVITY_EXPORT"


@dataclass
class DispatchResult:
    queued: int = 0
    already_queued: int = 0
    unknown_users: int = 0
    failed: int = 0


class WebhookDispatcher:
    """
    Usage:
        dispatcher = WebhookDispatcher(AsyncSessionLocal, sync_queue, backfill_queue, ingestion, vault)
        background_tasks.add_task(dispatcher.dispatch, ping.notifications())
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sync_queue: JobQueue,
        backfill_queue: JobQueue,
        ingestion: RideIngestionService,
        vault: TokenVault,
    ):
        self.session_factory = session_factory
        self.sync_queue = sync_queue
        self.backfill_queue = backfill_queue
        self.ingestion = ingestion
        self.vault = vault

    async def resolve_user(self, provider: str, provider_user_id: str) -> Optional[str]:
        async with self.session_factory() as db:
            account = await UserAccountRepository(db).get_by_provider_user_id(provider, provider_user_id)
        if account is None:
            logger.warning(f"Unknown {provider} user {provider_user_id}, ignoring notification")
            return None
        return account.user_id

    async def enqueue_sync(self, user_id: str, provider: str, activity_id: str):
        return await self.sync_queue.enqueue(
            SYNC_ACTIVITY_JOB,
            {"userId": user_id, "provider": provider, "activityId": activity_id},
            job_id=sync_job_id(provider, user_id, activity_id),
        )

    async def enqueue_callback(self, user_id: str, provider: str, callback_url: str):
        return await self.backfill_queue.enqueue(
            PROCESS_CALLBACK_JOB,
            {"userId": user_id, "provider": provider, "callbackURL": callback_url},
            job_id=callback_job_id(provider, user_id, callback_url),
        )

    # =========================================================================
    # Activity notifications
    # =========================================================================

    async def dispatch(self, notifications: list[ActivityNotification]) -> DispatchResult:
        result = DispatchResult()
        for notification in notifications:
            try:
                user_id = await self.resolve_user(notification.provider, notification.provider_user_id)
                if user_id is None:
                    result.unknown_users += 1
                    continue

                if notification.is_callback:
                    queued = await self.enqueue_callback(user_id, notification.provider, notification.callback_url)
                else:
                    queued = await self.enqueue_sync(user_id, notification.provider, notification.activity_id)
            except SQLAlchemyError as e:
                logger.error(f"Failed to dispatch {notification}: {e}")
                result.failed += 1
                continue

            if queued.status == "already_queued":
                result.already_queued += 1
            else:
                result.queued += 1

        logger.info(
            f"Dispatched {len(notifications)} notifications: {result.queued} queued, "
            f"{result.already_queued} already queued, {result.unknown_users} unknown users"
        )
        return result

    # =========================================================================
    # Garmin account events
    # =========================================================================

    async def handle_garmin_deregistration(self, ping: GarminDeregistrationPing) -> int:
        """Forget token and account link of each deregistered user. Returns users removed."""
        removed = 0
        for item in ping.deregistrations:
            try:
                user_id = await self.resolve_user(GARMIN, item.userId)
                if user_id is None:
                    continue
                await self.vault.forget(user_id, GARMIN)
            except SQLAlchemyError as e:
                logger.error(f"Failed to deregister Garmin user {item.userId}: {e}")
                continue
            removed += 1
        return removed

    async def handle_garmin_permissions(self, ping: GarminPermissionsPing) -> None:
        for change in ping.userPermissionsChange:
            if ACTIVITY_EXPORT_PERMISSION not in change.permissions:
                logger.warning(
                    f"Garmin user {change.userId} revoked {ACTIVITY_EXPORT_PERMISSION}; "
                    "activity notifications will stop"
                )
            else:
                logger.info(f"Garmin user {change.userId} permissions: {', '.join(change.permissions)}")

    # =========================================================================
    # WHOOP / Strava events
    # =========================================================================

    async def handle_whoop_event(self, event: WhoopWebhookEvent) -> None:
        try:
            user_id = await self.resolve_user(WHOOP, event.user_id)
            if user_id is None:
                return

            if event.event_type == WHOOP_WORKOUT_DELETED:
                await self.ingestion.soft_delete(user_id, WHOOP, event.id)
            elif event.event_type in (WHOOP_WORKOUT_CREATED, WHOOP_WORKOUT_UPDATED):
                await self.enqueue_sync(user_id, WHOOP, event.id)
            else:
                logger.warning(f"Unknown WHOOP event type: {event.event_type}")
        except SQLAlchemyError as e:
            logger.error(f"Failed to handle WHOOP event {event.event_type} for workout {event.id}: {e}")

    async def handle_strava_event(self, event: StravaWebhookEvent) -> None:
        try:
            user_id = await self.resolve_user(STRAVA, event.owner_id)
            if user_id is None:
                return

            if event.is_deauthorization:
                await self.vault.forget(user_id, STRAVA)
            elif event.object_type == "activity":
                if event.aspect_type in ("create", "update"):
                    await self.enqueue_sync(user_id, STRAVA, event.object_id)
                elif event.aspect_type == "delete":
                    await self.ingestion.soft_delete(user_id, STRAVA, event.object_id)
                else:
                    logger.warning(f"Unknown Strava aspect type: {event.aspect_type}")
            else:
                logger.info(f"Ignoring Strava {event.object_type} {event.aspect_type} event for user {user_id}")
        except SQLAlchemyError as e:
            logger.error(f"Failed to handle Strava {event.aspect_type} event for {event.object_id}: {e}")
