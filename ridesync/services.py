"""
Service container.

Wires settings, database, Redis and provider HTTP into the feature
services, and owns the background tasks (single-flight sweeper, job
queues, import session checker).
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridesync.config import Settings
from ridesync.features.backfill import BackfillOrchestrator, BACKFILL_YEAR_JOB
from ridesync.features.backfill.client import GarminBackfillClient
from ridesync.features.imports import ImportSessionTracker
from ridesync.features.imports.checker import ImportSessionChecker
from ridesync.features.ingestion import (
    PullBackfillService,
    RideIngestionService,
    WebhookDispatcher,
    SYNC_ACTIVITY_JOB,
    PROCESS_CALLBACK_JOB,
)
from ridesync.features.ingestion.clients import ActivityClient
from ridesync.features.locks import LockService
from ridesync.features.tokens import (
    ProviderOAuth,
    SingleFlight,
    InMemorySingleFlight,
    RedisSingleFlight,
    TokenVault,
)
from ridesync.shared.queue import JobQueue

logger = logging.getLogger(__name__)


# Sync jobs are cheap and frequent: more attempts, short backoff
SYNC_MAX_ATTEMPTS = 5
SYNC_RETRY_DELAY_SECONDS = 2.0


@dataclass
class Services:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    redis: redis.Redis
    single_flight: SingleFlight
    vault: TokenVault
    locks: LockService
    tracker: ImportSessionTracker
    sync_queue: JobQueue
    backfill_queue: JobQueue
    orchestrator: BackfillOrchestrator
    ingestion: RideIngestionService
    pull_backfill: PullBackfillService
    dispatcher: WebhookDispatcher
    checker: ImportSessionChecker

    async def start(self) -> None:
        await self.single_flight.start()
        await self.sync_queue.start()
        await self.backfill_queue.start()
        await self.checker.start()
        logger.info("Background services started")

    async def stop(self) -> None:
        await self.checker.stop()
        await self.backfill_queue.stop()
        await self.sync_queue.stop()
        await self.single_flight.stop()
        await self.redis.aclose()
        logger.info("Background services stopped")


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: redis.Redis,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Services:
    """
    Build the container.

    Args:
        settings: Application settings
        session_factory: Async session factory
        redis_client: Lock store (and shared single-flight store)
        transport: httpx transport for every provider call (tests)
    """
    locks = LockService(redis_client, settings)

    if settings.single_flight_backend == "redis":
        single_flight: SingleFlight = RedisSingleFlight(
            locks, redis_client, timeout=settings.token_refresh_timeout_seconds
        )
    else:
        single_flight = InMemorySingleFlight(
            timeout=settings.token_refresh_timeout_seconds,
            sweep_interval=settings.token_cache_sweep_interval_seconds,
        )

    vault = TokenVault(
        session_factory, single_flight, settings,
        oauth=ProviderOAuth(settings, transport=transport),
    )
    tracker = ImportSessionTracker(session_factory)

    sync_queue = JobQueue(
        "sync",
        concurrency=settings.sync_worker_concurrency,
        max_attempts=SYNC_MAX_ATTEMPTS,
        retry_delay=SYNC_RETRY_DELAY_SECONDS,
    )
    backfill_queue = JobQueue(
        "backfill",
        concurrency=settings.backfill_worker_concurrency,
        max_attempts=settings.job_max_attempts,
        retry_delay=settings.job_retry_delay_seconds,
    )

    orchestrator = BackfillOrchestrator(
        session_factory, vault, locks, tracker, settings,
        client=GarminBackfillClient(settings, transport=transport),
        queue=backfill_queue,
    )
    ingestion = RideIngestionService(
        session_factory, vault, locks,
        client=ActivityClient(settings, transport=transport),
    )
    pull_backfill = PullBackfillService(session_factory, vault, locks, ingestion, settings)
    dispatcher = WebhookDispatcher(session_factory, sync_queue, backfill_queue, ingestion, vault)

    sync_queue.register(SYNC_ACTIVITY_JOB, ingestion.handle_sync_job)
    backfill_queue.register(BACKFILL_YEAR_JOB, orchestrator.run_backfill_job)
    backfill_queue.register(PROCESS_CALLBACK_JOB, ingestion.handle_callback_job)

    return Services(
        settings=settings,
        session_factory=session_factory,
        redis=redis_client,
        single_flight=single_flight,
        vault=vault,
        locks=locks,
        tracker=tracker,
        sync_queue=sync_queue,
        backfill_queue=backfill_queue,
        orchestrator=orchestrator,
        ingestion=ingestion,
        pull_backfill=pull_backfill,
        dispatcher=dispatcher,
        checker=ImportSessionChecker(session_factory, locks, settings),
    )
