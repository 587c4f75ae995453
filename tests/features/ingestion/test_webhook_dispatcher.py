"""
Tests for webhook dispatch: user resolution and job queueing.
"""

from datetime import datetime

import httpx
from sqlalchemy import select

from ridesync.features.ingestion import RideIngestionService, WebhookDispatcher, SYNC_ACTIVITY_JOB, PROCESS_CALLBACK_JOB
from ridesync.features.ingestion.clients import ActivityClient
from ridesync.features.ingestion.schemas import (
    ActivityNotification,
    GarminDeregistrationPing,
    GarminPermissionsPing,
    StravaWebhookEvent,
    WhoopWebhookEvent,
)
from ridesync.features.ingestion.service import callback_job_id
from ridesync.features.locks import LockService
from ridesync.features.rides.models import Ride
from ridesync.features.tokens import InMemorySingleFlight, ProviderOAuth, TokenVault
from ridesync.features.tokens.repository import OAuthTokenRepository, UserAccountRepository
from ridesync.shared.queue import JobQueue

from conftest import run, seed_user, ProviderStub, FakeRedis


def build(session_factory, settings):
    stub = ProviderStub(lambda request: httpx.Response(500))
    vault = TokenVault(
        session_factory, InMemorySingleFlight(), settings,
        oauth=ProviderOAuth(settings, transport=stub.transport),
    )
    ingestion = RideIngestionService(
        session_factory, vault, LockService(FakeRedis(), settings),
        client=ActivityClient(settings, transport=stub.transport),
    )
    sync_queue = JobQueue("sync")
    backfill_queue = JobQueue("backfill")
    sync_queue.register(SYNC_ACTIVITY_JOB, ingestion.handle_sync_job)
    backfill_queue.register(PROCESS_CALLBACK_JOB, ingestion.handle_callback_job)
    dispatcher = WebhookDispatcher(session_factory, sync_queue, backfill_queue, ingestion, vault)
    return dispatcher, stub


async def add_ride(session_factory, column, native_id):
    async with session_factory() as db:
        db.add(Ride(
            user_id="user-1", start_time=datetime(2024, 5, 4, 8), duration_seconds=3600,
            distance_miles=20.0, elevation_gain_feet=500.0, **{column: native_id},
        ))
        await db.commit()


async def deleted_at(session_factory, column, native_id):
    async with session_factory() as db:
        result = await db.execute(select(Ride).where(getattr(Ride, column) == native_id))
        return result.scalar_one().deleted_at


async def connection(session_factory, provider):
    async with session_factory() as db:
        token = await OAuthTokenRepository(db).get_for_user("user-1", provider)
        account = await UserAccountRepository(db).get_for_user("user-1", provider)
        return token, account


class TestDispatch:
    """Activity notifications become jobs."""

    def test_queues_sync_and_callback_jobs(self, session_factory, settings):
        run(seed_user(session_factory, provider="garmin", provider_user_id="g-user", access_token="t"))
        dispatcher, _ = build(session_factory, settings)
        url = "https://apis.garmin.com/wellness-api/rest/activities?token=abc"

        result = run(dispatcher.dispatch([
            ActivityNotification("garmin", "g-user", activity_id="555"),
            ActivityNotification("garmin", "g-user", callback_url=url),
        ]))

        assert result.queued == 2
        assert "syncActivity:garmin:user-1:555" in dispatcher.sync_queue
        assert callback_job_id("garmin", "user-1", url) in dispatcher.backfill_queue

    def test_repeat_notification_already_queued(self, session_factory, settings):
        run(seed_user(session_factory, provider="garmin", provider_user_id="g-user", access_token="t"))
        dispatcher, _ = build(session_factory, settings)
        notification = ActivityNotification("garmin", "g-user", activity_id="555")

        run(dispatcher.dispatch([notification]))
        result = run(dispatcher.dispatch([notification]))

        assert result.already_queued == 1
        assert len(dispatcher.sync_queue) == 1

    def test_unknown_user_skipped(self, session_factory, settings):
        run(seed_user(session_factory, provider="garmin", provider_user_id="g-user", access_token="t"))
        dispatcher, _ = build(session_factory, settings)

        result = run(dispatcher.dispatch([
            ActivityNotification("garmin", "stranger", activity_id="1"),
            ActivityNotification("garmin", "g-user", activity_id="2"),
        ]))

        assert result.unknown_users == 1
        assert result.queued == 1


class TestGarminAccountEvents:
    def test_deregistration_forgets_without_revoking(self, session_factory, settings):
        run(seed_user(session_factory, provider="garmin", provider_user_id="g-user", access_token="t"))
        dispatcher, stub = build(session_factory, settings)

        removed = run(dispatcher.handle_garmin_deregistration(
            GarminDeregistrationPing.model_validate({"deregistrations": [{"userId": "g-user"}, {"userId": "nobody"}]})
        ))

        assert removed == 1
        assert run(connection(session_factory, "garmin")) == (None, None)
        assert stub.requests == []

    def test_permissions_change_is_logged(self, session_factory, settings, caplog):
        dispatcher, _ = build(session_factory, settings)

        run(dispatcher.handle_garmin_permissions(GarminPermissionsPing.model_validate({
            "userPermissionsChange": [{"userId": "g-user", "permissions": ["HEALTH_EXPORT"]}]
        })))

        assert "revoked ACTIVITY_EXPORT" in caplog.text


class TestWhoopEvents:
    def test_created_queues_sync(self, session_factory, settings):
        run(seed_user(session_factory, provider="whoop", provider_user_id="10129", access_token="t"))
        dispatcher, _ = build(session_factory, settings)

        run(dispatcher.handle_whoop_event(WhoopWebhookEvent.model_validate(
            {"user_id": 10129, "id": "w-1", "event_type": "workout.updated"}
        )))

        assert "syncActivity:whoop:user-1:w-1" in dispatcher.sync_queue

    def test_deleted_soft_deletes(self, session_factory, settings):
        run(seed_user(session_factory, provider="whoop", provider_user_id="10129", access_token="t"))
        run(add_ride(session_factory, "whoop_workout_id", "w-1"))
        dispatcher, _ = build(session_factory, settings)

        run(dispatcher.handle_whoop_event(WhoopWebhookEvent.model_validate(
            {"user_id": 10129, "id": "w-1", "event_type": "workout.deleted"}
        )))

        assert run(deleted_at(session_factory, "whoop_workout_id", "w-1")) is not None
        assert len(dispatcher.sync_queue) == 0


class TestStravaEvents:
    def event(self, **fields):
        body = {"object_type": "activity", "object_id": 777, "aspect_type": "create", "owner_id": 42}
        body.update(fields)
        return StravaWebhookEvent.model_validate(body)

    def test_create_queues_sync(self, session_factory, settings):
        run(seed_user(session_factory, provider="strava", provider_user_id="42", access_token="t"))
        dispatcher, _ = build(session_factory, settings)

        run(dispatcher.handle_strava_event(self.event()))
        assert "syncActivity:strava:user-1:777" in dispatcher.sync_queue

    def test_delete_soft_deletes(self, session_factory, settings):
        run(seed_user(session_factory, provider="strava", provider_user_id="42", access_token="t"))
        run(add_ride(session_factory, "strava_activity_id", "777"))
        dispatcher, _ = build(session_factory, settings)

        run(dispatcher.handle_strava_event(self.event(aspect_type="delete")))
        assert run(deleted_at(session_factory, "strava_activity_id", "777")) is not None

    def test_deauthorization_forgets(self, session_factory, settings):
        run(seed_user(session_factory, provider="strava", provider_user_id="42", access_token="t"))
        dispatcher, stub = build(session_factory, settings)

        run(dispatcher.handle_strava_event(self.event(
            object_type="athlete", object_id=42, aspect_type="update", updates={"authorized": "false"}
        )))

        assert run(connection(session_factory, "strava")) == (None, None)
        assert stub.requests == []

    def test_unknown_athlete_ignored(self, session_factory, settings):
        dispatcher, _ = build(session_factory, settings)
        run(dispatcher.handle_strava_event(self.event(owner_id=999)))
        assert len(dispatcher.sync_queue) == 0
