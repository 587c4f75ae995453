"""
Tests for ride ingestion.

Provider detail endpoints are stubbed by URL; rides land in SQLite.
"""

from datetime import timedelta

import httpx
import pytest

from ridesync.features.backfill.models import BackfillRequest, BackfillStatus
from ridesync.features.backfill.repository import BackfillRequestRepository
from ridesync.features.imports import ImportSessionTracker
from ridesync.features.ingestion import RideIngestionService
from ridesync.features.ingestion import service as ingestion_service
from ridesync.features.ingestion.clients import ActivityClient
from ridesync.features.ingestion.service import IngestOutcome, sync_job_id, callback_job_id
from ridesync.features.locks import LockService
from ridesync.features.rides import RideRepository
from ridesync.features.rides.normalize import normalize_activity
from ridesync.features.tokens import InMemorySingleFlight, ProviderOAuth, TokenVault
from ridesync.shared.errors import InvalidPayload, LockUnavailable, NotConnected, ProviderRequestFailed
from ridesync.shared.timeutils import utcnow

from conftest import run, seed_user, ProviderStub, FakeRedis


STRAVA_RIDE = {
    "id": 111,
    "sport_type": "Ride",
    "name": "Tuesday worlds",
    "start_date": "2023-07-04T17:30:00Z",
    "moving_time": 3600,
    "distance": 40000,
    "total_elevation_gain": 400,
    "location_city": "Boulder",
    "location_state": "CO",
}

GARMIN_RIDE = {
    "summaryId": "222",
    "activityType": "ROAD_BIKING",
    # 2023-07-04T17:32:00Z
    "startTimeInSeconds": 1688491920,
    "durationInSeconds": 3650,
    "distanceInMeters": 40200,
    "totalElevationGainInMeters": 410,
}

CALLBACK_URL = "https://apis.garmin.com/wellness-api/rest/activities?uploadStartTimeInSeconds=1&token=x"


class Provider:
    """URL-routed fake of the Strava and Garmin APIs."""

    def __init__(self):
        self.activities = {"/api/v3/activities/111": STRAVA_RIDE}
        self.callback = [GARMIN_RIDE]
        self.stub = ProviderStub(self.handle)

    def handle(self, request):
        if request.url.path == "/wellness-api/rest/activities":
            return httpx.Response(200, json=self.callback)
        if request.url.path in self.activities:
            return httpx.Response(200, json=self.activities[request.url.path])
        return httpx.Response(404, json={"message": "Record Not Found"})


def build(session_factory, settings, provider, redis_client=None):
    vault = TokenVault(
        session_factory,
        InMemorySingleFlight(),
        settings,
        oauth=ProviderOAuth(settings, transport=provider.stub.transport),
    )
    return RideIngestionService(
        session_factory,
        vault,
        LockService(redis_client or FakeRedis(), settings),
        client=ActivityClient(settings, transport=provider.stub.transport),
    )


def seed_connected(session_factory, service):
    run(seed_user(session_factory, provider="strava", provider_user_id="athlete-1", access_token="strava-token"))
    run(service.vault.store_token(
        "user-1", "garmin", "garmin-token", "r", utcnow() + timedelta(hours=6), provider_user_id="g-user"
    ))


async def stored_rides(session_factory):
    async with session_factory() as db:
        return await RideRepository(db).list_for_user("user-1")


async def insert_candidate(session_factory, candidate):
    """Store a ride directly, bypassing the duplicate check."""
    async with session_factory() as db:
        await RideRepository(db).upsert("user-1", candidate)
        await db.commit()


class TestProcessNotification:
    """One activity per notification."""

    def test_create_then_update(self, session_factory, settings):
        provider = Provider()
        service = build(session_factory, settings, provider)
        seed_connected(session_factory, service)

        first = run(service.process_notification("user-1", "strava", "111"))
        second = run(service.process_notification("user-1", "strava", "111"))

        assert first.created == 1
        assert second.updated == 1
        rides = run(stored_rides(session_factory))
        assert len(rides) == 1
        assert rides[0].strava_activity_id == "111"
        assert rides[0].location == "Boulder, CO"
        assert provider.stub.requests[0].headers["Authorization"] == "Bearer strava-token"

    def test_non_cycling_is_skipped(self, session_factory, settings):
        provider = Provider()
        provider.activities["/api/v3/activities/111"] = {**STRAVA_RIDE, "sport_type": "Run"}
        service = build(session_factory, settings, provider)
        seed_connected(session_factory, service)

        result = run(service.process_notification("user-1", "strava", "111"))

        assert result.skipped == 1
        assert run(stored_rides(session_factory)) == []

    def test_cross_provider_duplicate_not_stored(self, session_factory, settings):
        provider = Provider()
        service = build(session_factory, settings, provider)
        seed_connected(session_factory, service)

        run(service.process_callback("user-1", "garmin", CALLBACK_URL))
        result = run(service.process_notification("user-1", "strava", "111"))

        assert result.duplicates == 1
        rides = run(stored_rides(session_factory))
        assert [r.provider for r in rides] == ["garmin"]

    def test_known_native_id_updates_despite_overlap(self, session_factory, settings):
        provider = Provider()
        service = build(session_factory, settings, provider)
        seed_connected(session_factory, service)
        run(service.process_notification("user-1", "strava", "111"))
        run(insert_candidate(session_factory, normalize_activity("garmin", GARMIN_RIDE)))

        outcome = run(service.ingest_activity("user-1", "strava", {**STRAVA_RIDE, "name": "Renamed ride"}))

        assert outcome == IngestOutcome.UPDATED
        rides = {r.provider: r for r in run(stored_rides(session_factory))}
        assert rides["strava"].notes == "Renamed ride"
        assert run(service.ingest_activity("user-1", "garmin", GARMIN_RIDE)) == IngestOutcome.UPDATED

    def test_not_connected(self, session_factory, settings):
        provider = Provider()
        service = build(session_factory, settings, provider)
        run(seed_user(session_factory))

        with pytest.raises(NotConnected):
            run(service.process_notification("user-1", "strava", "111"))
        assert provider.stub.requests == []

    def test_fetch_failure_raises(self, session_factory, settings):
        provider = Provider()
        service = build(session_factory, settings, provider)
        seed_connected(session_factory, service)

        with pytest.raises(ProviderRequestFailed) as exc:
            run(service.process_notification("user-1", "strava", "999"))
        assert exc.value.status_code == 404


class TestImportSessionBookkeeping:
    """Running sessions and backfill counters follow ingestion."""

    def test_created_ride_stamped_with_running_session(self, session_factory, settings):
        provider = Provider()
        service = build(session_factory, settings, provider)
        seed_connected(session_factory, service)
        tracker = ImportSessionTracker(session_factory)
        session = run(tracker.start_session("user-1", "strava"))

        run(service.process_notification("user-1", "strava", "111"))

        assert run(stored_rides(session_factory))[0].import_session_id == session.id
        assert run(tracker.get_for_user(session.id, "user-1")).last_activity_received_at is not None

    def test_skipped_batch_does_not_touch_session(self, session_factory, settings):
        provider = Provider()
        provider.callback = [{**GARMIN_RIDE, "activityType": "RUNNING"}]
        service = build(session_factory, settings, provider)
        seed_connected(session_factory, service)
        tracker = ImportSessionTracker(session_factory)
        session = run(tracker.start_session("user-1", "garmin"))

        run(service.process_callback("user-1", "garmin", CALLBACK_URL))

        assert run(tracker.get_for_user(session.id, "user-1")).last_activity_received_at is None

    def test_rides_found_counts_created_rides_only(self, session_factory, settings):
        provider = Provider()
        service = build(session_factory, settings, provider)
        seed_connected(session_factory, service)

        async def add_request():
            async with session_factory() as db:
                db.add(BackfillRequest(
                    user_id="user-1", provider="garmin", year="2023",
                    status=BackfillStatus.IN_PROGRESS.value,
                ))
                await db.commit()

        async def rides_found():
            async with session_factory() as db:
                return (await BackfillRequestRepository(db).get_for("user-1", "garmin", "2023")).rides_found

        run(add_request())
        run(service.process_callback("user-1", "garmin", CALLBACK_URL))
        run(service.process_callback("user-1", "garmin", CALLBACK_URL))

        assert run(rides_found()) == 1


class TestCallbacks:
    """Garmin callback URLs carry a batch of summaries."""

    def test_bad_item_does_not_stop_batch(self, session_factory, settings):
        provider = Provider()
        provider.callback = [
            {"activityType": "ROAD_BIKING"},
            {**GARMIN_RIDE, "activityType": "WALKING", "summaryId": "223"},
            GARMIN_RIDE,
        ]
        service = build(session_factory, settings, provider)
        seed_connected(session_factory, service)

        result = run(service.process_callback("user-1", "garmin", CALLBACK_URL))

        assert result.created == 1
        assert result.skipped == 1
        assert len(result.errors) == 1
        assert str(provider.stub.requests[-1].url) == CALLBACK_URL

    @pytest.mark.parametrize("fields", [
        {"durationInSeconds": "n/a"},
        {"activityType": None},
        {"distanceInMeters": "forty km"},
    ])
    def test_malformed_item_does_not_stop_batch(self, session_factory, settings, fields):
        provider = Provider()
        provider.callback = [{**GARMIN_RIDE, "summaryId": "999", **fields}, GARMIN_RIDE]
        service = build(session_factory, settings, provider)
        seed_connected(session_factory, service)

        result = run(service.process_callback("user-1", "garmin", CALLBACK_URL))

        assert result.created == 1
        assert len(result.errors) == 1
        assert [r.garmin_activity_id for r in run(stored_rides(session_factory))] == ["222"]

    def test_unexpected_item_error_is_recorded(self, session_factory, settings, monkeypatch):
        provider = Provider()
        provider.callback = [{**GARMIN_RIDE, "summaryId": "999"}, GARMIN_RIDE]
        service = build(session_factory, settings, provider)
        seed_connected(session_factory, service)

        def normalize(provider_name, activity):
            if activity["summaryId"] == "999":
                raise RuntimeError("geocoder exploded")
            return normalize_activity(provider_name, activity)

        monkeypatch.setattr(ingestion_service, "normalize_activity", normalize)

        result = run(service.process_callback("user-1", "garmin", CALLBACK_URL))

        assert result.created == 1
        assert result.errors == ["RuntimeError: geocoder exploded"]

    def test_non_list_response(self, session_factory, settings):
        provider = Provider()
        provider.callback = {"activities": []}
        service = build(session_factory, settings, provider)
        seed_connected(session_factory, service)

        with pytest.raises(InvalidPayload):
            run(service.process_callback("user-1", "garmin", CALLBACK_URL))


class TestJobs:
    """Queue handler entry points."""

    def test_sync_job(self, session_factory, settings):
        provider = Provider()
        client = FakeRedis()
        service = build(session_factory, settings, provider, client)
        seed_connected(session_factory, service)

        result = run(service.handle_sync_job({"userId": "user-1", "provider": "strava", "activityId": 111}))

        assert result.created == 1
        assert client.store == {}

    def test_sync_job_requires_activity_id(self, session_factory, settings):
        service = build(session_factory, settings, Provider())
        with pytest.raises(InvalidPayload):
            run(service.handle_sync_job({"userId": "user-1", "provider": "strava"}))

    def test_sync_lock_busy(self, session_factory, settings):
        client = FakeRedis()
        client.store["lock:sync:strava:user-1"] = "other"
        service = build(session_factory, settings, Provider(), client)

        with pytest.raises(LockUnavailable):
            run(service.handle_sync_job({"userId": "user-1", "provider": "strava", "activityId": "111"}))

    def test_callback_job(self, session_factory, settings):
        provider = Provider()
        service = build(session_factory, settings, provider)
        seed_connected(session_factory, service)

        result = run(service.handle_callback_job(
            {"userId": "user-1", "provider": "garmin", "callbackURL": CALLBACK_URL}
        ))
        assert result.created == 1

    def test_job_ids_are_deterministic(self):
        assert sync_job_id("strava", "u1", "111") == "syncActivity:strava:u1:111"
        assert callback_job_id("garmin", "u1", CALLBACK_URL) == callback_job_id("garmin", "u1", CALLBACK_URL)
        assert callback_job_id("garmin", "u1", CALLBACK_URL) != callback_job_id("garmin", "u1", CALLBACK_URL + "2")


class TestSoftDelete:
    def test_delete_event(self, session_factory, settings):
        provider = Provider()
        service = build(session_factory, settings, provider)
        seed_connected(session_factory, service)
        run(service.process_notification("user-1", "strava", "111"))

        assert run(service.soft_delete("user-1", "strava", "111")) == 1
        assert run(stored_rides(session_factory)) == []
