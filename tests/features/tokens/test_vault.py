"""
Tests for the token vault.

Covers the fast path (no network for fresh tokens), single-flight refresh
under concurrency, refresh-token rotation and failure handling.
"""

import asyncio
from datetime import timedelta

import httpx
import pytest

from ridesync.features.tokens import InMemorySingleFlight, ProviderOAuth, TokenVault
from ridesync.features.tokens.repository import OAuthTokenRepository, UserAccountRepository
from ridesync.shared.errors import NotConnected, MissingRefreshToken
from ridesync.shared.timeutils import utcnow

from conftest import run, seed_user, ProviderStub


def make_vault(session_factory, settings, stub):
    return TokenVault(
        session_factory,
        InMemorySingleFlight(timeout=30.0),
        settings,
        oauth=ProviderOAuth(settings, transport=stub.transport),
    )


async def stored_token(session_factory, user_id, provider):
    async with session_factory() as db:
        return await OAuthTokenRepository(db).get_for_user(user_id, provider)


# =============================================================================
# Fast path
# =============================================================================

class TestFreshToken:
    """Tokens outside the skew window are returned as stored."""

    def test_no_network_call(self, session_factory, settings):
        stub = ProviderStub(lambda request: httpx.Response(500))
        run(seed_user(
            session_factory, provider="whoop", access_token="still-good",
            expires_at=utcnow() + timedelta(hours=1),
        ))
        vault = make_vault(session_factory, settings, stub)

        assert run(vault.get_valid_token("user-1", "whoop")) == "still-good"
        assert stub.requests == []

    def test_not_connected_is_none(self, session_factory, settings):
        stub = ProviderStub(lambda request: httpx.Response(500))
        run(seed_user(session_factory))
        vault = make_vault(session_factory, settings, stub)

        assert run(vault.get_valid_token("user-1", "garmin")) is None
        with pytest.raises(NotConnected):
            run(vault.require_valid_token("user-1", "garmin"))

    def test_expired_without_refresh_token(self, session_factory, settings):
        stub = ProviderStub(lambda request: httpx.Response(500))
        run(seed_user(
            session_factory, provider="whoop", access_token="old", refresh_token=None,
            expires_at=utcnow() - timedelta(minutes=1),
        ))
        vault = make_vault(session_factory, settings, stub)

        assert run(vault.get_valid_token("user-1", "whoop")) is None
        with pytest.raises(MissingRefreshToken):
            run(vault.require_valid_token("user-1", "whoop"))
        assert stub.requests == []


# =============================================================================
# Refresh
# =============================================================================

class TestRefresh:
    """Expired or near-expiry tokens are refreshed once."""

    def test_concurrent_callers_share_one_refresh(self, session_factory, settings):
        async def slow_token_endpoint(request):
            await asyncio.sleep(0.2)
            return httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600})

        stub = ProviderStub(slow_token_endpoint)
        run(seed_user(
            session_factory, provider="whoop", access_token="stale",
            expires_at=utcnow() - timedelta(minutes=1),
        ))
        vault = make_vault(session_factory, settings, stub)

        async def scenario():
            return await asyncio.gather(*[
                vault.get_valid_token("user-1", "whoop") for _ in range(10)
            ])

        tokens = run(scenario())
        assert tokens == ["fresh"] * 10
        assert len(stub.requests) == 1

    def test_near_expiry_refreshes(self, session_factory, settings):
        stub = ProviderStub(lambda request: httpx.Response(
            200, json={"access_token": "fresh", "expires_in": 3600}
        ))
        run(seed_user(
            session_factory, provider="whoop", access_token="almost",
            expires_at=utcnow() + timedelta(seconds=60),
        ))
        vault = make_vault(session_factory, settings, stub)

        assert run(vault.get_valid_token("user-1", "whoop")) == "fresh"

    def test_refresh_token_kept_when_not_rotated(self, session_factory, settings):
        stub = ProviderStub(lambda request: httpx.Response(
            200, json={"access_token": "fresh", "expires_in": 3600}
        ))
        run(seed_user(
            session_factory, provider="whoop", access_token="stale", refresh_token="keep-me",
            expires_at=utcnow() - timedelta(minutes=1),
        ))
        vault = make_vault(session_factory, settings, stub)
        run(vault.get_valid_token("user-1", "whoop"))

        token = run(stored_token(session_factory, "user-1", "whoop"))
        assert token.access_token == "fresh"
        assert token.refresh_token == "keep-me"
        assert token.expires_at > utcnow() + timedelta(minutes=50)

    def test_refresh_token_rotated(self, session_factory, settings):
        stub = ProviderStub(lambda request: httpx.Response(
            200, json={"access_token": "fresh", "refresh_token": "new-refresh", "expires_in": 3600}
        ))
        run(seed_user(
            session_factory, provider="strava", access_token="stale",
            expires_at=utcnow() - timedelta(minutes=1),
        ))
        vault = make_vault(session_factory, settings, stub)
        run(vault.get_valid_token("user-1", "strava"))

        token = run(stored_token(session_factory, "user-1", "strava"))
        assert token.refresh_token == "new-refresh"

    def test_failed_refresh_leaves_token_untouched(self, session_factory, settings):
        stub = ProviderStub(lambda request: httpx.Response(400, json={"error": "invalid_grant"}))
        expires_at = utcnow() - timedelta(minutes=1)
        run(seed_user(
            session_factory, provider="whoop", access_token="stale", refresh_token="r1",
            expires_at=expires_at,
        ))
        vault = make_vault(session_factory, settings, stub)

        assert run(vault.get_valid_token("user-1", "whoop")) is None
        token = run(stored_token(session_factory, "user-1", "whoop"))
        assert token.access_token == "stale"
        assert token.refresh_token == "r1"

    def test_missing_config_is_none(self, session_factory, settings):
        settings.whoop_client_secret = None
        stub = ProviderStub(lambda request: httpx.Response(200, json={"access_token": "x"}))
        run(seed_user(
            session_factory, provider="whoop", access_token="stale",
            expires_at=utcnow() - timedelta(minutes=1),
        ))
        vault = make_vault(session_factory, settings, stub)

        assert run(vault.get_valid_token("user-1", "whoop")) is None
        assert stub.requests == []

    def test_next_expiry_cycle_refreshes_again(self, session_factory, settings):
        stub = ProviderStub(lambda request: httpx.Response(
            200, json={"access_token": f"fresh-{len(stub.requests)}", "expires_in": 1}
        ))
        run(seed_user(
            session_factory, provider="whoop", access_token="stale",
            expires_at=utcnow() - timedelta(minutes=1),
        ))
        vault = make_vault(session_factory, settings, stub)

        first = run(vault.get_valid_token("user-1", "whoop"))
        # expires_in=1 is inside the skew window, so the next call refreshes again
        second = run(vault.get_valid_token("user-1", "whoop"))
        assert (first, second) == ("fresh-1", "fresh-2")
        assert len(stub.requests) == 2


# =============================================================================
# Disconnect
# =============================================================================

class TestDisconnect:
    """Disconnect revokes and removes token and account link."""

    def test_revoke_then_delete(self, session_factory, settings):
        stub = ProviderStub(lambda request: httpx.Response(401))
        run(seed_user(
            session_factory, provider="strava", provider_user_id="athlete-9", access_token="tok",
        ))
        vault = make_vault(session_factory, settings, stub)

        assert run(vault.disconnect("user-1", "strava")) is True
        assert stub.requests[0].headers["Authorization"] == "Bearer tok"
        assert run(stored_token(session_factory, "user-1", "strava")) is None

        async def account():
            async with session_factory() as db:
                return await UserAccountRepository(db).get_for_user("user-1", "strava")

        assert run(account()) is None
