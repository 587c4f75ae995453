"""
Shared test fixtures.

Persistence runs against a temporary SQLite file (aiosqlite, NullPool so
every asyncio.run gets fresh connections). Redis is replaced by FakeRedis,
provider HTTP by httpx.MockTransport.
"""

import asyncio
import fnmatch
from datetime import datetime, timedelta
from typing import Optional

import httpx
import pytest
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from ridesync.config import Settings
from ridesync.db.session import build_session_factory, init_db
from ridesync.features.locks.service import RELEASE_SCRIPT, EXTEND_SCRIPT
from ridesync.features.tokens.repository import OAuthTokenRepository, UserAccountRepository
from ridesync.models import User
from ridesync.shared.timeutils import utcnow


def run(coro):
    """Drive a coroutine from a synchronous test."""
    return asyncio.run(coro)


# =============================================================================
# Fake Redis
# =============================================================================

class FakeRedis:
    """
    The subset of redis.asyncio.Redis the lock service uses.

    Set `fail = True` to simulate an unreachable server.
    """

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise redis.ConnectionError("connection refused")

    async def get(self, key):
        self._check()
        return self.store.get(key)

    async def set(self, key, value, nx=False, ex=None):
        self._check()
        if nx and key in self.store:
            return None
        self.store[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def eval(self, script, numkeys, *args):
        self._check()
        key, value = args[0], args[1]
        if self.store.get(key) != value:
            return 0
        if script == RELEASE_SCRIPT:
            del self.store[key]
            self.ttls.pop(key, None)
            return 1
        if script == EXTEND_SCRIPT:
            self.ttls[key] = int(args[2])
            return 1
        raise NotImplementedError(script)

    async def keys(self, pattern="*"):
        return [k for k in self.store if fnmatch.fnmatch(k, pattern)]

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        pass


# =============================================================================
# Provider HTTP
# =============================================================================

class ProviderStub:
    """
    httpx.MockTransport wrapper that records requests.

    Usage:
        stub = ProviderStub(lambda request: httpx.Response(202))
        client = GarminBackfillClient(settings, transport=stub.transport)
    """

    def __init__(self, handler):
        self.handler = handler
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self._handle)

    async def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.handler(request)
        if asyncio.iscoroutine(response):
            response = await response
        return response

    def calls_to(self, fragment: str) -> list[httpx.Request]:
        return [r for r in self.requests if fragment in str(r.url)]


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path}/app.db",
        garmin_client_id="garmin-client",
        garmin_token_url="https://connectapi.garmin.com/di-oauth2-service/oauth/token",
        garmin_api_base="https://apis.garmin.com/wellness-api",
        whoop_client_id="whoop-client",
        whoop_client_secret="whoop-secret",
        strava_client_id="strava-client",
        strava_client_secret="strava-secret",
        strava_webhook_verify_token="verify-me",
    )


@pytest.fixture
def session_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path}/test.db",
        poolclass=NullPool,
    )
    run(init_db(engine))
    return build_session_factory(engine)


@pytest.fixture
def fake_redis():
    return FakeRedis()


# =============================================================================
# Seed helpers
# =============================================================================

async def seed_user(
    session_factory,
    user_id: str = "user-1",
    provider: Optional[str] = None,
    provider_user_id: Optional[str] = None,
    access_token: Optional[str] = None,
    refresh_token: Optional[str] = "refresh-1",
    expires_at: Optional[datetime] = None,
) -> str:
    """Create a user, optionally with a token and a provider account link."""
    async with session_factory() as db:
        db.add(User(id=user_id))
        await db.flush()
        if provider and access_token:
            await OAuthTokenRepository(db).save(
                user_id, provider, access_token, refresh_token,
                expires_at or utcnow() + timedelta(hours=6),
            )
        if provider and provider_user_id:
            await UserAccountRepository(db).link(user_id, provider, provider_user_id)
        await db.commit()
    return user_id
