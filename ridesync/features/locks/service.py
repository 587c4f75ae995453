"""
Distributed lock service.

Cooperative mutual exclusion keyed by (operation kind, provider, user),
stored in Redis:
- acquire: SET key <random value> NX EX <ttl>
- release: delete only if the stored value still matches
- extend: reset the TTL only if the stored value still matches

When Redis is unreachable, acquire either fails open (returns a handle
flagged `degraded`, logged as degraded mode) or fails closed, chosen per
call. Backfill and sync locks fail open; the global session checker lock
fails closed.
"""

import enum
import logging
import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import redis.asyncio as redis

from ridesync.config import Settings
from ridesync.shared.errors import LockUnavailable

logger = logging.getLogger(__name__)


RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("expire", KEYS[1], ARGV[2])
else
    return 0
end
"""


class LockKind(str, enum.Enum):
    SYNC = "sync"
    BACKFILL = "backfill"


@dataclass
class LockHandle:
    acquired: bool
    lock_key: str
    lock_value: str
    degraded: bool = False


class LockService:
    """
    Redis-backed locks.

    Usage:
        locks = LockService(get_redis_client(), settings)
        async with locks.hold(LockKind.BACKFILL, "garmin", user_id):
            ...  # raises LockUnavailable if someone else holds it
    """

    def __init__(self, client: redis.Redis, settings: Settings):
        self.client = client
        self.settings = settings

    @staticmethod
    def lock_key(kind: LockKind | str, provider: str, user_id: str) -> str:
        kind = kind.value if isinstance(kind, LockKind) else kind
        return f"lock:{kind}:{provider}:{user_id}"

    def ttl_for(self, kind: LockKind | str) -> int:
        if kind == LockKind.BACKFILL:
            return self.settings.lock_ttl_backfill_seconds
        return self.settings.lock_ttl_sync_seconds

    async def acquire(
        self,
        kind: LockKind | str,
        provider: str,
        user_id: str,
        ttl: Optional[int] = None,
        fail_open: bool = True,
    ) -> LockHandle:
        """
        Try to take the lock for (kind, provider, user).

        Args:
            kind: Operation kind
            provider: Provider name
            user_id: Internal user ID
            ttl: Seconds until the lock self-expires (defaults per kind)
            fail_open: Treat an unreachable store as acquired

        Returns:
            LockHandle; `acquired` is False when held by someone else
        """
        return await self.acquire_key(
            self.lock_key(kind, provider, user_id),
            ttl=ttl or self.ttl_for(kind),
            fail_open=fail_open,
        )

    async def acquire_key(self, lock_key: str, ttl: int, fail_open: bool = True) -> LockHandle:
        lock_value = secrets.token_hex(16)
        try:
            ok = await self.client.set(lock_key, lock_value, nx=True, ex=ttl)
        except redis.RedisError as e:
            if fail_open:
                logger.warning(f"Lock store unavailable, proceeding without lock (degraded mode): {lock_key}: {e}")
                return LockHandle(acquired=True, lock_key=lock_key, lock_value=lock_value, degraded=True)
            logger.warning(f"Lock store unavailable, not acquiring: {lock_key}: {e}")
            return LockHandle(acquired=False, lock_key=lock_key, lock_value=lock_value, degraded=True)

        if ok:
            logger.debug(f"Acquired lock {lock_key} (ttl={ttl}s)")
            return LockHandle(acquired=True, lock_key=lock_key, lock_value=lock_value)

        logger.debug(f"Lock busy: {lock_key}")
        return LockHandle(acquired=False, lock_key=lock_key, lock_value=lock_value)

    async def release(self, lock_key: str, lock_value: str) -> bool:
        """
        Delete the lock if it is still ours.

        Returns:
            True if deleted, False if it expired or belongs to someone else
        """
        try:
            deleted = await self.client.eval(RELEASE_SCRIPT, 1, lock_key, lock_value)
        except redis.RedisError as e:
            logger.warning(f"Failed to release lock {lock_key}: {e}")
            return False
        if not deleted:
            logger.warning(f"Lock {lock_key} was not ours on release (expired or taken over)")
        return bool(deleted)

    async def extend(self, lock_key: str, lock_value: str, ttl: int) -> bool:
        """Reset the TTL of a lock we still own."""
        try:
            extended = await self.client.eval(EXTEND_SCRIPT, 1, lock_key, lock_value, ttl)
        except redis.RedisError as e:
            logger.warning(f"Failed to extend lock {lock_key}: {e}")
            return False
        return bool(extended)

    async def is_locked(self, lock_key: str) -> bool:
        return await self.client.get(lock_key) is not None

    @asynccontextmanager
    async def hold(
        self,
        kind: LockKind | str,
        provider: str,
        user_id: str,
        ttl: Optional[int] = None,
    ) -> AsyncIterator[LockHandle]:
        """
        Hold the lock for the duration of the block; always released.

        Raises:
            LockUnavailable: If someone else holds it
        """
        handle = await self.acquire(kind, provider, user_id, ttl=ttl)
        if not handle.acquired:
            raise LockUnavailable(handle.lock_key, retry_after=self.settings.lock_retry_delay_seconds)
        try:
            yield handle
        finally:
            if not handle.degraded:
                await self.release(handle.lock_key, handle.lock_value)
