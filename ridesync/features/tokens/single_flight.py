"""
Single-flight execution of token refreshes.

Concurrent callers asking for the same key share one in-flight call
instead of each issuing their own.

Two backends:
- InMemorySingleFlight: per process, entries expire after `timeout`
  seconds and are swept by an owned background task.
- RedisSingleFlight: across processes, built on the lock service plus a
  short-lived result key that followers poll.

Two callers can still both miss an entry in the narrow window where one
refresh has just settled and cleared it; the second refresh is redundant
but harmless (both end up with valid tokens), so it is not prevented.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as redis

from ridesync.features.locks.service import LockService

logger = logging.getLogger(__name__)


class SingleFlight(ABC):
    """Run `fn` at most once at a time per key; concurrent callers share the result."""

    @abstractmethod
    async def run(self, key: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        ...

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass


# =============================================================================
# In-process backend
# =============================================================================

@dataclass
class _Entry:
    task: asyncio.Future
    started_at: float


class InMemorySingleFlight(SingleFlight):
    """
    Per-process single-flight map.

    Usage:
        flight = InMemorySingleFlight(timeout=30.0, sweep_interval=60.0)
        await flight.start()
        token = await flight.run("whoop:user-1", do_refresh)
        await flight.stop()
    """

    def __init__(
        self,
        timeout: float = 30.0,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout = timeout
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    async def run(self, key: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        entry = self._entries.get(key)
        if entry is not None:
            age = self._clock() - entry.started_at
            if age < self.timeout:
                logger.debug(f"Waiting for in-flight call: {key}")
                return await asyncio.shield(entry.task)
            logger.warning(f"Discarding stale in-flight entry: {key} (age: {age:.1f}s)")
            self._entries.pop(key, None)

        task = asyncio.ensure_future(fn())
        entry = _Entry(task=task, started_at=self._clock())
        self._entries[key] = entry
        task.add_done_callback(lambda _t: self._discard(key, entry))

        # Shielded so a cancelled caller does not cancel the shared call
        return await asyncio.shield(task)

    def _discard(self, key: str, entry: _Entry) -> None:
        # A stale entry may already have been replaced by a newer one
        if self._entries.get(key) is entry:
            del self._entries[key]

    def sweep(self) -> int:
        """Drop entries older than the timeout. Returns how many were removed."""
        now = self._clock()
        stale = [
            key for key, entry in self._entries.items()
            if now - entry.started_at > self.timeout
        ]
        for key in stale:
            logger.warning(f"Cleaning up stale in-flight entry: {key}")
            del self._entries[key]
        return len(stale)

    async def start(self) -> None:
        if self._sweeper is not None:
            return
        self._sweeper = asyncio.create_task(self._sweep_loop())
        logger.info("Single-flight sweeper started")

    async def stop(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
        logger.info("Single-flight sweeper stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()


# =============================================================================
# Cross-process backend
# =============================================================================

# Stored when the shared call produced None
_NONE_MARKER = ""


class RedisSingleFlight(SingleFlight):
    """
    Cross-process single-flight for string results.

    The leader holds `lock:singleflight:<key>` while calling `fn` and
    publishes the result under `singleflight:result:<key>` with a short TTL.
    Followers poll the result key until it appears, the lock disappears,
    or `timeout` passes; in the last two cases they run `fn` themselves.
    """

    def __init__(
        self,
        locks: LockService,
        client: redis.Redis,
        timeout: float = 30.0,
        result_ttl: int = 30,
        poll_interval: float = 0.1,
    ):
        self.locks = locks
        self.client = client
        self.timeout = timeout
        self.result_ttl = result_ttl
        self.poll_interval = poll_interval

    @staticmethod
    def lock_key(key: str) -> str:
        return f"lock:singleflight:{key}"

    @staticmethod
    def result_key(key: str) -> str:
        return f"singleflight:result:{key}"

    async def run(self, key: str, fn: Callable[[], Awaitable[Optional[str]]]) -> Optional[str]:
        lock_key = self.lock_key(key)
        handle = await self.locks.acquire_key(lock_key, ttl=int(self.timeout))

        if handle.acquired:
            try:
                await self._forget(key)
                result = await fn()
                await self._publish(key, result)
                return result
            finally:
                await self.locks.release(handle.lock_key, handle.lock_value)

        logger.debug(f"Waiting for shared call in another process: {key}")
        deadline = time.monotonic() + self.timeout
        while time.monotonic() < deadline:
            try:
                value = await self.client.get(self.result_key(key))
                if value is not None:
                    return value or None
                if not await self.locks.is_locked(lock_key):
                    # Leader finished without publishing (or crashed)
                    break
            except redis.RedisError as e:
                logger.warning(f"Single-flight result poll failed for {key}: {e}")
                break
            await asyncio.sleep(self.poll_interval)

        logger.info(f"No shared result for {key}; calling directly")
        return await fn()

    async def _forget(self, key: str) -> None:
        try:
            await self.client.delete(self.result_key(key))
        except redis.RedisError as e:
            logger.warning(f"Could not clear previous result for {key}: {e}")

    async def _publish(self, key: str, result: Optional[str]) -> None:
        try:
            await self.client.set(
                self.result_key(key),
                result if result is not None else _NONE_MARKER,
                ex=self.result_ttl,
            )
        except redis.RedisError as e:
            logger.warning(f"Could not publish result for {key}: {e}")
