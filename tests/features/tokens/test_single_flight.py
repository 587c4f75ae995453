"""
Tests for the single-flight coordinators.
"""

import asyncio

import pytest

from ridesync.config import Settings
from ridesync.features.locks import LockService
from ridesync.features.tokens import InMemorySingleFlight, RedisSingleFlight

from conftest import run, FakeRedis


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


# =============================================================================
# In-memory
# =============================================================================

class TestInMemorySingleFlight:
    """Per-process sharing of one in-flight call per key."""

    def test_concurrent_calls_share_result(self):
        async def scenario():
            flight = InMemorySingleFlight()
            calls = []

            async def work():
                calls.append(1)
                await asyncio.sleep(0.01)
                return "token"

            results = await asyncio.gather(*[flight.run("k", work) for _ in range(5)])
            return results, len(calls), len(flight)

        results, calls, remaining = run(scenario())
        assert results == ["token"] * 5
        assert calls == 1
        assert remaining == 0

    def test_entry_removed_after_failure(self):
        async def scenario():
            flight = InMemorySingleFlight()

            async def boom():
                raise RuntimeError("refresh exploded")

            with pytest.raises(RuntimeError):
                await flight.run("k", boom)
            await asyncio.sleep(0)
            return "k" in flight

        assert run(scenario()) is False

    def test_different_keys_do_not_share(self):
        async def scenario():
            flight = InMemorySingleFlight()

            async def value(v):
                await asyncio.sleep(0.01)
                return v

            return await asyncio.gather(
                flight.run("a", lambda: value("A")),
                flight.run("b", lambda: value("B")),
            )

        assert run(scenario()) == ["A", "B"]

    def test_stale_entry_is_replaced(self):
        async def scenario():
            clock = FakeClock()
            flight = InMemorySingleFlight(timeout=30.0, clock=clock)
            hung = asyncio.Event()

            async def never_finishes():
                await hung.wait()
                return "old"

            async def fresh():
                return "new"

            stuck = asyncio.ensure_future(flight.run("k", never_finishes))
            await asyncio.sleep(0)
            clock.now += 31
            result = await flight.run("k", fresh)
            stuck.cancel()
            return result

        assert run(scenario()) == "new"

    def test_sweep_drops_stale_entries(self):
        async def scenario():
            clock = FakeClock()
            flight = InMemorySingleFlight(timeout=30.0, clock=clock)
            hung = asyncio.Event()

            async def never_finishes():
                await hung.wait()

            stuck = asyncio.ensure_future(flight.run("k", never_finishes))
            await asyncio.sleep(0)
            assert flight.sweep() == 0
            clock.now += 31
            removed = flight.sweep()
            stuck.cancel()
            return removed, len(flight)

        assert run(scenario()) == (1, 0)

    def test_start_stop_sweeper(self):
        async def scenario():
            flight = InMemorySingleFlight(sweep_interval=0.01)
            await flight.start()
            await asyncio.sleep(0.03)
            await flight.stop()
            return flight._sweeper

        assert run(scenario()) is None


# =============================================================================
# Redis-backed
# =============================================================================

class TestRedisSingleFlight:
    """Cross-process variant over the lock service and a result key."""

    def test_leader_publishes_result(self):
        client = FakeRedis()
        locks = LockService(client, Settings(_env_file=None))
        flight = RedisSingleFlight(locks, client, timeout=1.0)

        async def work():
            return "token"

        assert run(flight.run("whoop:u1", work)) == "token"
        assert client.store["singleflight:result:whoop:u1"] == "token"
        assert "lock:singleflight:whoop:u1" not in client.store

    def test_follower_reads_published_result(self):
        client = FakeRedis()
        client.store["lock:singleflight:whoop:u1"] = "someone-else"
        client.store["singleflight:result:whoop:u1"] = "shared-token"
        locks = LockService(client, Settings(_env_file=None))
        flight = RedisSingleFlight(locks, client, timeout=1.0, poll_interval=0.01)
        calls = []

        async def work():
            calls.append(1)
            return "own-token"

        assert run(flight.run("whoop:u1", work)) == "shared-token"
        assert calls == []

    def test_follower_runs_itself_when_leader_vanishes(self):
        client = FakeRedis()
        locks = LockService(client, Settings(_env_file=None))
        flight = RedisSingleFlight(locks, client, timeout=1.0, poll_interval=0.01)

        async def scenario():
            client.store["lock:singleflight:whoop:u1"] = "leader"

            async def leader_dies():
                await asyncio.sleep(0.03)
                del client.store["lock:singleflight:whoop:u1"]

            async def work():
                return "own-token"

            _, result = await asyncio.gather(leader_dies(), flight.run("whoop:u1", work))
            return result

        assert run(scenario()) == "own-token"
