"""
Redis client for ridesync.

Provides a shared asyncio connection and a health check.
"""

import logging
from functools import lru_cache

import redis.asyncio as redis

from ridesync.config import settings

logger = logging.getLogger(__name__)


@lru_cache()
def get_redis_client() -> redis.Redis:
    """Return the shared Redis client (singleton via lru_cache)."""
    return redis.Redis.from_url(
        settings.redis_url,
        decode_responses=True,
    )


async def check_redis_health(client: redis.Redis | None = None) -> bool:
    """PING Redis. Returns True if OK, False otherwise."""
    try:
        client = client or get_redis_client()
        return bool(await client.ping())
    except redis.RedisError as exc:
        logger.warning(f"Redis health check failed: {exc}")
        return False
