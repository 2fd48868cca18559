"""
Redis connection layer — async Redis client shared by the job queue
and the in-app channel.

The client is created once by the runtime and injected into its
consumers; nothing here holds a module-level connection.

Usage:
    client = create_redis_client(settings.REDIS_URL)
    await ping_redis(client)
    await close_redis(client)
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


def create_redis_client(url: str) -> aioredis.Redis:
    """Create an async Redis client (string responses)."""
    client = aioredis.from_url(
        url,
        encoding="utf-8",
        decode_responses=True,
    )
    logger.info("Redis client created: %s", url.split("@")[-1])
    return client


async def ping_redis(client: aioredis.Redis) -> bool:
    """True if Redis answers PING."""
    try:
        return bool(await client.ping())
    except RedisError as e:
        logger.warning("Redis PING failed: %s", e)
        return False


async def close_redis(client: aioredis.Redis) -> None:
    """Close the Redis connection pool."""
    await client.aclose()
    logger.info("Redis connection closed")
