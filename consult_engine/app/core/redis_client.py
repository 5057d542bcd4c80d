"""
Redis client for the metrics counter store.

Only monotonic totals and short-lived per-minute buckets live here; nothing
billing-critical does, so every caller treats Redis as optional.
"""

import logging

import redis.asyncio as redis
from redis.exceptions import RedisError

from consult_engine.app.core.config import settings

logger = logging.getLogger(__name__)


redis_client = redis.from_url(
    settings.redis_url,
    decode_responses=settings.redis_decode_responses,
)


async def get_redis():
    """FastAPI dependency handing out the shared counter store."""
    return redis_client


async def ping_redis() -> bool:
    """True when the counter store answers; an outage degrades metrics only."""
    try:
        return await redis_client.ping()
    except (RedisError, OSError) as exc:
        logger.warning("Counter store unreachable", extra={"error": str(exc)})
        return False


async def close_redis() -> None:
    try:
        await redis_client.aclose()
    except (RedisError, OSError) as exc:
        logger.warning("Counter store close failed", extra={"error": str(exc)})
