"""
Lazy Redis connection shared by rate limiters and caches

Every caller treats a `None` client as "Redis unavailable" and fails open.
"""
import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from iplicensing.config import settings

logger = structlog.get_logger()

_redis_client: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis | None:
    """Lazy-init Redis client."""
    global _redis_client
    if _redis_client is None:
        client = aioredis.from_url(settings.redis_url, decode_responses=True)
        try:
            await client.ping()
        except (RedisError, OSError) as e:
            logger.warning("redis_unavailable", error=str(e))
            return None
        _redis_client = client
        logger.info("redis_connected")
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
