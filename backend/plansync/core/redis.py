"""Async Redis pool, used for login sessions"""
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from plansync.core.config import settings
from plansync.core.logging import get_logger

logger = get_logger(__name__)

redis_pool = aioredis.ConnectionPool.from_url(
    settings.REDIS_URL,
    max_connections=20,
    decode_responses=True,
)


async def get_redis() -> aioredis.Redis:
    """FastAPI dependency"""
    return aioredis.Redis(connection_pool=redis_pool)


async def check_redis_connection() -> bool:
    try:
        r = await get_redis()
        return bool(await r.ping())
    except (RedisError, OSError) as e:
        logger.warning(f"Redis unreachable: {e}")
        return False


async def close_redis():
    """Drop pooled connections at shutdown"""
    await redis_pool.disconnect()
