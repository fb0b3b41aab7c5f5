import logging

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError

from tablematch.config import settings

logger = logging.getLogger(__name__)

_pool: redis.ConnectionPool | None = None


def get_pool() -> redis.ConnectionPool:
    global _pool
    if _pool is None:
        logger.info(f"Opening Redis pool for {settings.redis_url}")
        _pool = redis.ConnectionPool.from_url(settings.redis_url, decode_responses=True)
    return _pool


def get_redis() -> redis.Redis:
    return redis.Redis(connection_pool=get_pool())


async def ping() -> bool:
    """True when Redis answers, False on connection errors."""
    try:
        return bool(await get_redis().ping())
    except RedisConnectionError as exc:
        logger.warning(f"Redis ping failed: {exc}")
        return False


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.aclose()
        _pool = None
