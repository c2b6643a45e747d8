"""
Redis-backed key/value helpers.
Values are stored as JSON. Redis failures are logged and degrade to
"not found" so a Redis outage never takes authentication down with it.
"""
import json
import logging
from typing import Any, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from .config import REDIS_URL

logger = logging.getLogger(__name__)

_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    global _client
    if _client is None:
        _client = redis.from_url(REDIS_URL, decode_responses=True)
    return _client


def set_redis(client: Optional[redis.Redis]) -> None:
    """Swap the shared client (used by tests and the app lifespan)."""
    global _client
    _client = client


async def ping() -> bool:
    try:
        return bool(await get_redis().ping())
    except (RedisError, OSError) as e:
        logger.error("Redis connection failed: %s", e)
        return False


async def get(key: str) -> Any:
    try:
        data = await get_redis().get(key)
        return json.loads(data) if data else None
    except (RedisError, OSError) as e:
        logger.error("Redis GET %s failed: %s", key, e)
        return None


async def set(key: str, value: Any, ttl: int = 3600) -> bool:
    try:
        await get_redis().set(key, json.dumps(value, default=str), ex=ttl)
        return True
    except (RedisError, OSError) as e:
        logger.error("Redis SET %s failed: %s", key, e)
        return False


async def delete(key: str) -> bool:
    try:
        await get_redis().delete(key)
        return True
    except (RedisError, OSError) as e:
        logger.error("Redis DEL %s failed: %s", key, e)
        return False


async def increment(key: str, ttl: int = 3600) -> int:
    """Increment a counter; the window starts on the first hit."""
    try:
        client = get_redis()
        count = await client.incr(key)
        if count == 1:
            await client.expire(key, ttl)
        return int(count)
    except (RedisError, OSError) as e:
        logger.error("Redis INCR %s failed: %s", key, e)
        return 0


async def close() -> None:
    global _client
    if _client is not None:
        try:
            await _client.aclose()
        except (RedisError, OSError) as e:
            logger.warning("Redis close failed: %s", e)
        _client = None
