"""
Redis клиент для rate limiting
"""
import logging
from typing import Optional
import redis.asyncio as redis

from shared.config import REDIS_URL

logger = logging.getLogger(__name__)

# Глобальный Redis клиент
_redis_client: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    """
    Получить Redis клиент (таймауты, чтобы трекинг не зависал на Redis)
    """
    global _redis_client

    if _redis_client is None:
        _redis_client = redis.from_url(
            REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=2,
            socket_connect_timeout=2
        )
        logger.info("Redis client initialized")

    return _redis_client


async def close_redis():
    global _redis_client

    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis client closed")


class RedisCache:
    """
    Счётчики в Redis
    """

    def __init__(self):
        self.redis_client = None

    async def _get_client(self):
        if not self.redis_client:
            self.redis_client = await get_redis()
        return self.redis_client

    async def incr(self, key: str, ttl: int) -> int:
        """
        Атомарно увеличить счётчик окна; TTL ставится один раз при создании ключа
        """
        client = await self._get_client()
        async with client.pipeline(transaction=True) as pipe:
            pipe.set(key, 0, ex=ttl, nx=True)
            pipe.incr(key)
            _, count = await pipe.execute()
        return int(count)

    async def ping(self) -> bool:
        client = await self._get_client()
        return await client.ping()


# Кэш
cache = RedisCache()
