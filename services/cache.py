"""
Cache Service

Redis cache for recomputable lookups (tenant membership of a bearer token's
user). Never a correctness dependency: every Redis failure degrades to a
cache miss and the caller recomputes from the database.
"""

import orjson
import structlog
import redis.asyncio as redis
from typing import Any, Awaitable, Callable, Optional

logger = structlog.get_logger("cache")


class CacheService:
    """JSON values with TTL; errors are logged, never raised."""

    def __init__(self, redis_client: redis.Redis, prefix: str = "wa-inbox"):
        self.redis = redis_client
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.redis.get(self._key(key))
            return orjson.loads(raw) if raw else None
        except Exception as e:
            logger.warning("Cache GET failed", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Any, ttl: int = 60):
        try:
            await self.redis.setex(self._key(key), ttl, orjson.dumps(value).decode("utf-8"))
        except Exception as e:
            logger.warning("Cache SET failed", key=key, error=str(e))

    async def delete(self, key: str):
        try:
            await self.redis.delete(self._key(key))
        except Exception as e:
            logger.warning("Cache DELETE failed", key=key, error=str(e))

    async def get_or_compute(
        self,
        key: str,
        compute_func: Callable[..., Awaitable[Any]],
        *args,
        ttl: int = 60
    ) -> Any:
        """
        Cached value, or compute_func(*args) stored for `ttl` seconds.

        None results are not cached, so a membership created a second ago
        is picked up on the next request.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached

        result = await compute_func(*args)

        if result is not None:
            await self.set(key, result, ttl)

        return result
