"""
Redis cache for publishing catalog and health snapshots across processes.
"""
from typing import Optional, Any
import json
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from llm_failover.core.config import settings
from llm_failover.core.logger import get_logger

logger = get_logger(__name__)


class RedisCache:
    """
    Redis cache manager with connection pooling.

    Every operation is bounded by ``redis_timeout`` and degrades to a no-op
    on failure; the cache is never required for routing decisions.
    """

    def __init__(self, enabled: Optional[bool] = None, url: Optional[str] = None):
        self.redis: Optional[aioredis.Redis] = None
        self.enabled = settings.redis_enabled if enabled is None else enabled
        self.url = url or settings.redis_url

    async def connect(self) -> None:
        """Establish Redis connection."""
        if not self.enabled:
            logger.info("Redis cache is disabled")
            return

        try:
            self.redis = await aioredis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
                max_connections=10,
                socket_timeout=settings.redis_timeout,
                socket_connect_timeout=settings.redis_timeout
            )
            # Test connection
            await self.redis.ping()
            logger.info("Redis cache connected successfully", url=self.url)
        except (RedisError, OSError) as e:
            logger.error("Failed to connect to Redis", error=str(e))
            self.enabled = False
            self.redis = None

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            logger.info("Redis cache disconnected")

    @property
    def available(self) -> bool:
        return self.enabled and self.redis is not None

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None
    ) -> bool:
        """
        Set value in cache.

        Args:
            key: Cache key
            value: JSON-serializable value
            ttl: Time to live in seconds (default from settings)

        Returns:
            True if successful, False otherwise
        """
        if not self.available:
            return False

        try:
            ttl = ttl or settings.redis_cache_ttl
            await self.redis.setex(key, ttl, json.dumps(value))
            return True
        except (RedisError, OSError) as e:
            logger.warning("Redis set failed", key=key, error=str(e))
            return False


# Global cache instance
cache = RedisCache()


# Cache key generators
def health_cache_key(provider_id: str) -> str:
    """Generate cache key for provider health status."""
    return f"health:provider:{provider_id}"


def model_list_cache_key() -> str:
    """Generate cache key for model list."""
    return "models:list"
