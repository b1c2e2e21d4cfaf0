"""
Redis client configuration and connection management.

Every operation logs and swallows Redis errors: the cache is never
authoritative, so a Redis outage degrades to recomputing.
"""

import asyncio
from typing import Optional, Any, Dict, List, Union
import redis.asyncio as redis
from redis.asyncio import Redis

from mining_engine.core.config import settings

import structlog

logger = structlog.get_logger(__name__)


class RedisClient:
    """Async Redis client wrapper with connection management."""

    def __init__(self, url: Optional[str] = None, client: Optional[Redis] = None):
        self.url = url or settings.redis_url
        self._client: Optional[Redis] = client
        self._pool: Optional[redis.ConnectionPool] = None

    async def connect(self) -> None:
        """Establish Redis connection."""
        try:
            if self._client is None:
                self._pool = redis.ConnectionPool.from_url(
                    self.url,
                    decode_responses=True,
                    max_connections=20,
                    retry_on_timeout=True,
                    socket_keepalive=True,
                )
                self._client = Redis(connection_pool=self._pool)

            await self._client.ping()
            logger.info("Redis connection established", url=self.url)

        except Exception as e:
            logger.error("Failed to connect to Redis", url=self.url, error=str(e))
            raise

    async def disconnect(self) -> None:
        """Close Redis connection."""
        try:
            if self._client:
                await self._client.aclose()
                self._client = None
                logger.info("Redis connection closed")
        except Exception as e:
            logger.error("Error closing Redis connection", error=str(e))

    @property
    def connected(self) -> bool:
        return self._client is not None

    @property
    def client(self) -> Redis:
        """Get Redis client instance."""
        if self._client is None:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self._client

    async def health_check(self) -> Dict[str, Any]:
        """Check Redis connection health."""
        try:
            if self._client is None:
                return {"status": "disconnected", "error": "No connection"}

            loop = asyncio.get_running_loop()
            start_time = loop.time()
            result = await self._client.ping()
            ping_time = (loop.time() - start_time) * 1000

            return {
                "status": "healthy" if result else "unhealthy",
                "ping_ms": round(ping_time, 2),
            }
        except Exception as e:
            return {"status": "error", "error": str(e)}

    # Core Redis operations
    async def get(self, key: str) -> Optional[str]:
        """Get value by key."""
        try:
            return await self.client.get(key)
        except Exception as e:
            logger.error("Redis GET failed", key=key, error=str(e))
            return None

    async def set(
        self,
        key: str,
        value: Union[str, bytes, int, float],
        ex: Optional[int] = None,
        nx: bool = False
    ) -> bool:
        """Set key-value with optional expiration."""
        try:
            return bool(await self.client.set(key, value, ex=ex, nx=nx))
        except Exception as e:
            logger.error("Redis SET failed", key=key, error=str(e))
            return False

    async def delete(self, *keys: str) -> int:
        """Delete one or more keys."""
        if not keys:
            return 0
        try:
            return await self.client.delete(*keys)
        except Exception as e:
            logger.error("Redis DELETE failed", keys=keys, error=str(e))
            return 0

    async def incr(self, key: str) -> Optional[int]:
        """Atomically increment a counter. None when Redis is unavailable."""
        try:
            return await self.client.incr(key)
        except Exception as e:
            logger.error("Redis INCR failed", key=key, error=str(e))
            return None

    async def scan_keys(self, pattern: str, count: int = 100) -> List[str]:
        """Collect every key matching `pattern` with SCAN (never KEYS)."""
        keys: List[str] = []
        try:
            async for key in self.client.scan_iter(match=pattern, count=count):
                keys.append(key)
        except Exception as e:
            logger.error("Redis SCAN failed", pattern=pattern, error=str(e))
        return keys


# Global Redis client instance
_redis_client: Optional[RedisClient] = None


async def get_redis_client() -> RedisClient:
    """Get global Redis client instance."""
    global _redis_client

    if _redis_client is None:
        _redis_client = RedisClient()
        await _redis_client.connect()

    return _redis_client


async def close_redis_client() -> None:
    """Close global Redis client."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.disconnect()
        _redis_client = None
