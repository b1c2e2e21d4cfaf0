"""
High-level caching service with read-through helpers and owner-scoped
invalidation.
"""

import json
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional

from .redis_client import RedisClient, get_redis_client
from .cache_keys import CacheKeyBuilder, get_cache_key_builder

import structlog

logger = structlog.get_logger(__name__)

Fetcher = Callable[[], Awaitable[Any]]


def _json_default(value: Any) -> str:
    # Plain notation: str(Decimal("0.00000001")) is "1E-8"
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


class CacheService:
    """
    Read-through cache over Redis.

    Values are JSON; Decimals and datetimes are stored as strings. A fetcher
    exception always propagates and never leaves anything cached.
    """

    def __init__(
        self,
        redis_client: RedisClient,
        key_builder: CacheKeyBuilder,
        default_ttl: int = 5,
    ):
        self.redis = redis_client
        self.keys = key_builder
        self.default_ttl = default_ttl
        self.hits = 0
        self.misses = 0

    def _serialize(self, data: Any) -> str:
        return json.dumps(
            {
                "data": data,
                "cached_at": datetime.now(timezone.utc).isoformat(),
            },
            default=_json_default,
            ensure_ascii=False,
        )

    def _deserialize(self, raw: str) -> Any:
        try:
            return json.loads(raw)["data"]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning("Discarding unreadable cache entry", error=str(e))
            return None

    async def get(self, key: str) -> Any:
        """Cached value or None."""
        raw = await self.redis.get(key)
        if raw is None:
            return None
        return self._deserialize(raw)

    async def set(self, key: str, data: Any, ttl: Optional[int] = None) -> bool:
        ttl = ttl or self.default_ttl
        success = await self.redis.set(key, self._serialize(data), ex=ttl)
        if success:
            logger.debug("Cache set successful", key=key, ttl=ttl)
        return success

    async def get_or_compute(
        self, key: str, ttl: Optional[int], fetcher: Fetcher
    ) -> Any:
        """
        Return the cached value for `key`, or compute, store and return it.

        Args:
            key: Full cache key
            ttl: Seconds to keep the value; default_ttl when None
            fetcher: Coroutine factory producing the value
        """
        cached = await self.get(key)
        if cached is not None:
            self.hits += 1
            return cached

        self.misses += 1
        value = await fetcher()
        if value is not None:
            await self.set(key, value, ttl)
        return value

    async def invalidate(self, key_or_pattern: str) -> int:
        """Delete one key, or every key matching a glob pattern."""
        if any(ch in key_or_pattern for ch in "*?["):
            keys = await self.redis.scan_keys(key_or_pattern)
        else:
            keys = [key_or_pattern]
        deleted = await self.redis.delete(*keys)
        logger.debug("Cache invalidated", pattern=key_or_pattern, deleted=deleted)
        return deleted

    # Owner-scoped helpers

    async def owner_generation(self, owner_id: int) -> int:
        raw = await self.redis.get(self.keys.owner_generation_key(owner_id))
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            return 0

    async def get_or_compute_for_owner(
        self,
        owner_id: int,
        name: str,
        fetcher: Fetcher,
        ttl: Optional[int] = None,
    ) -> Any:
        """
        get_or_compute under the owner's current generation.

        The generation is read before the fetcher runs, so a value computed
        across a concurrent write lands under a generation no reader uses.
        """
        generation = await self.owner_generation(owner_id)
        key = self.keys.owner_key(owner_id, generation, name)
        return await self.get_or_compute(key, ttl, fetcher)

    async def invalidate_owner(self, owner_id: int) -> int:
        """Bump the owner's generation and drop every value derived from the owner."""
        generation = await self.redis.incr(self.keys.owner_generation_key(owner_id))
        deleted = await self.invalidate(self.keys.owner_pattern(owner_id))
        logger.info(
            "Owner cache invalidated",
            owner_id=owner_id,
            generation=generation,
            keys_deleted=deleted,
        )
        return deleted

    async def invalidate_owners(self, owner_ids) -> int:
        total = 0
        for owner_id in owner_ids:
            total += await self.invalidate_owner(owner_id)
        return total

    async def flush(self) -> int:
        """Drop every key in this namespace. Safe at any time."""
        return await self.invalidate(self.keys.namespace_pattern())

    def get_cache_stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / total * 100, 2) if total else 0.0,
        }


# Global cache service instance
_cache_service: Optional[CacheService] = None


async def get_cache_service() -> CacheService:
    """Get global cache service instance."""
    global _cache_service

    if _cache_service is None:
        from mining_engine.core.config import settings

        redis_client = await get_redis_client()
        _cache_service = CacheService(
            redis_client, get_cache_key_builder(), default_ttl=settings.cache_ttl_seconds
        )

    return _cache_service


def reset_cache_service() -> None:
    global _cache_service
    _cache_service = None
