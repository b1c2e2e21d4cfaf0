"""
Redis caching layer for per-owner projections.
"""

from .redis_client import get_redis_client, RedisClient
from .cache_service import CacheService, get_cache_service
from .cache_keys import CacheKeyBuilder

__all__ = [
    "get_redis_client",
    "RedisClient",
    "CacheService",
    "get_cache_service",
    "CacheKeyBuilder",
]
