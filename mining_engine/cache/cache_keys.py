"""
Cache key building and management utilities.
"""

from typing import Any, Optional
from datetime import datetime, date

from mining_engine.core.config import settings


class CacheKeyBuilder:
    """
    Utility for building consistent cache keys.

    Owner-derived keys carry the owner's cache generation, so bumping the
    generation orphans every value computed before a write.
    """

    def __init__(self, prefix: Optional[str] = None, environment: Optional[str] = None):
        self.prefix = (prefix if prefix is not None else settings.redis_prefix).rstrip(":")
        self.environment = environment or settings.environment
        self.separator = ":"

    def _normalize_value(self, value: Any) -> str:
        """Normalize value for use in cache key."""
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        elif value is None:
            return "null"
        return str(value)

    def build(self, *parts: Any) -> str:
        """Build cache key from parts."""
        normalized_parts = []

        if self.prefix:
            normalized_parts.append(self.prefix)

        # Keep non-production environments apart on shared Redis instances
        if self.environment != "production":
            normalized_parts.append(self.environment)

        for part in parts:
            if part is not None:
                normalized_parts.append(self._normalize_value(part))

        return self.separator.join(normalized_parts)

    # Owner keys
    def owner_generation_key(self, owner_id: int) -> str:
        """Counter bumped on every write affecting the owner.

        Lives outside the owner's namespace so owner_pattern never matches it.
        """
        return self.build("owner_gen", owner_id)

    def owner_key(self, owner_id: int, generation: int, name: str) -> str:
        """A value derived from the owner's state at `generation`."""
        return self.build("owner", owner_id, f"g{generation}", name)

    def owner_pattern(self, owner_id: int) -> str:
        """Every generation-scoped key of the owner."""
        return self.build("owner", owner_id, "g*")

    # Global keys
    def namespace_pattern(self) -> str:
        return self.build("*")


# Global cache key builder instance
cache_keys = CacheKeyBuilder()


def get_cache_key_builder() -> CacheKeyBuilder:
    """Get global cache key builder instance."""
    return cache_keys
