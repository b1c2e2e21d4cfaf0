"""
In-process per-owner mutual exclusion.

Serializes same-owner work inside one process; across processes the wallet
row lock and the slot version column take over.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import structlog

from mining_engine.core.exceptions import ConcurrencyConflictError


logger = structlog.get_logger(__name__)


class OwnerLockRegistry:
    """Lazily created asyncio.Lock per owner, dropped once nobody holds or waits on it."""

    def __init__(self, default_timeout: float = 5.0):
        self.default_timeout = default_timeout
        self._locks: Dict[int, asyncio.Lock] = {}
        self._users: Dict[int, int] = {}
        self.logger = logger.bind(service="owner_locks")

    @asynccontextmanager
    async def hold(self, owner_id: int, timeout: Optional[float] = None) -> AsyncIterator[None]:
        """
        Hold the owner's lock for the duration of the block.

        Raises:
            ConcurrencyConflictError: the lock was not acquired within `timeout`
        """
        timeout = self.default_timeout if timeout is None else timeout
        lock = self._locks.setdefault(owner_id, asyncio.Lock())
        self._users[owner_id] = self._users.get(owner_id, 0) + 1

        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            except asyncio.TimeoutError:
                self.logger.warning("Owner lock timed out", owner_id=owner_id, timeout=timeout)
                raise ConcurrencyConflictError(
                    "Another operation for this owner is in progress",
                    {"owner_id": owner_id, "timeout": timeout}
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[owner_id] -= 1
            if self._users[owner_id] == 0:
                del self._users[owner_id]
                self._locks.pop(owner_id, None)

    def is_locked(self, owner_id: int) -> bool:
        lock = self._locks.get(owner_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
