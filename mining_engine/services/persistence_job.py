"""
Accrual persistence job.

Periodically turns virtual earnings into realized ones by advancing the
checkpoint of long-running active slots, bounding what a crash can lose to
one job interval. Runs once at startup to catch up after downtime.
"""

import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncContextManager, Callable, Optional, Set

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from mining_engine.cache.cache_service import CacheService
from mining_engine.core.config import settings
from mining_engine.core.database import get_async_session
from mining_engine.core.exceptions import ConcurrencyConflictError
from mining_engine.models.base import utc_now
from mining_engine.services import accrual
from mining_engine.services.live_stats import LiveStats
from mining_engine.services.slot_store import SlotStore
from mining_engine.services.types import PersistenceStats


logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


class AccrualPersistenceJob:
    """Checkpoints active slots whose unrealized delta is material."""

    def __init__(
        self,
        store: SlotStore,
        cache: Optional[CacheService] = None,
        live_stats: Optional[LiveStats] = None,
        session_factory: SessionFactory = get_async_session,
        clock: Callable[[], datetime] = utc_now,
        min_interval_seconds: Optional[int] = None,
        materiality_threshold: Optional[Decimal] = None,
        batch_size: Optional[int] = None,
    ):
        self.store = store
        self.cache = cache
        self.live_stats = live_stats
        self.session_factory = session_factory
        self.clock = clock
        self.min_interval = timedelta(
            seconds=settings.persistence_min_interval_seconds
            if min_interval_seconds is None else min_interval_seconds
        )
        self.materiality_threshold = (
            settings.persistence_materiality_threshold
            if materiality_threshold is None else materiality_threshold
        )
        self.batch_size = batch_size or settings.persistence_batch_size
        self.last_stats: Optional[PersistenceStats] = None
        self.logger = logger.bind(service="persistence_job")

    async def run_once(self) -> PersistenceStats:
        """
        Checkpoint every active, unexpired slot whose checkpoint is older than
        the minimum interval and whose pending delta reaches the threshold.

        A slot advanced concurrently (a claim won the race) is skipped; the
        next run sees its new checkpoint.
        """
        now = self.clock()
        stats = PersistenceStats(start_time=now)
        started = time.monotonic()
        older_than = now - self.min_interval
        owners: Set[int] = set()
        after_id: Optional[str] = None

        while True:
            async with self.session_factory() as session:
                batch = await self.store.find_stale_checkpoints(
                    session, now, older_than, self.batch_size, after_id
                )
                if not batch:
                    break
                after_id = batch[-1].id
                stats.scanned += len(batch)

                for slot in batch:
                    slot_id, owner_id = slot.id, slot.user_id
                    pending = accrual.incremental_earnings(slot, now)
                    if pending <= 0 or pending < self.materiality_threshold:
                        stats.skipped += 1
                        continue

                    try:
                        async with session.begin_nested():
                            realized = await self.store.checkpoint(session, slot, now)
                    except ConcurrencyConflictError:
                        stats.skipped += 1
                        continue
                    except Exception as e:
                        stats.failed += 1
                        stats.errors.append(f"Slot {slot_id}: {e}")
                        self.logger.error(
                            "Failed to checkpoint slot",
                            slot_id=slot_id,
                            owner_id=owner_id,
                            error=str(e)
                        )
                        continue

                    stats.checkpointed += 1
                    stats.total_realized += realized
                    owners.add(owner_id)

            if len(batch) < self.batch_size:
                break

        if self.cache:
            await self.cache.invalidate_owners(sorted(owners))

        stats.end_time = self.clock()
        stats.processing_time_ms = int((time.monotonic() - started) * 1000)
        self.last_stats = stats
        if self.live_stats:
            self.live_stats.record_persistence_run(stats.checkpointed, stats.total_realized)

        self.logger.info(
            "Accrual persistence completed",
            scanned=stats.scanned,
            checkpointed=stats.checkpointed,
            skipped=stats.skipped,
            failed=stats.failed,
            realized=str(stats.total_realized),
            duration_ms=stats.processing_time_ms
        )
        return stats
