"""
Expiry batch processor.

Finds active slots past expiry and finalizes them in bounded batches: one
transaction per batch, one SAVEPOINT per slot, so a bad slot is recorded and
skipped without aborting the rest. Owners are invalidated and notified once
per run, not per slot.
"""

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mining_engine.cache.cache_service import CacheService
from mining_engine.core.config import settings
from mining_engine.core.database import get_async_session
from mining_engine.core.exceptions import ConcurrencyConflictError, SchedulerError
from mining_engine.models import MiningSlot
from mining_engine.models.base import utc_now
from mining_engine.services.live_stats import LiveStats
from mining_engine.services.slot_store import ExpiryCursor, SlotStore
from mining_engine.services.types import ProcessingStats, ProcessorStatus
from mining_engine.websocket.notification_service import NotificationService


logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


@dataclass
class _OwnerOutcome:
    slot_ids: List[str] = field(default_factory=list)
    credited: Decimal = Decimal("0")


@dataclass
class _BatchOutcome:
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    credited: Decimal = Decimal("0")
    owners: Dict[int, _OwnerOutcome] = field(default_factory=lambda: defaultdict(_OwnerOutcome))
    errors: List[str] = field(default_factory=list)


class ExpiryBatchProcessor:
    """
    Finalizes expired slots.

    Safe to run repeatedly and from several processes: a finalized slot is
    inactive and is never selected again, and every finalize re-reads the
    slot under the owner's wallet lock and is guarded by the slot version.
    """

    def __init__(
        self,
        store: SlotStore,
        cache: Optional[CacheService] = None,
        notifier: Optional[NotificationService] = None,
        live_stats: Optional[LiveStats] = None,
        session_factory: SessionFactory = get_async_session,
        clock: Callable[[], datetime] = utc_now,
        batch_size: Optional[int] = None,
        batch_timeout: Optional[float] = None,
        max_processing_time: Optional[float] = None,
        batch_delay_ms: Optional[int] = None,
        expiring_soon_hours: Optional[int] = None,
    ):
        self.store = store
        self.cache = cache
        self.notifier = notifier
        self.live_stats = live_stats
        self.session_factory = session_factory
        self.clock = clock
        self.batch_size = batch_size or settings.expiry_batch_size
        self.batch_timeout = batch_timeout or settings.expiry_batch_timeout_seconds
        self.max_processing_time = max_processing_time or settings.expiry_max_processing_seconds
        self.batch_delay = (
            settings.expiry_batch_delay_ms if batch_delay_ms is None else batch_delay_ms
        ) / 1000
        self.expiring_soon = timedelta(
            hours=expiring_soon_hours or settings.expiring_soon_hours
        )

        self.status = ProcessorStatus.IDLE
        self.last_stats: Optional[ProcessingStats] = None
        self._run_lock = asyncio.Lock()
        self.logger = logger.bind(service="expiry_processor")

    async def run_expiry_batch_now(self) -> ProcessingStats:
        """
        Finalize every slot that expired up to now.

        Raises:
            SchedulerError: a run is already in progress in this process
        """
        if self._run_lock.locked():
            raise SchedulerError("Expiry processing is already running")

        async with self._run_lock:
            self.status = ProcessorStatus.RUNNING
            try:
                stats = await self._run()
            except Exception:
                self.status = ProcessorStatus.FAILED
                raise
            self.status = ProcessorStatus.COMPLETED if not stats.errors else ProcessorStatus.FAILED
            self.last_stats = stats
            return stats

    async def _run(self) -> ProcessingStats:
        now = self.clock()
        stats = ProcessingStats(start_time=now)
        started = time.monotonic()
        owners: Dict[int, _OwnerOutcome] = defaultdict(_OwnerOutcome)
        cursor: Optional[ExpiryCursor] = None

        self.logger.info("Expiry processing started", cutoff=now.isoformat(), batch_size=self.batch_size)

        while True:
            if time.monotonic() - started > self.max_processing_time:
                stats.timed_out = True
                stats.errors.append("Maximum processing time reached; remaining slots left for the next run")
                self.logger.warning(
                    "Expiry processing time limit reached",
                    processed=stats.processed_slots,
                    limit_seconds=self.max_processing_time
                )
                break

            async with self.session_factory() as session:
                batch = await self.store.find_expired_batch(session, now, self.batch_size, cursor)
                batch_refs = [(slot.id, slot.user_id, slot.expires_at) for slot in batch]

            if not batch_refs:
                break

            last_id, _, last_expires_at = batch_refs[-1]
            cursor = (last_expires_at, last_id)
            stats.total_slots += len(batch_refs)

            try:
                outcome = await asyncio.wait_for(
                    self._process_batch([ref[0] for ref in batch_refs], now),
                    timeout=self.batch_timeout,
                )
            except asyncio.TimeoutError:
                stats.failed_slots += len(batch_refs)
                stats.errors.append(
                    f"Batch of {len(batch_refs)} slots timed out after {self.batch_timeout}s"
                )
                self.logger.error(
                    "Expiry batch timed out",
                    slots=len(batch_refs),
                    timeout=self.batch_timeout
                )
                continue
            except Exception as e:
                stats.failed_slots += len(batch_refs)
                stats.errors.append(f"Batch failed: {e}")
                self.logger.error("Expiry batch failed", slots=len(batch_refs), error=str(e))
                continue

            stats.batches_processed += 1
            stats.processed_slots += outcome.processed
            stats.failed_slots += outcome.failed
            stats.skipped_slots += outcome.skipped
            stats.total_credited += outcome.credited
            stats.errors.extend(outcome.errors)
            for owner_id, owner_outcome in outcome.owners.items():
                owners[owner_id].slot_ids.extend(owner_outcome.slot_ids)
                owners[owner_id].credited += owner_outcome.credited

            self.logger.info(
                "Expiry batch committed",
                batch=stats.batches_processed,
                processed=outcome.processed,
                failed=outcome.failed,
                skipped=outcome.skipped
            )

            if len(batch_refs) < self.batch_size:
                break
            if self.batch_delay:
                await asyncio.sleep(self.batch_delay)

        stats.affected_owners = sorted(owners)
        await self._publish(owners)

        stats.end_time = self.clock()
        stats.processing_time_ms = int((time.monotonic() - started) * 1000)
        if self.live_stats:
            self.live_stats.record_expiry_run(stats.processed_slots, stats.total_credited)

        self.logger.info(
            "Expiry processing completed",
            total=stats.total_slots,
            processed=stats.processed_slots,
            failed=stats.failed_slots,
            skipped=stats.skipped_slots,
            credited=str(stats.total_credited),
            owners=len(owners),
            duration_ms=stats.processing_time_ms
        )
        return stats

    async def _process_batch(self, slot_ids: List[str], now: datetime) -> _BatchOutcome:
        """Finalize one batch inside a single transaction."""
        outcome = _BatchOutcome()

        async with self.session_factory() as session:
            result = await session.execute(
                select(MiningSlot).where(MiningSlot.id.in_(slot_ids)).order_by(
                    MiningSlot.expires_at, MiningSlot.id
                )
            )
            slots = {slot.id: slot for slot in result.scalars().all()}

            for slot_id in slot_ids:
                slot = slots.get(slot_id)
                if slot is None:
                    outcome.skipped += 1
                    continue
                owner_id = slot.user_id

                try:
                    async with session.begin_nested():
                        # wallet lock first: same order as claims
                        await self.store.lock_wallet(session, owner_id)
                        await session.refresh(slot)
                        if not slot.is_active or slot.expires_at > now:
                            outcome.skipped += 1
                            continue
                        credited = await self.store.finalize(session, slot, now)
                except ConcurrencyConflictError:
                    outcome.skipped += 1
                    self.logger.info("Slot changed during finalize, skipped", slot_id=slot_id)
                    continue
                except Exception as e:
                    outcome.failed += 1
                    outcome.errors.append(f"Slot {slot_id}: {e}")
                    self.logger.error(
                        "Failed to finalize slot",
                        slot_id=slot_id,
                        owner_id=owner_id,
                        error=str(e)
                    )
                    continue

                outcome.processed += 1
                outcome.credited += credited
                outcome.owners[owner_id].slot_ids.append(slot_id)
                outcome.owners[owner_id].credited += credited

        return outcome

    async def _publish(self, owners: Dict[int, _OwnerOutcome]) -> None:
        """One cache invalidation and one notification per affected owner."""
        if not owners:
            return

        balances: Dict[int, Optional[Decimal]] = {}
        if self.notifier:
            async with self.session_factory() as session:
                for owner_id in owners:
                    try:
                        balances[owner_id] = await self.store.get_balance(session, owner_id)
                    except Exception as e:
                        self.logger.warning("Could not read balance for notification", owner_id=owner_id, error=str(e))
                        balances[owner_id] = None

        for owner_id, outcome in owners.items():
            if self.cache:
                await self.cache.invalidate_owner(owner_id)
            if self.notifier:
                await self.notifier.notify_slots_expired(
                    owner_id, outcome.slot_ids, outcome.credited, balances.get(owner_id)
                )

    async def get_processing_status(self) -> Dict[str, Any]:
        """Operational counters for the admin status view."""
        now = self.clock()
        async with self.session_factory() as session:
            counts = await self.store.count_status(
                session,
                now,
                expiring_soon_until=now + self.expiring_soon,
                processed_since=now - timedelta(hours=1),
            )

        return {
            **counts,
            "processor_status": self.status.value,
            "batch_size": self.batch_size,
            "last_run": self.last_stats.to_dict() if self.last_stats else None,
            "checked_at": now.isoformat(),
        }
