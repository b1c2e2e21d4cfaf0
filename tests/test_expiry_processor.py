"""
Tests for the expiry batch processor.
"""

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from mining_engine.core.database import get_async_session
from mining_engine.core.exceptions import SchedulerError
from mining_engine.models import ActivityLog, ActivityLogType, MiningSlot
from mining_engine.services.expiry_processor import ExpiryBatchProcessor
from mining_engine.services.slot_store import SlotStore
from mining_engine.services.types import ProcessorStatus
from mining_engine.websocket.schemas import MessageType


async def buy(engine, owner_id, principal="100") -> str:
    result = await engine.purchase_slot(owner_id, Decimal(principal))
    return result["slot"]["slot_id"]


async def count_expired_logs(owner_id: int) -> int:
    async with get_async_session() as session:
        return await session.scalar(
            select(func.count()).select_from(ActivityLog).where(
                ActivityLog.user_id == owner_id,
                ActivityLog.type == ActivityLogType.SLOT_EXPIRED,
            )
        )


class FailingStore(SlotStore):
    """Refuses to finalize the given slots."""

    def __init__(self, broken):
        super().__init__()
        self.broken = set(broken)

    async def finalize(self, session, slot, now):
        if slot.id in self.broken:
            raise RuntimeError("corrupt slot")
        return await super().finalize(session, slot, now)


@pytest.mark.asyncio
async def test_finalizes_across_batches(engine, funded_owner, clock, connections):
    owner_a = await funded_owner(Decimal("300"))
    owner_b = await funded_owner(Decimal("100"))
    for _ in range(3):
        await buy(engine, owner_a)
    await buy(engine, owner_b)

    clock.advance(days=7, seconds=1)
    stats = await engine.run_expiry_batch_now()

    # batch size is 2 in tests
    assert stats.total_slots == 4
    assert stats.processed_slots == 4
    assert stats.failed_slots == 0
    assert stats.batches_processed == 2
    assert stats.total_credited == Decimal("28")
    assert stats.affected_owners == sorted([owner_a, owner_b])

    assert await engine.get_balance(owner_a) == Decimal("21")
    assert await engine.get_balance(owner_b) == Decimal("7")

    # one notification per owner, not per slot
    expired_a = connections.messages_for(owner_a, MessageType.SLOTS_EXPIRED)
    assert len(expired_a) == 1
    assert len(expired_a[0].data["slot_ids"]) == 3
    assert Decimal(expired_a[0].data["total_credited"]) == Decimal("21")
    assert len(connections.messages_for(owner_b, MessageType.SLOTS_EXPIRED)) == 1


@pytest.mark.asyncio
async def test_rerun_is_idempotent(engine, funded_owner, clock):
    owner_id = await funded_owner(Decimal("100"))
    await buy(engine, owner_id)
    clock.advance(days=8)

    first = await engine.run_expiry_batch_now()
    second = await engine.run_expiry_batch_now()

    assert first.processed_slots == 1
    assert second.total_slots == 0
    assert second.total_credited == Decimal("0")
    assert await engine.get_balance(owner_id) == Decimal("7")
    assert await count_expired_logs(owner_id) == 1


@pytest.mark.asyncio
async def test_unexpired_slots_are_left_alone(engine, funded_owner, clock):
    owner_id = await funded_owner(Decimal("100"))
    slot_id = await buy(engine, owner_id)
    clock.advance(days=6)

    stats = await engine.run_expiry_batch_now()
    assert stats.total_slots == 0

    async with get_async_session() as session:
        slot = await session.get(MiningSlot, slot_id)
    assert slot.is_active


@pytest.mark.asyncio
async def test_slot_failure_does_not_abort_batch(engine, funded_owner, clock, cache, notifier):
    owner_id = await funded_owner(Decimal("300"))
    slot_ids = [await buy(engine, owner_id) for _ in range(3)]
    clock.advance(days=7)

    processor = ExpiryBatchProcessor(
        FailingStore([slot_ids[1]]), cache, notifier, clock=clock,
        batch_size=10, batch_delay_ms=0,
    )
    stats = await processor.run_expiry_batch_now()

    assert stats.total_slots == 3
    assert stats.processed_slots == 2
    assert stats.failed_slots == 1
    assert any(slot_ids[1] in error for error in stats.errors)
    assert processor.status == ProcessorStatus.FAILED
    assert await engine.get_balance(owner_id) == Decimal("14")

    # the next healthy run picks the leftover slot up
    retry = await engine.run_expiry_batch_now()
    assert retry.processed_slots == 1
    assert await engine.get_balance(owner_id) == Decimal("21")


@pytest.mark.asyncio
async def test_late_run_never_accrues_past_expiry(engine, funded_owner, clock):
    owner_id = await funded_owner(Decimal("100"))
    await buy(engine, owner_id)
    clock.advance(days=90)

    stats = await engine.run_expiry_batch_now()
    assert stats.total_credited == Decimal("7")


@pytest.mark.asyncio
async def test_concurrent_run_is_rejected(engine):
    await engine.expiry._run_lock.acquire()
    try:
        with pytest.raises(SchedulerError):
            await engine.run_expiry_batch_now()
    finally:
        engine.expiry._run_lock.release()


@pytest.mark.asyncio
async def test_processing_status(engine, funded_owner, clock):
    owner_id = await funded_owner(Decimal("300"))
    await buy(engine, owner_id)
    clock.advance(days=3)
    await buy(engine, owner_id)
    clock.advance(days=3)
    await buy(engine, owner_id)

    # first slot expires within the next 24h
    status = await engine.get_processing_status()
    assert status["active_slots"] == 3
    assert status["expired_slots"] == 0
    assert status["expiring_soon"] == 1
    assert status["processor_status"] == ProcessorStatus.IDLE.value
    assert status["last_run"] is None

    clock.advance(days=1, minutes=30)
    status = await engine.get_processing_status()
    assert status["expired_slots"] == 1

    await engine.run_expiry_batch_now()
    status = await engine.get_processing_status()
    assert status["active_slots"] == 2
    assert status["expired_slots"] == 0
    assert status["processed_last_hour"] == 1
    assert status["processor_status"] == ProcessorStatus.COMPLETED.value
    assert status["last_run"]["processed_slots"] == 1

    clock.advance(hours=2)
    status = await engine.get_processing_status()
    assert status["processed_last_hour"] == 0
