"""
Tests for the accrual persistence job.
"""

from decimal import Decimal

import pytest

from mining_engine.core.database import get_async_session
from mining_engine.models import MiningSlot


@pytest.mark.asyncio
async def test_checkpoints_stale_slots(engine, funded_owner, clock):
    owner_id = await funded_owner(Decimal("100"))
    purchase = await engine.purchase_slot(owner_id, Decimal("100"))
    slot_id = purchase["slot"]["slot_id"]

    clock.advance(days=1)
    before = await engine.get_projected_earnings(owner_id)
    stats = await engine.run_persistence_now()

    assert stats.scanned == 1
    assert stats.checkpointed == 1
    assert stats.failed == 0
    assert stats.total_realized == Decimal("1")

    async with get_async_session() as session:
        slot = await session.get(MiningSlot, slot_id)
    assert Decimal(str(slot.accrued_earnings)) == Decimal("1")
    assert slot.last_accrued_at == clock.now

    # checkpointing moves earnings between columns, never changes what is owed
    after = await engine.get_projected_earnings(owner_id)
    assert after["total_accrued"] == before["total_accrued"]
    assert await engine.get_balance(owner_id) == Decimal("0")


@pytest.mark.asyncio
async def test_recent_checkpoints_are_not_rescanned(engine, funded_owner, clock):
    owner_id = await funded_owner(Decimal("100"))
    await engine.purchase_slot(owner_id, Decimal("100"))

    clock.advance(days=1)
    await engine.run_persistence_now()
    clock.advance(seconds=60)
    stats = await engine.run_persistence_now()

    assert stats.scanned == 0
    assert stats.checkpointed == 0


@pytest.mark.asyncio
async def test_claim_after_checkpoint_pays_full_amount(engine, funded_owner, clock):
    owner_id = await funded_owner(Decimal("100"))
    await engine.purchase_slot(owner_id, Decimal("100"))

    clock.advance(days=1)
    await engine.run_persistence_now()
    clock.advance(days=1)
    await engine.run_persistence_now()
    clock.advance(days=1, hours=12)

    result = await engine.claim(owner_id)
    assert result.success
    assert result.claimed_amount == Decimal("3.5")
    assert result.new_balance == Decimal("3.5")


@pytest.mark.asyncio
async def test_expired_slots_are_left_to_expiry(engine, funded_owner, clock):
    owner_id = await funded_owner(Decimal("100"))
    await engine.purchase_slot(owner_id, Decimal("100"))

    clock.advance(days=8)
    stats = await engine.run_persistence_now()
    assert stats.scanned == 0

    expiry = await engine.run_expiry_batch_now()
    assert expiry.total_credited == Decimal("7")


@pytest.mark.asyncio
async def test_records_live_stats(engine, funded_owner, clock):
    owner_id = await funded_owner(Decimal("200"))
    await engine.purchase_slot(owner_id, Decimal("100"))
    await engine.purchase_slot(owner_id, Decimal("100"))

    clock.advance(days=2)
    await engine.run_persistence_now()

    snapshot = engine.get_live_stats()
    assert snapshot["checkpoints_written"] == 2
    assert Decimal(snapshot["total_realized"]) == Decimal("4")
    assert snapshot["last_persistence_run"] == clock.now.isoformat()
