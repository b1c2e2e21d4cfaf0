"""
Tests for claiming accrued slot earnings.
"""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from mining_engine.core.database import get_async_session
from mining_engine.core.exceptions import (
    ConcurrencyConflictError,
    OwnerNotFoundError,
    SlotNotFoundError,
    ValidationError,
)
from mining_engine.models import ActivityLog, ActivityLogType, CloseReason, MiningSlot
from mining_engine.services.claim_service import NO_ACTIVE_SLOTS, NOTHING_TO_CLAIM, ClaimService
from mining_engine.services.engine import MiningEngine
from mining_engine.services.locks import OwnerLockRegistry
from mining_engine.services.slot_store import SlotStore
from mining_engine.websocket.schemas import MessageType
from tests.conftest import T0, make_settings


async def load_slot(slot_id: str) -> MiningSlot:
    async with get_async_session() as session:
        return await session.get(MiningSlot, slot_id)


async def buy(engine, owner_id, principal="100") -> str:
    result = await engine.purchase_slot(owner_id, Decimal(principal))
    return result["slot"]["slot_id"]


@pytest.mark.asyncio
async def test_half_window_claim_then_expiry(engine, funded_owner, clock):
    owner_id = await funded_owner(Decimal("100"))
    slot_id = await buy(engine, owner_id)

    clock.advance(days=3.5)
    projection = await engine.get_projected_earnings(owner_id)
    assert Decimal(projection["total_accrued"]) == Decimal("3.5")

    result = await engine.claim(owner_id)
    assert result.success
    assert result.claimed_amount == Decimal("3.5")
    assert result.new_balance == Decimal("3.5")

    slot = await load_slot(slot_id)
    assert slot.last_accrued_at == clock.now
    assert slot.accrued_earnings == Decimal("0")
    assert slot.is_active

    again = await engine.claim(owner_id)
    assert not again.success
    assert again.claimed_amount == Decimal("0")
    assert again.message == NOTHING_TO_CLAIM

    clock.advance(days=3.5)
    stats = await engine.run_expiry_batch_now()
    assert stats.processed_slots == 1
    assert stats.total_credited == Decimal("3.5")
    assert await engine.get_balance(owner_id) == Decimal("7")

    slot = await load_slot(slot_id)
    assert not slot.is_active
    assert slot.close_reason == CloseReason.EXPIRED.value

    with pytest.raises(SlotNotFoundError):
        await engine.claim(owner_id, [slot_id])

    no_slots = await engine.claim(owner_id)
    assert not no_slots.success
    assert no_slots.message == NO_ACTIVE_SLOTS


@pytest.mark.asyncio
async def test_concurrent_claims_credit_once(engine, funded_owner, clock):
    owner_id = await funded_owner(Decimal("100"))
    await buy(engine, owner_id)
    clock.advance(days=1)

    first, second = await asyncio.gather(engine.claim(owner_id), engine.claim(owner_id))

    outcomes = sorted([first.success, second.success])
    assert outcomes == [False, True]
    assert first.claimed_amount + second.claimed_amount == Decimal("1")
    assert await engine.get_balance(owner_id) == Decimal("1")

    async with get_async_session() as session:
        claims = (await session.execute(
            select(ActivityLog).where(
                ActivityLog.user_id == owner_id, ActivityLog.type == ActivityLogType.CLAIM
            )
        )).scalars().all()
    assert len(claims) == 1


@pytest.mark.asyncio
async def test_claim_after_expiry_is_capped(engine, funded_owner, clock):
    owner_id = await funded_owner(Decimal("100"))
    await buy(engine, owner_id)

    clock.advance(days=30)
    result = await engine.claim(owner_id)
    assert result.claimed_amount == Decimal("7")

    stats = await engine.run_expiry_batch_now()
    assert stats.processed_slots == 1
    assert stats.total_credited == Decimal("0")
    assert await engine.get_balance(owner_id) == Decimal("7")


@pytest.mark.asyncio
async def test_claim_selected_slots_only(engine, funded_owner, clock):
    owner_id = await funded_owner(Decimal("200"))
    first = await buy(engine, owner_id)
    second = await buy(engine, owner_id)
    clock.advance(days=1)

    result = await engine.claim(owner_id, [first, first])
    assert result.claimed_amount == Decimal("1")
    assert [s.slot_id for s in result.slots] == [first]

    untouched = await load_slot(second)
    assert untouched.last_accrued_at == T0


@pytest.mark.asyncio
async def test_claim_below_minimum_is_not_credited(engine, funded_owner, clock):
    owner_id = await funded_owner(Decimal("3"))
    slot_id = await buy(engine, owner_id, "3")
    clock.advance(minutes=1)

    result = await engine.claim(owner_id)
    assert not result.success
    assert "Minimum claim amount" in result.message
    assert (await load_slot(slot_id)).last_accrued_at == T0


@pytest.mark.asyncio
async def test_claim_keeps_slot_running_by_default(engine, funded_owner, clock):
    owner_id = await funded_owner(Decimal("100"))
    slot_id = await buy(engine, owner_id)
    clock.advance(days=1)
    await engine.claim(owner_id)

    clock.advance(days=1)
    result = await engine.claim(owner_id)
    assert result.claimed_amount == Decimal("1")
    assert (await load_slot(slot_id)).is_active


@pytest.mark.asyncio
async def test_close_on_claim_deactivates_slot(database, cache, notifier, clock):
    engine = MiningEngine(
        cache=cache, notifier=notifier, clock=clock,
        config=make_settings(close_slot_on_claim=True)
    )
    owner_id = await engine.register_owner()
    await engine.adjust_balance(owner_id, Decimal("100"), ActivityLogType.DEPOSIT)
    slot_id = await buy(engine, owner_id)
    clock.advance(days=1)

    result = await engine.claim(owner_id)
    assert result.success
    assert result.slots[0].is_active is False

    slot = await load_slot(slot_id)
    assert not slot.is_active
    assert slot.close_reason == CloseReason.CLAIMED.value

    clock.advance(days=7)
    stats = await engine.run_expiry_batch_now()
    assert stats.total_slots == 0


@pytest.mark.asyncio
async def test_claim_invalidates_cache_and_notifies(engine, funded_owner, clock, connections):
    owner_id = await funded_owner(Decimal("100"))
    await buy(engine, owner_id)
    clock.advance(days=2)

    before = await engine.get_projected_earnings(owner_id)
    assert Decimal(before["total_accrued"]) == Decimal("2")

    await engine.claim(owner_id)

    after = await engine.get_projected_earnings(owner_id)
    assert Decimal(after["total_accrued"]) == Decimal("0")
    assert Decimal(after["balance"]) == Decimal("2")

    claimed = connections.messages_for(owner_id, MessageType.EARNINGS_CLAIMED)
    assert len(claimed) == 1
    assert Decimal(claimed[0].data["claimed_amount"]) == Decimal("2")
    assert engine.get_live_stats()["claims_processed"] == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("owner_id, slot_ids", [
    (0, None),
    (-5, None),
    ("1", None),
    (True, None),
    (1, []),
    (1, "slot"),
    (1, [""]),
])
async def test_claim_rejects_malformed_input(engine, owner_id, slot_ids):
    with pytest.raises(ValidationError):
        await engine.claim(owner_id, slot_ids)


@pytest.mark.asyncio
async def test_claim_unknown_owner_and_slot(engine, funded_owner):
    with pytest.raises(OwnerNotFoundError):
        await engine.claim(424242)

    owner_id = await funded_owner(Decimal("0"))
    with pytest.raises(SlotNotFoundError):
        await engine.claim(owner_id, ["missing-slot"])


class FlakyStore(SlotStore):
    """Loses the version race once, then behaves."""

    def __init__(self, failures: int = 1):
        super().__init__(currency="USDT")
        self.failures = failures

    async def flush_slot(self, session, slot):
        if self.failures:
            self.failures -= 1
            raise ConcurrencyConflictError("Slot was modified concurrently", {"slot_id": slot.id})
        await super().flush_slot(session, slot)


@pytest.mark.asyncio
async def test_claim_retries_after_conflict(engine, funded_owner, clock):
    owner_id = await funded_owner(Decimal("100"))
    await buy(engine, owner_id)
    clock.advance(days=1)

    service = ClaimService(
        FlakyStore(failures=1), OwnerLockRegistry(), clock=clock,
        min_claim_amount=Decimal("0.01"), close_on_claim=False,
        lock_timeout=1.0, max_retries=2, retry_delay_base=0.001,
    )
    result = await service.claim(owner_id)
    assert result.success
    assert result.claimed_amount == Decimal("1")
    assert await engine.get_balance(owner_id) == Decimal("1")


@pytest.mark.asyncio
async def test_claim_gives_up_when_owner_stays_locked(engine, funded_owner, clock):
    owner_id = await funded_owner(Decimal("100"))
    await buy(engine, owner_id)
    clock.advance(days=1)

    locks = OwnerLockRegistry()
    service = ClaimService(
        SlotStore(currency="USDT"), locks, clock=clock,
        lock_timeout=0.05, max_retries=1, retry_delay_base=0.001,
    )
    async with locks.hold(owner_id):
        with pytest.raises(ConcurrencyConflictError):
            await service.claim(owner_id)

    assert await engine.get_balance(owner_id) == Decimal("0")
