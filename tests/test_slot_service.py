"""
Tests for slot purchase, extension and upgrade.
"""

from datetime import datetime
from decimal import Decimal

import pytest

from mining_engine.core.exceptions import (
    InsufficientBalanceError,
    OwnerNotFoundError,
    SlotNotFoundError,
    ValidationError,
)
from mining_engine.models import ActivityLogType
from mining_engine.websocket.schemas import MessageType
from tests.conftest import T0


@pytest.mark.asyncio
async def test_purchase_debits_wallet(engine, funded_owner, connections):
    owner_id = await funded_owner(Decimal("150"))

    result = await engine.purchase_slot(owner_id, Decimal("100"))
    slot = result["slot"]

    assert Decimal(result["balance"]) == Decimal("50")
    assert await engine.get_balance(owner_id) == Decimal("50")
    assert Decimal(slot["principal"]) == Decimal("100")
    assert Decimal(slot["weekly_rate"]) == Decimal("0.07")
    assert datetime.fromisoformat(slot["start_at"]) == T0
    assert datetime.fromisoformat(slot["expires_at"]) == datetime.fromisoformat("2026-01-12T12:00:00+00:00")
    assert slot["is_active"] is True
    assert Decimal(slot["projected_total"]) == Decimal("7")

    updates = connections.messages_for(owner_id, MessageType.SLOT_UPDATE)
    assert len(updates) == 1
    assert updates[0].data["event"] == ActivityLogType.NEW_SLOT_PURCHASE.value


@pytest.mark.asyncio
async def test_purchase_below_minimum(engine, funded_owner):
    owner_id = await funded_owner(Decimal("100"))
    with pytest.raises(ValidationError):
        await engine.purchase_slot(owner_id, Decimal("2.99"))
    assert await engine.get_balance(owner_id) == Decimal("100")


@pytest.mark.asyncio
async def test_purchase_insufficient_balance(engine, funded_owner):
    owner_id = await funded_owner(Decimal("50"))
    with pytest.raises(InsufficientBalanceError):
        await engine.purchase_slot(owner_id, Decimal("100"))

    assert await engine.get_balance(owner_id) == Decimal("50")
    assert await engine.list_slots(owner_id) == []


@pytest.mark.asyncio
async def test_purchase_unknown_owner(engine):
    with pytest.raises(OwnerNotFoundError):
        await engine.purchase_slot(999, Decimal("100"))


@pytest.mark.asyncio
async def test_extend_pushes_expiry(engine, funded_owner, clock):
    owner_id = await funded_owner(Decimal("101"))
    slot_id = (await engine.purchase_slot(owner_id, Decimal("100")))["slot"]["slot_id"]

    clock.advance(days=3)
    result = await engine.extend_slot(owner_id, slot_id)

    assert Decimal(result["balance"]) == Decimal("0")
    assert datetime.fromisoformat(result["slot"]["expires_at"]) == datetime.fromisoformat("2026-01-19T12:00:00+00:00")
    # twice the window at the same rate
    assert Decimal(result["slot"]["projected_total"]) == Decimal("14")


@pytest.mark.asyncio
async def test_extend_requires_extension_cost(engine, funded_owner):
    owner_id = await funded_owner(Decimal("100"))
    slot_id = (await engine.purchase_slot(owner_id, Decimal("100")))["slot"]["slot_id"]

    with pytest.raises(InsufficientBalanceError):
        await engine.extend_slot(owner_id, slot_id)

    slots = await engine.list_slots(owner_id)
    assert datetime.fromisoformat(slots[0]["expires_at"]) == datetime.fromisoformat("2026-01-12T12:00:00+00:00")


@pytest.mark.asyncio
async def test_extend_rejects_expired_slot(engine, funded_owner, clock):
    owner_id = await funded_owner(Decimal("110"))
    slot_id = (await engine.purchase_slot(owner_id, Decimal("100")))["slot"]["slot_id"]

    clock.advance(days=7)
    with pytest.raises(ValidationError):
        await engine.extend_slot(owner_id, slot_id)
    assert await engine.get_balance(owner_id) == Decimal("10")


@pytest.mark.asyncio
async def test_extend_other_owners_slot(engine, funded_owner):
    owner_id = await funded_owner(Decimal("110"))
    other_id = await funded_owner(Decimal("10"))
    slot_id = (await engine.purchase_slot(owner_id, Decimal("100")))["slot"]["slot_id"]

    with pytest.raises(SlotNotFoundError):
        await engine.extend_slot(other_id, slot_id)


@pytest.mark.asyncio
async def test_upgrade_applies_new_principal_from_now(engine, funded_owner, clock):
    owner_id = await funded_owner(Decimal("200"))
    slot_id = (await engine.purchase_slot(owner_id, Decimal("100")))["slot"]["slot_id"]

    clock.advance(days=2)
    result = await engine.upgrade_slot(owner_id, slot_id, Decimal("100"))

    assert Decimal(result["balance"]) == Decimal("0")
    assert Decimal(result["slot"]["principal"]) == Decimal("200")
    # earnings before the upgrade were realized at the old principal
    assert Decimal(result["slot"]["realized"]) == Decimal("2")

    clock.advance(days=2)
    projection = await engine.get_projected_earnings(owner_id)
    assert Decimal(projection["total_accrued"]) == Decimal("6")

    claim = await engine.claim(owner_id)
    assert claim.claimed_amount == Decimal("6")


@pytest.mark.asyncio
async def test_upgrade_rejects_bad_amount(engine, funded_owner):
    owner_id = await funded_owner(Decimal("200"))
    slot_id = (await engine.purchase_slot(owner_id, Decimal("100")))["slot"]["slot_id"]

    with pytest.raises(ValidationError):
        await engine.upgrade_slot(owner_id, slot_id, Decimal("-5"))
    with pytest.raises(InsufficientBalanceError):
        await engine.upgrade_slot(owner_id, slot_id, Decimal("500"))


@pytest.mark.asyncio
async def test_list_slots(engine, funded_owner, clock):
    owner_id = await funded_owner(Decimal("200"))
    await engine.purchase_slot(owner_id, Decimal("100"))
    clock.advance(days=1)
    await engine.purchase_slot(owner_id, Decimal("100"))

    clock.advance(days=7)
    await engine.run_expiry_batch_now()

    active = await engine.list_slots(owner_id)
    everything = await engine.list_slots(owner_id, include_inactive=True)

    assert active == []
    assert len(everything) == 2
    assert [slot["close_reason"] for slot in everything] == ["expired", "expired"]
    assert all(slot["accrued"] == "0.00000000" for slot in everything)
