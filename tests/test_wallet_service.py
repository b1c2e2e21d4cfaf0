"""
Tests for wallet adjustments and ledger reconciliation.
"""

from decimal import Decimal

import pytest
from sqlalchemy import update

from mining_engine.core.database import get_async_session
from mining_engine.core.exceptions import InsufficientBalanceError, OwnerNotFoundError, ValidationError
from mining_engine.models import ActivityLogType, Wallet
from mining_engine.websocket.schemas import MessageType


@pytest.mark.asyncio
async def test_register_owner_opens_empty_wallet(engine):
    owner_id = await engine.register_owner(external_id=12345, username="miner")
    assert owner_id > 0
    assert await engine.get_balance(owner_id) == Decimal("0")


@pytest.mark.asyncio
@pytest.mark.parametrize("log_type,expected", [
    (ActivityLogType.DEPOSIT, Decimal("110")),
    (ActivityLogType.BONUS, Decimal("110")),
    (ActivityLogType.PENALTY, Decimal("90")),
    (ActivityLogType.WITHDRAWAL, Decimal("90")),
])
async def test_adjust_balance_direction(engine, funded_owner, connections, log_type, expected):
    owner_id = await funded_owner(Decimal("100"))

    new_balance = await engine.adjust_balance(owner_id, Decimal("10"), log_type)

    assert new_balance == expected
    updates = connections.messages_for(owner_id, MessageType.BALANCE_UPDATE)
    assert updates[-1].data["event"] == log_type.value
    assert Decimal(updates[-1].data["balance"]) == expected


@pytest.mark.asyncio
@pytest.mark.parametrize("log_type", [
    ActivityLogType.CLAIM,
    ActivityLogType.SLOT_EXPIRED,
    ActivityLogType.NEW_SLOT_PURCHASE,
])
async def test_engine_owned_types_are_not_manual(engine, funded_owner, log_type):
    owner_id = await funded_owner(Decimal("100"))
    with pytest.raises(ValidationError):
        await engine.adjust_balance(owner_id, Decimal("10"), log_type)


@pytest.mark.asyncio
async def test_withdrawal_cannot_overdraw(engine, funded_owner):
    owner_id = await funded_owner(Decimal("5"))
    with pytest.raises(InsufficientBalanceError):
        await engine.adjust_balance(owner_id, Decimal("5.00000001"), ActivityLogType.WITHDRAWAL)
    assert await engine.get_balance(owner_id) == Decimal("5")


@pytest.mark.asyncio
async def test_adjust_unknown_owner(engine):
    with pytest.raises(OwnerNotFoundError):
        await engine.adjust_balance(4242, Decimal("1"), ActivityLogType.DEPOSIT)


@pytest.mark.asyncio
async def test_reconcile_matches_ledger(engine, funded_owner, clock):
    owner_id = await funded_owner(Decimal("250"))
    slot_id = (await engine.purchase_slot(owner_id, Decimal("100")))["slot"]["slot_id"]
    await engine.extend_slot(owner_id, slot_id)
    await engine.upgrade_slot(owner_id, slot_id, Decimal("50"))
    clock.advance(days=3)
    await engine.claim(owner_id)
    clock.advance(days=20)
    await engine.run_expiry_batch_now()
    await engine.adjust_balance(owner_id, Decimal("12.5"), ActivityLogType.WITHDRAWAL)

    report = await engine.reconcile(owner_id)

    assert report["consistent"] is True
    assert report["difference"] == Decimal("0")
    assert report["wallet_balance"] == report["ledger_balance"]
    assert report["wallet_balance"] == await engine.get_balance(owner_id)


@pytest.mark.asyncio
async def test_reconcile_flags_drift(engine, funded_owner):
    owner_id = await funded_owner(Decimal("100"))

    async with get_async_session() as session:
        await session.execute(
            update(Wallet).where(Wallet.user_id == owner_id).values(balance=Decimal("150"))
        )

    report = await engine.reconcile(owner_id)
    assert report["consistent"] is False
    assert report["difference"] == Decimal("50")
    assert report["ledger_balance"] == Decimal("100")
