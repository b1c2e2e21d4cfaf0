"""
Tests for post-commit notifications.
"""

from decimal import Decimal

import pytest

from mining_engine.models import ActivityLogType
from mining_engine.services.engine import MiningEngine
from mining_engine.websocket.notification_service import NotificationService
from mining_engine.websocket.schemas import MessageType
from tests.conftest import RecordingConnectionManager


class BrokenConnectionManager:
    def __init__(self):
        self.attempts = 0

    async def send_to_owner(self, owner_id: int, message) -> int:
        self.attempts += 1
        raise RuntimeError("socket closed")


@pytest.mark.asyncio
async def test_notify_delivers_message():
    connections = RecordingConnectionManager()
    notifier = NotificationService(manager=connections)

    sent = await notifier.notify_balance_changed(
        7, ActivityLogType.DEPOSIT, Decimal("0.00000001"), Decimal("10")
    )

    assert sent == 1
    assert notifier.sent == 1
    message = connections.messages_for(7, MessageType.BALANCE_UPDATE)[0]
    assert message.data["event"] == "deposit"
    assert message.data["owner_id"] == 7
    assert message.data["amount"] == "0.00000001"
    assert message.data["balance"] == "10"


@pytest.mark.asyncio
async def test_delivery_failure_is_counted_not_raised():
    broken = BrokenConnectionManager()
    notifier = NotificationService(manager=broken)

    sent = await notifier.notify_claim(7, Decimal("1"), Decimal("2"), [])

    assert sent == 0
    assert broken.attempts == 1
    assert notifier.failed == 1
    assert notifier.sent == 0


@pytest.mark.asyncio
async def test_mutations_succeed_when_delivery_fails(database, cache, clock, config):
    broken = BrokenConnectionManager()
    notifier = NotificationService(manager=broken)
    engine = MiningEngine(cache=cache, notifier=notifier, clock=clock, config=config)

    owner_id = await engine.register_owner()
    balance = await engine.adjust_balance(owner_id, Decimal("100"), ActivityLogType.DEPOSIT)
    assert balance == Decimal("100")

    await engine.purchase_slot(owner_id, Decimal("100"))
    clock.advance(days=1)
    result = await engine.claim(owner_id)

    assert result.success
    assert result.claimed_amount == Decimal("1")
    assert await engine.get_balance(owner_id) == Decimal("1")
    assert notifier.failed == broken.attempts >= 3
