"""
Shared fixtures: a throwaway sqlite database, fakeredis-backed cache, a
frozen clock and a connection manager that records what would be pushed.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, List, Tuple

import pytest
from fakeredis import aioredis as fake_aioredis

from mining_engine.cache.cache_keys import CacheKeyBuilder
from mining_engine.cache.cache_service import CacheService
from mining_engine.cache.redis_client import RedisClient
from mining_engine.core.config import Settings
from mining_engine.core.database import DatabaseManager, close_database, init_database
from mining_engine.models import ActivityLogType
from mining_engine.services.engine import MiningEngine, set_engine
from mining_engine.websocket.notification_service import NotificationService
from mining_engine.websocket.schemas import MessageType


T0 = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return self.now


class RecordingConnectionManager:
    """Stands in for the websocket ConnectionManager."""

    def __init__(self):
        self.sent: List[Tuple[int, Any]] = []

    async def send_to_owner(self, owner_id: int, message) -> int:
        self.sent.append((owner_id, message))
        return 1

    def messages_for(self, owner_id: int, message_type: MessageType = None):
        return [
            message for target, message in self.sent
            if target == owner_id and (message_type is None or message.type == message_type)
        ]


def make_settings(**overrides) -> Settings:
    values = dict(
        environment="development",
        slot_weekly_rate=Decimal("0.07"),
        slot_duration_days=7,
        minimum_slot_investment=Decimal("3"),
        slot_extension_cost=Decimal("1"),
        slot_extension_days=7,
        min_claim_amount=Decimal("0.01"),
        close_slot_on_claim=False,
        claim_lock_timeout_seconds=2.0,
        claim_max_retries=2,
        claim_retry_delay_base=0.01,
        expiry_batch_size=2,
        expiry_batch_timeout_seconds=10.0,
        expiry_max_processing_seconds=60.0,
        expiry_batch_delay_ms=0,
        persistence_min_interval_seconds=300,
        cache_ttl_seconds=60,
        scheduler_enabled=False,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
async def database(tmp_path):
    await init_database(f"sqlite:///{tmp_path / 'engine.db'}")
    await DatabaseManager.create_tables()
    yield
    await close_database()


@pytest.fixture
async def fake_redis():
    client = fake_aioredis.FakeRedis(decode_responses=True)
    await client.flushall()
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def cache(fake_redis) -> CacheService:
    return CacheService(
        RedisClient(client=fake_redis),
        CacheKeyBuilder(prefix="test", environment="development"),
        default_ttl=60,
    )


@pytest.fixture
def connections() -> RecordingConnectionManager:
    return RecordingConnectionManager()


@pytest.fixture
def notifier(connections) -> NotificationService:
    return NotificationService(manager=connections)


@pytest.fixture
def config() -> Settings:
    return make_settings()


@pytest.fixture
def engine(database, cache, notifier, clock, config) -> MiningEngine:
    engine = MiningEngine(cache=cache, notifier=notifier, clock=clock, config=config)
    set_engine(engine)
    yield engine
    set_engine(None)


@pytest.fixture
def funded_owner(engine):
    """Factory: register an owner and deposit `amount` into their wallet."""

    async def _create(amount: Decimal = Decimal("100")) -> int:
        owner_id = await engine.register_owner()
        if amount:
            await engine.adjust_balance(owner_id, amount, ActivityLogType.DEPOSIT)
        return owner_id

    return _create
