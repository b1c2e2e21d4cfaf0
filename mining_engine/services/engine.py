"""
Engine wiring: builds every service around one store, cache, notifier and
clock, and exposes the operations the transport layer calls.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncContextManager, Callable, Dict, Optional, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from mining_engine.cache.cache_service import CacheService
from mining_engine.core.config import Settings, settings as default_settings
from mining_engine.core.database import get_async_session
from mining_engine.models import ActivityLogType, SlotType
from mining_engine.models.base import utc_now
from mining_engine.services.claim_service import ClaimService
from mining_engine.services.expiry_processor import ExpiryBatchProcessor
from mining_engine.services.live_stats import LiveStats
from mining_engine.services.locks import OwnerLockRegistry
from mining_engine.services.persistence_job import AccrualPersistenceJob
from mining_engine.services.projection import ProjectionService
from mining_engine.services.slot_service import SlotService
from mining_engine.services.slot_store import SlotStore
from mining_engine.services.types import ClaimResult, PersistenceStats, ProcessingStats
from mining_engine.services.wallet_service import WalletService
from mining_engine.websocket.notification_service import NotificationService


logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


class MiningEngine:
    """Facade over the engine services."""

    def __init__(
        self,
        cache: Optional[CacheService] = None,
        notifier: Optional[NotificationService] = None,
        live_stats: Optional[LiveStats] = None,
        session_factory: SessionFactory = get_async_session,
        clock: Callable[[], datetime] = utc_now,
        config: Optional[Settings] = None,
    ):
        config = config or default_settings
        self.config = config
        self.cache = cache
        self.notifier = notifier
        self.clock = clock
        self.live_stats = live_stats or LiveStats(clock=clock)
        self.store = SlotStore(currency=config.wallet_currency)
        self.locks = OwnerLockRegistry(default_timeout=config.claim_lock_timeout_seconds)

        self.wallets = WalletService(self.store, cache, notifier, session_factory)
        self.slots = SlotService(
            self.store, cache, notifier, session_factory, clock,
            weekly_rate=config.slot_weekly_rate,
            duration_days=config.slot_duration_days,
            minimum_investment=config.minimum_slot_investment,
            extension_cost=config.slot_extension_cost,
            extension_days=config.slot_extension_days,
        )
        self.projection = ProjectionService(
            self.store, cache, session_factory, clock, cache_ttl=config.cache_ttl_seconds
        )
        self.claims = ClaimService(
            self.store, self.locks, cache, notifier, self.live_stats, session_factory, clock,
            min_claim_amount=config.min_claim_amount,
            close_on_claim=config.close_slot_on_claim,
            lock_timeout=config.claim_lock_timeout_seconds,
            max_retries=config.claim_max_retries,
            retry_delay_base=config.claim_retry_delay_base,
        )
        self.expiry = ExpiryBatchProcessor(
            self.store, cache, notifier, self.live_stats, session_factory, clock,
            batch_size=config.expiry_batch_size,
            batch_timeout=config.expiry_batch_timeout_seconds,
            max_processing_time=config.expiry_max_processing_seconds,
            batch_delay_ms=config.expiry_batch_delay_ms,
            expiring_soon_hours=config.expiring_soon_hours,
        )
        self.persistence = AccrualPersistenceJob(
            self.store, cache, self.live_stats, session_factory, clock,
            min_interval_seconds=config.persistence_min_interval_seconds,
            materiality_threshold=config.persistence_materiality_threshold,
            batch_size=config.persistence_batch_size,
        )

    # Exposed operations

    async def claim(self, owner_id: int, slot_ids: Optional[Sequence[str]] = None) -> ClaimResult:
        return await self.claims.claim(owner_id, slot_ids)

    async def get_projected_earnings(self, owner_id: int) -> Dict[str, Any]:
        return await self.projection.get_cached_projected_earnings(owner_id)

    async def run_expiry_batch_now(self) -> ProcessingStats:
        return await self.expiry.run_expiry_batch_now()

    async def run_persistence_now(self) -> PersistenceStats:
        return await self.persistence.run_once()

    async def get_processing_status(self) -> Dict[str, Any]:
        return await self.expiry.get_processing_status()

    async def purchase_slot(
        self, owner_id: int, principal: Any, slot_type: SlotType = SlotType.STANDARD
    ) -> Dict[str, Any]:
        return await self.slots.purchase_slot(owner_id, principal, slot_type=slot_type)

    async def extend_slot(self, owner_id: int, slot_id: str) -> Dict[str, Any]:
        return await self.slots.extend_slot(owner_id, slot_id)

    async def upgrade_slot(self, owner_id: int, slot_id: str, amount: Any) -> Dict[str, Any]:
        return await self.slots.upgrade_slot(owner_id, slot_id, amount)

    async def list_slots(self, owner_id: int, include_inactive: bool = False):
        return await self.slots.list_slots(owner_id, include_inactive)

    async def register_owner(
        self, external_id: Optional[int] = None, username: Optional[str] = None
    ) -> int:
        return await self.wallets.register_owner(external_id, username)

    async def adjust_balance(
        self,
        owner_id: int,
        amount: Any,
        log_type: ActivityLogType,
        description: Optional[str] = None,
    ) -> Decimal:
        return await self.wallets.adjust_balance(owner_id, amount, log_type, description)

    async def get_balance(self, owner_id: int) -> Decimal:
        return await self.wallets.get_balance(owner_id)

    async def reconcile(self, owner_id: int) -> Dict[str, Any]:
        return await self.wallets.reconcile(owner_id)

    def get_live_stats(self) -> Dict[str, Any]:
        return self.live_stats.snapshot()


# Process-wide engine, created by the application lifespan
_engine: Optional[MiningEngine] = None


def set_engine(engine: Optional[MiningEngine]) -> None:
    global _engine
    _engine = engine


def get_engine() -> MiningEngine:
    if _engine is None:
        raise RuntimeError("Mining engine not initialized")
    return _engine
