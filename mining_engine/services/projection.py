"""
Projected earnings: realized accrued_earnings plus the virtual delta since
each slot's checkpoint. Read-only; this is what live dashboards poll.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncContextManager, Callable, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from mining_engine.cache.cache_service import CacheService
from mining_engine.core.database import get_async_session
from mining_engine.models import MiningSlot
from mining_engine.models.base import utc_now
from mining_engine.services import accrual
from mining_engine.services.slot_store import SlotStore
from mining_engine.utils.validation import validate_owner_id


logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]

PROJECTION_CACHE_NAME = "projection"


def slot_view(slot: MiningSlot, now: datetime) -> Dict[str, Any]:
    """JSON-ready view of a slot as of `now`."""
    remaining = accrual.elapsed_seconds(now, slot.expires_at)
    running = slot.is_active and now < slot.expires_at
    return {
        "slot_id": slot.id,
        "slot_type": slot.slot_type,
        "principal": str(slot.principal),
        "weekly_rate": str(slot.weekly_rate),
        "start_at": slot.start_at.isoformat(),
        "expires_at": slot.expires_at.isoformat(),
        "last_accrued_at": slot.last_accrued_at.isoformat(),
        "is_active": slot.is_active,
        "close_reason": slot.close_reason,
        "realized": str(accrual.floor_amount(slot.accrued_earnings)),
        "accrued": str(accrual.current_value(slot, now)) if slot.is_active else "0.00000000",
        "per_second_rate": str(
            accrual.per_second_rate(slot.principal, slot.weekly_rate) if running
            else accrual.floor_amount(0)
        ),
        "projected_total": str(accrual.total_window_earnings(slot)),
        "progress": str(accrual.progress_percent(slot, now)),
        "seconds_until_expiry": int(max(remaining, 0)),
    }


class ProjectionService:
    """Builds (and caches) the per-owner projected earnings aggregate."""

    def __init__(
        self,
        store: SlotStore,
        cache: Optional[CacheService] = None,
        session_factory: SessionFactory = get_async_session,
        clock: Callable[[], datetime] = utc_now,
        cache_ttl: Optional[int] = None,
    ):
        self.store = store
        self.cache = cache
        self.session_factory = session_factory
        self.clock = clock
        self.cache_ttl = cache_ttl
        self.logger = logger.bind(service="projection")

    async def get_projected_earnings(self, owner_id: int) -> Dict[str, Any]:
        """
        Aggregate of the owner's active slots as of now.

        Raises:
            ValidationError: malformed owner id
            OwnerNotFoundError: unknown owner
        """
        validate_owner_id(owner_id)

        async with self.session_factory() as session:
            await self.store.get_owner(session, owner_id)
            await self.store.ensure_wallet(session, owner_id)
            slots = await self.store.get_active_slots(session, owner_id)
            balance = await self.store.get_balance(session, owner_id)

        now = self.clock()
        total_accrued = Decimal("0")
        per_second = Decimal("0")
        per_slot = []

        for slot in slots:
            view = slot_view(slot, now)
            per_slot.append(view)
            total_accrued += Decimal(view["accrued"])
            per_second += Decimal(view["per_second_rate"])

        return {
            "owner_id": owner_id,
            "currency": self.store.currency,
            "balance": str(balance),
            "per_slot": per_slot,
            "total_accrued": str(accrual.floor_amount(total_accrued)),
            "per_second_rate": str(accrual.floor_amount(per_second)),
            "computed_at": now.isoformat(),
        }

    async def get_cached_projected_earnings(self, owner_id: int) -> Dict[str, Any]:
        """get_projected_earnings through the owner-scoped read-through cache."""
        validate_owner_id(owner_id)
        if self.cache is None:
            return await self.get_projected_earnings(owner_id)

        return await self.cache.get_or_compute_for_owner(
            owner_id,
            PROJECTION_CACHE_NAME,
            lambda: self.get_projected_earnings(owner_id),
            ttl=self.cache_ttl,
        )
