"""
Slot lifecycle operations triggered by owners: purchase, extend, upgrade.

Each operation moves the wallet and the slot in one transaction under the
owner's wallet row lock, then invalidates the owner's cache and notifies.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from mining_engine.cache.cache_service import CacheService
from mining_engine.core.config import settings
from mining_engine.core.database import get_async_session
from mining_engine.core.exceptions import PersistenceError, ValidationError
from mining_engine.models import ActivityLogType, SlotType
from mining_engine.models.base import utc_now
from mining_engine.services import accrual
from mining_engine.services.projection import slot_view
from mining_engine.services.slot_store import SlotStore
from mining_engine.utils.validation import (
    validate_amount, validate_owner_id, validate_slot_id
)
from mining_engine.websocket.notification_service import NotificationService


logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


class SlotService:
    """Purchase, extend and upgrade mining slots."""

    def __init__(
        self,
        store: SlotStore,
        cache: Optional[CacheService] = None,
        notifier: Optional[NotificationService] = None,
        session_factory: SessionFactory = get_async_session,
        clock: Callable[[], datetime] = utc_now,
        weekly_rate: Optional[Decimal] = None,
        duration_days: Optional[int] = None,
        minimum_investment: Optional[Decimal] = None,
        extension_cost: Optional[Decimal] = None,
        extension_days: Optional[int] = None,
    ):
        self.store = store
        self.cache = cache
        self.notifier = notifier
        self.session_factory = session_factory
        self.clock = clock
        self.weekly_rate = settings.slot_weekly_rate if weekly_rate is None else weekly_rate
        self.duration = timedelta(days=duration_days or settings.slot_duration_days)
        self.minimum_investment = (
            settings.minimum_slot_investment if minimum_investment is None else minimum_investment
        )
        self.extension_cost = settings.slot_extension_cost if extension_cost is None else extension_cost
        self.extension = timedelta(days=extension_days or settings.slot_extension_days)
        self.logger = logger.bind(service="slot_service")

    async def purchase_slot(
        self,
        owner_id: int,
        principal: Any,
        weekly_rate: Optional[Decimal] = None,
        slot_type: SlotType = SlotType.STANDARD,
    ) -> Dict[str, Any]:
        """
        Debit `principal` and open a slot accruing from now for the slot duration.

        Raises:
            ValidationError: principal below the minimum investment
            InsufficientBalanceError: wallet cannot cover the principal
        """
        validate_owner_id(owner_id)
        principal = validate_amount(principal, "principal", minimum=self.minimum_investment)
        rate = accrual.to_decimal(self.weekly_rate if weekly_rate is None else weekly_rate)
        if rate < 0:
            raise ValidationError("Weekly rate must not be negative", {"weekly_rate": str(rate)})

        now = self.clock()
        try:
            async with self.session_factory() as session:
                await self.store.get_owner(session, owner_id)
                slot = await self.store.create_slot(
                    session, owner_id, principal, rate, now, self.duration, slot_type
                )
                new_balance = await self.store.get_balance(session, owner_id)
                view = slot_view(slot, now)
        except SQLAlchemyError as e:
            raise self._persistence_error("purchase", owner_id, e) from e

        await self._after_write(owner_id, ActivityLogType.NEW_SLOT_PURCHASE, view, new_balance)
        return {"slot": view, "balance": str(new_balance)}

    async def extend_slot(self, owner_id: int, slot_id: str) -> Dict[str, Any]:
        """Pay the extension cost and push expires_at out by the extension period."""
        validate_owner_id(owner_id)
        validate_slot_id(slot_id)
        now = self.clock()

        try:
            async with self.session_factory() as session:
                await self.store.get_owner(session, owner_id)
                await self.store.lock_wallet(session, owner_id)
                slot = await self.store.get_slot(session, slot_id, owner_id, for_update=True)
                if slot.is_expired(now):
                    raise ValidationError(
                        "Expired slots cannot be extended",
                        {"slot_id": slot_id, "expires_at": slot.expires_at.isoformat()}
                    )

                slot.expires_at = slot.expires_at + self.extension
                await self.store.flush_slot(session, slot)
                new_balance = await self.store.apply_balance_change(
                    session, owner_id, ActivityLogType.SLOT_EXTENSION, self.extension_cost,
                    slot_id=slot.id, at=now
                )
                view = slot_view(slot, now)
        except SQLAlchemyError as e:
            raise self._persistence_error("extend", owner_id, e) from e

        self.logger.info(
            "Slot extended",
            owner_id=owner_id,
            slot_id=slot_id,
            expires_at=view["expires_at"]
        )
        await self._after_write(owner_id, ActivityLogType.SLOT_EXTENSION, view, new_balance)
        return {"slot": view, "balance": str(new_balance)}

    async def upgrade_slot(self, owner_id: int, slot_id: str, amount: Any) -> Dict[str, Any]:
        """
        Add `amount` to the slot's principal.

        Earnings up to now are realized at the old principal first, so the new
        principal only applies from this instant on.
        """
        validate_owner_id(owner_id)
        validate_slot_id(slot_id)
        amount = validate_amount(amount, "amount")
        now = self.clock()

        try:
            async with self.session_factory() as session:
                await self.store.get_owner(session, owner_id)
                await self.store.lock_wallet(session, owner_id)
                slot = await self.store.get_slot(session, slot_id, owner_id, for_update=True)
                if slot.is_expired(now):
                    raise ValidationError(
                        "Expired slots cannot be upgraded",
                        {"slot_id": slot_id, "expires_at": slot.expires_at.isoformat()}
                    )

                await self.store.checkpoint(session, slot, now)
                slot.principal = accrual.to_decimal(slot.principal) + amount
                await self.store.flush_slot(session, slot)
                new_balance = await self.store.apply_balance_change(
                    session, owner_id, ActivityLogType.SLOT_UPGRADE, amount,
                    slot_id=slot.id, at=now
                )
                view = slot_view(slot, now)
        except SQLAlchemyError as e:
            raise self._persistence_error("upgrade", owner_id, e) from e

        self.logger.info(
            "Slot upgraded",
            owner_id=owner_id,
            slot_id=slot_id,
            amount=str(amount),
            principal=view["principal"]
        )
        await self._after_write(owner_id, ActivityLogType.SLOT_UPGRADE, view, new_balance)
        return {"slot": view, "balance": str(new_balance)}

    async def list_slots(self, owner_id: int, include_inactive: bool = False) -> List[Dict[str, Any]]:
        validate_owner_id(owner_id)
        async with self.session_factory() as session:
            await self.store.get_owner(session, owner_id)
            slots = await self.store.get_owner_slots(session, owner_id, include_inactive)
        now = self.clock()
        return [slot_view(slot, now) for slot in slots]

    async def _after_write(
        self,
        owner_id: int,
        log_type: ActivityLogType,
        view: Dict[str, Any],
        new_balance: Decimal,
    ) -> None:
        if self.cache:
            await self.cache.invalidate_owner(owner_id)
        if self.notifier:
            await self.notifier.notify_slot_changed(owner_id, log_type, view, new_balance)

    def _persistence_error(self, operation: str, owner_id: int, error: SQLAlchemyError) -> PersistenceError:
        self.logger.error(
            "Slot operation failed",
            operation=operation,
            owner_id=owner_id,
            error=str(error)
        )
        return PersistenceError(
            f"Slot {operation} failed",
            {"owner_id": owner_id, "operation": operation}
        )
