"""
Wallet operations outside the slot lifecycle: deposits, bonuses, penalties,
withdrawals and ledger reconciliation.
"""

from decimal import Decimal
from typing import Any, AsyncContextManager, Callable, Dict, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from mining_engine.cache.cache_service import CacheService
from mining_engine.core.database import get_async_session
from mining_engine.core.exceptions import PersistenceError, ValidationError
from mining_engine.models import ActivityLogType
from mining_engine.services import accrual
from mining_engine.services.slot_store import SlotStore
from mining_engine.utils.validation import validate_amount, validate_owner_id
from mining_engine.websocket.notification_service import NotificationService


logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]

# Kinds that move money in or out from outside the engine
EXTERNAL_ADJUSTMENTS = (
    ActivityLogType.DEPOSIT,
    ActivityLogType.BONUS,
    ActivityLogType.PENALTY,
    ActivityLogType.WITHDRAWAL,
)


class WalletService:
    """Balance adjustments and reconciliation against the activity log."""

    def __init__(
        self,
        store: SlotStore,
        cache: Optional[CacheService] = None,
        notifier: Optional[NotificationService] = None,
        session_factory: SessionFactory = get_async_session,
    ):
        self.store = store
        self.cache = cache
        self.notifier = notifier
        self.session_factory = session_factory
        self.logger = logger.bind(service="wallet_service")

    async def register_owner(
        self, external_id: Optional[int] = None, username: Optional[str] = None
    ) -> int:
        """Create an owner with an empty wallet. Returns the owner id."""
        try:
            async with self.session_factory() as session:
                user = await self.store.create_owner(session, external_id, username)
                return user.id
        except SQLAlchemyError as e:
            self.logger.error("Failed to register owner", external_id=external_id, error=str(e))
            raise PersistenceError("Failed to register owner", {"error": str(e)}) from e

    async def adjust_balance(
        self,
        owner_id: int,
        amount: Any,
        log_type: ActivityLogType,
        description: Optional[str] = None,
    ) -> Decimal:
        """
        Apply an external balance change and record it.

        Args:
            owner_id: Owner whose wallet moves
            amount: Positive amount; the direction comes from `log_type`
            log_type: One of DEPOSIT, BONUS, PENALTY, WITHDRAWAL

        Returns:
            The new balance
        """
        validate_owner_id(owner_id)
        amount = validate_amount(amount, "amount")
        if log_type not in EXTERNAL_ADJUSTMENTS:
            raise ValidationError(
                f"{log_type.value} cannot be applied as a manual adjustment",
                {"type": log_type.value}
            )

        try:
            async with self.session_factory() as session:
                await self.store.get_owner(session, owner_id)
                await self.store.lock_wallet(session, owner_id)
                new_balance = await self.store.apply_balance_change(
                    session, owner_id, log_type, amount, description=description
                )
        except SQLAlchemyError as e:
            self.logger.error(
                "Balance adjustment failed",
                owner_id=owner_id,
                type=log_type.value,
                amount=str(amount),
                error=str(e)
            )
            raise PersistenceError("Balance adjustment failed", {"owner_id": owner_id}) from e

        self.logger.info(
            "Balance adjusted",
            owner_id=owner_id,
            type=log_type.value,
            amount=str(amount),
            new_balance=str(new_balance)
        )

        if self.cache:
            await self.cache.invalidate_owner(owner_id)
        if self.notifier:
            await self.notifier.notify_balance_changed(owner_id, log_type, amount, new_balance)
        return new_balance

    async def get_balance(self, owner_id: int) -> Decimal:
        validate_owner_id(owner_id)
        async with self.session_factory() as session:
            await self.store.get_owner(session, owner_id)
            await self.store.ensure_wallet(session, owner_id)
            return await self.store.get_balance(session, owner_id)

    async def reconcile(self, owner_id: int) -> Dict[str, Any]:
        """
        Compare the stored balance with the sum of the owner's activity log.

        The activity log is the source of truth for disputes.
        """
        validate_owner_id(owner_id)
        async with self.session_factory() as session:
            await self.store.get_owner(session, owner_id)
            await self.store.ensure_wallet(session, owner_id)
            wallet_balance = await self.store.get_balance(session, owner_id)
            ledger_balance = await self.store.ledger_balance(session, owner_id)

        difference = accrual.floor_amount(wallet_balance - ledger_balance)
        consistent = difference == 0
        if not consistent:
            self.logger.warning(
                "Wallet does not match activity log",
                owner_id=owner_id,
                wallet_balance=str(wallet_balance),
                ledger_balance=str(ledger_balance)
            )

        return {
            "owner_id": owner_id,
            "currency": self.store.currency,
            "wallet_balance": wallet_balance,
            "ledger_balance": ledger_balance,
            "difference": difference,
            "consistent": consistent,
        }
