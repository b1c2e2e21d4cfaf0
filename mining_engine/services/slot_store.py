"""
Slot store: durable reads and writes for slots, wallets and the activity log.

Every method takes the caller's AsyncSession so that a slot mutation and the
wallet movement it causes always commit (or roll back) together.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from mining_engine.core.config import settings
from mining_engine.core.exceptions import (
    ConcurrencyConflictError,
    InsufficientBalanceError,
    OwnerNotFoundError,
    SlotNotFoundError,
    ValidationError,
    WalletNotFoundError,
)
from mining_engine.models import (
    ActivityLog,
    ActivityLogType,
    BALANCE_DIRECTION,
    CloseReason,
    MiningSlot,
    SlotType,
    User,
    Wallet,
)
from mining_engine.services import accrual


logger = structlog.get_logger(__name__)

# (expires_at, id) of the last slot seen by a keyset scan
ExpiryCursor = Tuple[datetime, str]


class SlotStore:
    """
    Repository for slot, wallet and activity-log operations.
    """

    def __init__(self, currency: Optional[str] = None):
        self.currency = currency or settings.wallet_currency
        self.logger = logger.bind(service="slot_store")

    # ------------------------------------------------------------------
    # Owners
    # ------------------------------------------------------------------

    async def create_owner(
        self,
        session: AsyncSession,
        external_id: Optional[int] = None,
        username: Optional[str] = None,
    ) -> User:
        user = User(external_id=external_id, username=username, is_active=True)
        session.add(user)
        await session.flush()
        await self.ensure_wallet(session, user.id)
        self.logger.info("Owner created", owner_id=user.id, external_id=external_id)
        return user

    async def get_owner(self, session: AsyncSession, owner_id: int) -> User:
        user = await session.get(User, owner_id)
        if user is None:
            raise OwnerNotFoundError(owner_id)
        return user

    # ------------------------------------------------------------------
    # Slot reads
    # ------------------------------------------------------------------

    async def get_slot(
        self,
        session: AsyncSession,
        slot_id: str,
        owner_id: Optional[int] = None,
        active_only: bool = True,
        for_update: bool = False,
    ) -> MiningSlot:
        query = select(MiningSlot).where(MiningSlot.id == slot_id)
        if owner_id is not None:
            query = query.where(MiningSlot.user_id == owner_id)
        if active_only:
            query = query.where(MiningSlot.is_active.is_(True))
        if for_update:
            query = query.with_for_update()

        slot = (await session.execute(query)).scalar_one_or_none()
        if slot is None:
            raise SlotNotFoundError(slot_id, owner_id)
        return slot

    async def get_active_slots(
        self,
        session: AsyncSession,
        owner_id: int,
        slot_ids: Optional[Sequence[str]] = None,
        for_update: bool = False,
    ) -> List[MiningSlot]:
        """Active slots of an owner, optionally limited to `slot_ids`."""
        query = (
            select(MiningSlot)
            .where(MiningSlot.user_id == owner_id, MiningSlot.is_active.is_(True))
            .order_by(MiningSlot.start_at, MiningSlot.id)
        )
        if slot_ids is not None:
            query = query.where(MiningSlot.id.in_(list(slot_ids)))
        if for_update:
            query = query.with_for_update()

        slots = list((await session.execute(query)).scalars().all())

        if slot_ids is not None:
            found = {slot.id for slot in slots}
            for slot_id in slot_ids:
                if slot_id not in found:
                    raise SlotNotFoundError(slot_id, owner_id)
        return slots

    async def get_owner_slots(
        self, session: AsyncSession, owner_id: int, include_inactive: bool = False
    ) -> List[MiningSlot]:
        query = select(MiningSlot).where(MiningSlot.user_id == owner_id)
        if not include_inactive:
            query = query.where(MiningSlot.is_active.is_(True))
        query = query.order_by(MiningSlot.start_at, MiningSlot.id)
        return list((await session.execute(query)).scalars().all())

    async def find_expired_batch(
        self,
        session: AsyncSession,
        now: datetime,
        limit: int,
        after: Optional[ExpiryCursor] = None,
    ) -> List[MiningSlot]:
        """
        Active slots with expires_at <= now, ordered by (expires_at, id).

        `after` is the keyset cursor of the previous page.
        """
        query = select(MiningSlot).where(
            MiningSlot.is_active.is_(True),
            MiningSlot.expires_at <= now,
        )
        if after is not None:
            last_expires_at, last_id = after
            query = query.where(
                or_(
                    MiningSlot.expires_at > last_expires_at,
                    and_(MiningSlot.expires_at == last_expires_at, MiningSlot.id > last_id),
                )
            )
        query = query.order_by(MiningSlot.expires_at, MiningSlot.id).limit(limit)
        return list((await session.execute(query)).scalars().all())

    async def find_stale_checkpoints(
        self,
        session: AsyncSession,
        now: datetime,
        older_than: datetime,
        limit: int,
        after_id: Optional[str] = None,
    ) -> List[MiningSlot]:
        """Active, unexpired slots whose checkpoint is older than `older_than`."""
        query = select(MiningSlot).where(
            MiningSlot.is_active.is_(True),
            MiningSlot.expires_at > now,
            MiningSlot.last_accrued_at < older_than,
        )
        if after_id is not None:
            query = query.where(MiningSlot.id > after_id)
        query = query.order_by(MiningSlot.id).limit(limit)
        return list((await session.execute(query)).scalars().all())

    async def count_status(
        self,
        session: AsyncSession,
        now: datetime,
        expiring_soon_until: datetime,
        processed_since: datetime,
    ) -> Dict[str, int]:
        active = await session.scalar(
            select(func.count()).select_from(MiningSlot).where(
                MiningSlot.is_active.is_(True), MiningSlot.expires_at > now
            )
        )
        expired = await session.scalar(
            select(func.count()).select_from(MiningSlot).where(
                MiningSlot.is_active.is_(True), MiningSlot.expires_at <= now
            )
        )
        expiring_soon = await session.scalar(
            select(func.count()).select_from(MiningSlot).where(
                MiningSlot.is_active.is_(True),
                MiningSlot.expires_at > now,
                MiningSlot.expires_at <= expiring_soon_until,
            )
        )
        processed = await session.scalar(
            select(func.count()).select_from(MiningSlot).where(
                MiningSlot.close_reason == CloseReason.EXPIRED.value,
                MiningSlot.closed_at >= processed_since,
            )
        )
        return {
            "active_slots": active or 0,
            "expired_slots": expired or 0,
            "expiring_soon": expiring_soon or 0,
            "processed_last_hour": processed or 0,
        }

    # ------------------------------------------------------------------
    # Wallets
    # ------------------------------------------------------------------

    async def ensure_wallet(self, session: AsyncSession, owner_id: int) -> Wallet:
        """Fetch the owner's wallet for this currency, creating it if missing."""
        wallet = await self._find_wallet(session, owner_id)
        if wallet is not None:
            return wallet

        try:
            async with session.begin_nested():
                wallet = Wallet(user_id=owner_id, currency=self.currency, balance=Decimal("0"))
                session.add(wallet)
        except IntegrityError:
            # lost a creation race; the other writer's row is there now
            wallet = await self._find_wallet(session, owner_id)
            if wallet is None:
                raise
        return wallet

    async def lock_wallet(self, session: AsyncSession, owner_id: int) -> Wallet:
        """
        Take the owner's wallet row lock for the rest of the transaction.

        This is the cross-process serialization point for every mutation of
        the owner's slots and balance.
        """
        await self.ensure_wallet(session, owner_id)
        wallet = await self._find_wallet(session, owner_id, for_update=True)
        if wallet is None:
            raise WalletNotFoundError(owner_id, self.currency)
        return wallet

    async def get_balance(self, session: AsyncSession, owner_id: int) -> Decimal:
        balance = await session.scalar(
            select(Wallet.balance).where(
                Wallet.user_id == owner_id, Wallet.currency == self.currency
            )
        )
        if balance is None:
            raise WalletNotFoundError(owner_id, self.currency)
        return accrual.floor_amount(balance)

    async def apply_balance_change(
        self,
        session: AsyncSession,
        owner_id: int,
        log_type: ActivityLogType,
        amount: Decimal,
        slot_id: Optional[str] = None,
        description: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> Decimal:
        """
        Move the wallet by `amount` in the direction of `log_type` and append
        the matching ActivityLog row.

        Returns:
            The new balance
        """
        amount = accrual.floor_amount(amount)
        if amount <= 0:
            raise ValidationError(
                "Balance change amount must be positive",
                {"amount": str(amount), "type": log_type.value}
            )

        if BALANCE_DIRECTION[log_type] > 0:
            await self._credit(session, owner_id, amount)
        else:
            await self._debit(session, owner_id, amount)

        session.add(ActivityLog.record(
            user_id=owner_id,
            log_type=log_type,
            amount=amount,
            currency=self.currency,
            slot_id=slot_id,
            description=description,
            created_at=at,
        ))
        await session.flush()
        return await self.get_balance(session, owner_id)

    async def ledger_balance(self, session: AsyncSession, owner_id: int) -> Decimal:
        total = await session.scalar(
            select(func.coalesce(func.sum(ActivityLog.amount), 0)).where(
                ActivityLog.user_id == owner_id,
                ActivityLog.currency == self.currency,
            )
        )
        return accrual.floor_amount(total or 0)

    # ------------------------------------------------------------------
    # Slot writes
    # ------------------------------------------------------------------

    async def create_slot(
        self,
        session: AsyncSession,
        owner_id: int,
        principal: Decimal,
        weekly_rate: Decimal,
        start_at: datetime,
        duration: timedelta,
        slot_type: SlotType = SlotType.STANDARD,
    ) -> MiningSlot:
        """Debit the principal and insert the slot. InsufficientBalanceError if short."""
        principal = accrual.floor_amount(principal)
        await self.lock_wallet(session, owner_id)

        slot = MiningSlot(
            user_id=owner_id,
            slot_type=slot_type.value,
            principal=principal,
            weekly_rate=accrual.to_decimal(weekly_rate),
            start_at=start_at,
            expires_at=start_at + duration,
            last_accrued_at=start_at,
            accrued_earnings=Decimal("0"),
            is_active=True,
        )
        session.add(slot)
        await session.flush()

        if principal > 0:
            await self.apply_balance_change(
                session, owner_id, ActivityLogType.NEW_SLOT_PURCHASE, principal,
                slot_id=slot.id, at=start_at
            )

        self.logger.info(
            "Slot created",
            owner_id=owner_id,
            slot_id=slot.id,
            principal=str(principal),
            weekly_rate=str(slot.weekly_rate),
            expires_at=slot.expires_at.isoformat(),
        )
        return slot

    async def checkpoint(self, session: AsyncSession, slot: MiningSlot, now: datetime) -> Decimal:
        """
        Realize the slot's virtual earnings up to min(now, expires_at).

        Returns:
            The amount moved into accrued_earnings

        Raises:
            ConcurrencyConflictError: another writer advanced the slot first
        """
        increment = accrual.incremental_earnings(slot, now)
        target = accrual.checkpoint_target(slot, now)
        if target == slot.last_accrued_at:
            return increment

        slot.accrued_earnings = accrual.to_decimal(slot.accrued_earnings) + increment
        slot.last_accrued_at = target
        await self.flush_slot(session, slot)
        return increment

    async def finalize(self, session: AsyncSession, slot: MiningSlot, now: datetime) -> Decimal:
        """
        Credit everything the slot still owes up to expires_at and deactivate it.

        Never accrues past expires_at regardless of how late it runs.
        """
        if not slot.is_active:
            raise SlotNotFoundError(slot.id, slot.user_id)

        total = accrual.floor_amount(
            accrual.to_decimal(slot.accrued_earnings) + accrual.final_earnings(slot)
        )

        slot.accrued_earnings = Decimal("0")
        slot.last_accrued_at = max(slot.last_accrued_at, slot.expires_at)
        slot.deactivate(CloseReason.EXPIRED, now)
        await self.flush_slot(session, slot)

        if total > 0:
            await self.apply_balance_change(
                session, slot.user_id, ActivityLogType.SLOT_EXPIRED, total,
                slot_id=slot.id, at=now
            )
        return total

    async def flush_slot(self, session: AsyncSession, slot: MiningSlot) -> None:
        """Flush a slot update, turning a lost version race into ConcurrencyConflictError."""
        try:
            await session.flush()
        except StaleDataError as e:
            raise ConcurrencyConflictError(
                "Slot was modified concurrently",
                {"slot_id": slot.id, "owner_id": slot.user_id}
            ) from e

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _find_wallet(
        self, session: AsyncSession, owner_id: int, for_update: bool = False
    ) -> Optional[Wallet]:
        query = select(Wallet).where(
            Wallet.user_id == owner_id, Wallet.currency == self.currency
        )
        if for_update:
            query = query.with_for_update()
        return (await session.execute(query)).scalar_one_or_none()

    async def _credit(self, session: AsyncSession, owner_id: int, amount: Decimal) -> None:
        result = await session.execute(
            update(Wallet)
            .where(Wallet.user_id == owner_id, Wallet.currency == self.currency)
            .values(balance=Wallet.balance + amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise WalletNotFoundError(owner_id, self.currency)

    async def _debit(self, session: AsyncSession, owner_id: int, amount: Decimal) -> None:
        result = await session.execute(
            update(Wallet)
            .where(
                Wallet.user_id == owner_id,
                Wallet.currency == self.currency,
                Wallet.balance >= amount,
            )
            .values(balance=Wallet.balance - amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            available = await session.scalar(
                select(Wallet.balance).where(
                    Wallet.user_id == owner_id, Wallet.currency == self.currency
                )
            )
            if available is None:
                raise WalletNotFoundError(owner_id, self.currency)
            raise InsufficientBalanceError(amount, accrual.floor_amount(available))
