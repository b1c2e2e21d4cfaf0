"""
Claim service: moves an owner's accrued slot earnings into their wallet.

Crediting is at-most-once per accrual window. Same-owner claims queue on an
in-process lock; across processes the wallet row lock and the slot version
column make the loser of a race roll back and retry.
"""

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import AsyncContextManager, Callable, List, Optional, Sequence

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from mining_engine.cache.cache_service import CacheService
from mining_engine.core.config import settings
from mining_engine.core.database import get_async_session
from mining_engine.core.exceptions import ConcurrencyConflictError, PersistenceError
from mining_engine.models import ActivityLogType, CloseReason
from mining_engine.models.base import utc_now
from mining_engine.services import accrual
from mining_engine.services.live_stats import LiveStats
from mining_engine.services.locks import OwnerLockRegistry
from mining_engine.services.slot_store import SlotStore
from mining_engine.services.types import ClaimResult, SlotCheckpoint
from mining_engine.utils.validation import validate_owner_id, validate_slot_ids
from mining_engine.websocket.notification_service import NotificationService


logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]

NOTHING_TO_CLAIM = "No earnings to claim"
NO_ACTIVE_SLOTS = "No active slots to claim from"


class ClaimService:
    """
    Computes and credits an owner's claimable earnings.

    Whether a claimed slot keeps accruing or closes is the `close_on_claim`
    product rule (default: keeps accruing).
    """

    def __init__(
        self,
        store: SlotStore,
        locks: OwnerLockRegistry,
        cache: Optional[CacheService] = None,
        notifier: Optional[NotificationService] = None,
        live_stats: Optional[LiveStats] = None,
        session_factory: SessionFactory = get_async_session,
        clock: Callable[[], datetime] = utc_now,
        min_claim_amount: Optional[Decimal] = None,
        close_on_claim: Optional[bool] = None,
        lock_timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay_base: Optional[float] = None,
    ):
        self.store = store
        self.locks = locks
        self.cache = cache
        self.notifier = notifier
        self.live_stats = live_stats
        self.session_factory = session_factory
        self.clock = clock
        self.min_claim_amount = (
            settings.min_claim_amount if min_claim_amount is None else min_claim_amount
        )
        self.close_on_claim = (
            settings.close_slot_on_claim if close_on_claim is None else close_on_claim
        )
        self.lock_timeout = (
            settings.claim_lock_timeout_seconds if lock_timeout is None else lock_timeout
        )
        self.max_retries = settings.claim_max_retries if max_retries is None else max_retries
        self.retry_delay_base = (
            settings.claim_retry_delay_base if retry_delay_base is None else retry_delay_base
        )
        self.logger = logger.bind(service="claim_service")

    async def claim(
        self, owner_id: int, slot_ids: Optional[Sequence[str]] = None
    ) -> ClaimResult:
        """
        Claim accrued earnings from the owner's active slots.

        Args:
            owner_id: Claiming owner
            slot_ids: Restrict the claim to these slots; all active slots when None

        Returns:
            ClaimResult; success=False when there is nothing (or too little) to claim

        Raises:
            ValidationError: malformed input, before any storage access
            OwnerNotFoundError / SlotNotFoundError: unknown owner or inactive slot
            ConcurrencyConflictError: still conflicting after all retries
            PersistenceError: storage failure, nothing applied
        """
        validate_owner_id(owner_id)
        slot_ids = validate_slot_ids(slot_ids)

        attempt = 0
        while True:
            try:
                async with self.locks.hold(owner_id, timeout=self.lock_timeout):
                    result = await self._claim_once(owner_id, slot_ids)
                break
            except ConcurrencyConflictError as e:
                if attempt >= self.max_retries:
                    self.logger.error(
                        "Claim retries exhausted",
                        owner_id=owner_id,
                        attempts=attempt + 1,
                        error=e.message
                    )
                    raise
                delay = self.retry_delay_base * (2 ** attempt)
                attempt += 1
                self.logger.warning(
                    "Claim conflicted, retrying",
                    owner_id=owner_id,
                    attempt=attempt,
                    delay=delay,
                    error=e.message
                )
                await asyncio.sleep(delay)

        if result.success:
            await self._after_claim(owner_id, result)
        return result

    async def _claim_once(self, owner_id: int, slot_ids: Optional[List[str]]) -> ClaimResult:
        now = self.clock()
        try:
            async with self.session_factory() as session:
                await self.store.get_owner(session, owner_id)
                await self.store.lock_wallet(session, owner_id)
                slots = await self.store.get_active_slots(
                    session, owner_id, slot_ids, for_update=True
                )

                if not slots:
                    return ClaimResult(success=False, message=NO_ACTIVE_SLOTS)

                amounts = {slot.id: accrual.current_value(slot, now) for slot in slots}
                total = accrual.floor_amount(sum(amounts.values(), Decimal("0")))

                if total <= 0:
                    return ClaimResult(success=False, message=NOTHING_TO_CLAIM)
                if total < self.min_claim_amount:
                    return ClaimResult(
                        success=False,
                        claimed_amount=Decimal("0"),
                        message=(
                            f"Minimum claim amount is {self.min_claim_amount}, "
                            f"available {total}"
                        ),
                    )

                checkpoints = []
                for slot in slots:
                    slot.last_accrued_at = accrual.checkpoint_target(slot, now)
                    slot.accrued_earnings = Decimal("0")
                    if self.close_on_claim:
                        slot.deactivate(CloseReason.CLAIMED, now)
                    checkpoints.append(SlotCheckpoint(
                        slot_id=slot.id,
                        claimed=amounts[slot.id],
                        last_accrued_at=slot.last_accrued_at,
                        is_active=slot.is_active,
                    ))
                    await self.store.flush_slot(session, slot)

                new_balance = await self.store.apply_balance_change(
                    session,
                    owner_id,
                    ActivityLogType.CLAIM,
                    total,
                    slot_id=slots[0].id if len(slots) == 1 else None,
                    description=f"Claimed mining earnings from {len(slots)} slot(s)",
                    at=now,
                )
        except SQLAlchemyError as e:
            self.logger.error("Claim failed", owner_id=owner_id, error=str(e))
            raise PersistenceError("Claim failed", {"owner_id": owner_id}) from e

        self.logger.info(
            "Earnings claimed",
            owner_id=owner_id,
            amount=str(total),
            slots=len(slots),
            new_balance=str(new_balance),
            closed=self.close_on_claim
        )
        return ClaimResult(
            success=True,
            claimed_amount=total,
            message=f"Claimed {total}",
            new_balance=new_balance,
            slots=checkpoints,
        )

    async def _after_claim(self, owner_id: int, result: ClaimResult) -> None:
        if self.live_stats:
            self.live_stats.record_claim(result.claimed_amount)
        if self.cache:
            await self.cache.invalidate_owner(owner_id)
        if self.notifier:
            await self.notifier.notify_claim(
                owner_id,
                result.claimed_amount,
                result.new_balance,
                [s.to_dict() for s in result.slots],
            )
