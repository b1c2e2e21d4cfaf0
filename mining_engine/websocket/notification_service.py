"""
Real-time notification service for WebSocket updates.

Notifications are sent after the mutation has committed; a delivery failure
is logged and never reaches the caller.
"""

from decimal import Decimal
from typing import Any, Dict, Iterable, Optional, Type

from mining_engine.models.activity import ActivityLogType
from .connection_manager import ConnectionManager, get_connection_manager
from .schemas import (
    BalanceUpdateMessage,
    EarningsClaimedMessage,
    SlotUpdateMessage,
    SlotsExpiredMessage,
    WebSocketMessage,
)

import structlog

logger = structlog.get_logger(__name__)


# Which live view each activity kind updates. Must cover every ActivityLogType.
ACTIVITY_MESSAGES: Dict[ActivityLogType, Type[WebSocketMessage]] = {
    ActivityLogType.DEPOSIT: BalanceUpdateMessage,
    ActivityLogType.NEW_SLOT_PURCHASE: SlotUpdateMessage,
    ActivityLogType.SLOT_EXTENSION: SlotUpdateMessage,
    ActivityLogType.SLOT_UPGRADE: SlotUpdateMessage,
    ActivityLogType.CLAIM: EarningsClaimedMessage,
    ActivityLogType.SLOT_EXPIRED: SlotsExpiredMessage,
    ActivityLogType.BONUS: BalanceUpdateMessage,
    ActivityLogType.PENALTY: BalanceUpdateMessage,
    ActivityLogType.WITHDRAWAL: BalanceUpdateMessage,
}


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


class NotificationService:
    """Service for sending real-time notifications to WebSocket clients."""

    def __init__(self, manager: Optional[ConnectionManager] = None):
        self.manager = manager or get_connection_manager()
        self.sent = 0
        self.failed = 0

    async def notify(
        self, owner_id: int, log_type: ActivityLogType, data: Dict[str, Any]
    ) -> int:
        """Send the owner the message matching `log_type`. Returns deliveries."""
        try:
            message_cls = ACTIVITY_MESSAGES[log_type]
            message = message_cls(data={
                "owner_id": owner_id,
                "event": log_type.value,
                **_jsonable(data),
            })
            sent_count = await self.manager.send_to_owner(owner_id, message)
            self.sent += 1
            logger.debug(
                "Notification sent",
                owner_id=owner_id,
                activity=log_type.value,
                sent_to=sent_count
            )
            return sent_count

        except Exception as e:
            self.failed += 1
            logger.error(
                "Error sending notification",
                owner_id=owner_id,
                activity=log_type.value,
                error=str(e)
            )
            return 0

    async def notify_balance_changed(
        self,
        owner_id: int,
        log_type: ActivityLogType,
        amount: Decimal,
        new_balance: Decimal,
    ) -> int:
        return await self.notify(owner_id, log_type, {
            "amount": amount,
            "balance": new_balance,
        })

    async def notify_slot_changed(
        self,
        owner_id: int,
        log_type: ActivityLogType,
        slot: Dict[str, Any],
        new_balance: Decimal,
    ) -> int:
        return await self.notify(owner_id, log_type, {
            "slot": slot,
            "balance": new_balance,
        })

    async def notify_claim(
        self,
        owner_id: int,
        claimed_amount: Decimal,
        new_balance: Decimal,
        slots: Iterable[Dict[str, Any]],
    ) -> int:
        return await self.notify(owner_id, ActivityLogType.CLAIM, {
            "claimed_amount": claimed_amount,
            "balance": new_balance,
            "slots": list(slots),
        })

    async def notify_slots_expired(
        self,
        owner_id: int,
        slot_ids: Iterable[str],
        total_credited: Decimal,
        new_balance: Optional[Decimal],
    ) -> int:
        return await self.notify(owner_id, ActivityLogType.SLOT_EXPIRED, {
            "slot_ids": list(slot_ids),
            "total_credited": total_credited,
            "balance": new_balance,
        })

    def get_stats(self) -> Dict[str, int]:
        return {"sent": self.sent, "failed": self.failed}


# Global notification service instance
notification_service = NotificationService()


def get_notification_service() -> NotificationService:
    return notification_service
