"""
WebSocket message schemas for live slot and balance views.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class MessageType(str, Enum):
    """WebSocket message types."""
    BALANCE_UPDATE = "balance_update"
    SLOT_UPDATE = "slot_update"
    EARNINGS_CLAIMED = "earnings_claimed"
    SLOTS_EXPIRED = "slots_expired"
    ERROR = "error"
    CONNECTION_STATUS = "connection_status"
    SUBSCRIPTION = "subscription"
    UNSUBSCRIPTION = "unsubscription"


# Message types a client receives without subscribing explicitly
DEFAULT_SUBSCRIPTIONS = (
    MessageType.BALANCE_UPDATE,
    MessageType.SLOT_UPDATE,
    MessageType.EARNINGS_CLAIMED,
    MessageType.SLOTS_EXPIRED,
)


class WebSocketMessage(BaseModel):
    """Base WebSocket message schema."""
    type: MessageType
    timestamp: str = Field(default_factory=_timestamp)
    data: Dict[str, Any] = Field(default_factory=dict)


class BalanceUpdateMessage(WebSocketMessage):
    """Wallet balance moved."""
    type: MessageType = MessageType.BALANCE_UPDATE
    data: Dict[str, Any] = Field(
        description="owner_id, new balance, the activity type that moved it"
    )


class SlotUpdateMessage(WebSocketMessage):
    """A slot was created, extended or upgraded."""
    type: MessageType = MessageType.SLOT_UPDATE
    data: Dict[str, Any] = Field(
        description="owner_id, slot state after the change"
    )


class EarningsClaimedMessage(WebSocketMessage):
    """A claim credited the wallet."""
    type: MessageType = MessageType.EARNINGS_CLAIMED
    data: Dict[str, Any] = Field(
        description="owner_id, claimed amount, new balance, per-slot checkpoints"
    )


class SlotsExpiredMessage(WebSocketMessage):
    """One or more of the owner's slots were finalized."""
    type: MessageType = MessageType.SLOTS_EXPIRED
    data: Dict[str, Any] = Field(
        description="owner_id, finalized slot ids, total credited, new balance"
    )


class ErrorMessage(WebSocketMessage):
    """Error message schema."""
    type: MessageType = MessageType.ERROR
    data: Dict[str, Any] = Field(
        description="Error information including code and description"
    )


class ConnectionStatusMessage(WebSocketMessage):
    """Connection status message schema."""
    type: MessageType = MessageType.CONNECTION_STATUS
    data: Dict[str, Any] = Field(
        description="Connection status including connected state and client count"
    )


class SubscriptionRequest(BaseModel):
    """Client subscription request schema."""
    action: str = Field(default="subscribe", description="subscribe or unsubscribe")
    events: List[MessageType] = Field(
        default_factory=lambda: list(DEFAULT_SUBSCRIPTIONS),
        description="List of event types"
    )


class WebSocketResponse(BaseModel):
    """WebSocket response wrapper."""
    success: bool = True
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    timestamp: str = Field(default_factory=_timestamp)
