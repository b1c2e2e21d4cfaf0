"""
WebSocket module for live owner views.
"""

from .connection_manager import ConnectionManager, get_connection_manager
from .notification_service import NotificationService, ACTIVITY_MESSAGES
from .websocket_handler import websocket_handler
from .schemas import (
    WebSocketMessage,
    BalanceUpdateMessage,
    EarningsClaimedMessage,
    SlotUpdateMessage,
    SlotsExpiredMessage,
    ErrorMessage,
    MessageType
)

__all__ = [
    "websocket_handler",
    "ConnectionManager",
    "get_connection_manager",
    "NotificationService",
    "ACTIVITY_MESSAGES",
    "WebSocketMessage",
    "BalanceUpdateMessage",
    "EarningsClaimedMessage",
    "SlotUpdateMessage",
    "SlotsExpiredMessage",
    "ErrorMessage",
    "MessageType"
]
