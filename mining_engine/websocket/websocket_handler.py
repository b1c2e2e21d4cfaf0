"""
WebSocket endpoint handler for live owner views.
"""

import json
from typing import Optional
from uuid import uuid4

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError

from .connection_manager import ConnectionManager, get_connection_manager
from .schemas import (
    ConnectionStatusMessage,
    ErrorMessage,
    MessageType,
    SubscriptionRequest,
    WebSocketResponse,
)

import structlog

logger = structlog.get_logger(__name__)


async def websocket_handler(
    websocket: WebSocket,
    owner_id: int,
    client_id: Optional[str] = None,
    manager: Optional[ConnectionManager] = None
):
    """
    WebSocket endpoint for one owner's live updates.

    Pushes balance changes, slot changes, claims and expiries for the owner.
    Clients may send {"action": "subscribe"|"unsubscribe", "events": [...]}
    or {"action": "ping"}.
    """
    manager = manager or get_connection_manager()

    if owner_id <= 0:
        await websocket.close(code=4002, reason="Invalid owner id")
        return

    if not client_id:
        client_id = f"{owner_id}_{uuid4().hex[:8]}"

    connection = None
    try:
        connection = await manager.connect(websocket, owner_id, client_id)

        while True:
            try:
                message = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("WebSocket client disconnected", client_id=client_id, owner_id=owner_id)
                break
            await _handle_client_message(manager, connection, message)

    except WebSocketDisconnect:
        logger.info("WebSocket client disconnected during setup", owner_id=owner_id)
    except Exception as e:
        logger.error(
            "WebSocket connection error",
            client_id=client_id,
            owner_id=owner_id,
            error=str(e)
        )
    finally:
        if connection:
            await manager.disconnect(client_id)


async def _handle_client_message(manager: ConnectionManager, connection, message_text: str):
    """Handle incoming client messages."""
    try:
        message_data = json.loads(message_text)
    except json.JSONDecodeError:
        logger.warning("Invalid JSON received from client", client_id=connection.client_id)
        await connection.send_error("INVALID_JSON", "Invalid JSON format in message")
        return

    if not isinstance(message_data, dict):
        await connection.send_error("INVALID_MESSAGE", "Message must be a JSON object")
        return

    action = message_data.get("action") or message_data.get("type")

    if action == "ping":
        connection.update_ping()
        await connection.send_message(ConnectionStatusMessage(data={"pong": True}))
        return

    if action not in ("subscribe", "unsubscribe"):
        logger.warning(
            "Unknown message action received",
            client_id=connection.client_id,
            action=action
        )
        await connection.send_error("UNKNOWN_ACTION", f"Unknown action: {action}")
        return

    try:
        request = SubscriptionRequest(action=action, events=message_data.get("events", []))
    except PydanticValidationError:
        await connection.send_error("INVALID_EVENTS", "Unknown event type in subscription")
        return

    subscribe = request.action == "subscribe"
    manager.set_subscriptions(connection.client_id, request.events, subscribe=subscribe)

    response = WebSocketResponse(
        message="Subscriptions updated",
        data={
            "subscribed": sorted(t.value for t in connection.subscriptions),
        }
    )
    await connection.websocket.send_json({
        "type": (MessageType.SUBSCRIPTION if subscribe else MessageType.UNSUBSCRIPTION).value,
        **response.model_dump(mode="json"),
    })
    logger.debug(
        "Subscriptions updated",
        client_id=connection.client_id,
        action=request.action,
        events=[e.value for e in request.events]
    )
