"""
WebSocket route for live owner views.
"""

from typing import Optional

from fastapi import APIRouter, Query, WebSocket

from mining_engine.websocket.websocket_handler import websocket_handler

router = APIRouter()


@router.websocket("/ws/{owner_id}")
async def owner_updates(
    websocket: WebSocket,
    owner_id: int,
    client_id: Optional[str] = Query(default=None),
):
    await websocket_handler(websocket, owner_id, client_id)
