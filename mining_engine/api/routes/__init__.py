"""API routes package."""

from . import admin, earnings, slots, websocket

__all__ = ["admin", "earnings", "slots", "websocket"]
