"""
Database models for the mining engine.

Slots, wallets and the activity log live in one relational store; slots and
wallets are only ever mutated together inside one transaction.
"""

from .base import Base, BaseModel, TimestampMixin, UTCDateTime, utc_now
from .user import User
from .wallet import Wallet
from .slot import MiningSlot, SlotType, CloseReason
from .activity import (
    ActivityLog, ActivityLogType, BALANCE_DIRECTION, ACTIVITY_DESCRIPTIONS,
    signed_amount
)

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "UTCDateTime",
    "utc_now",
    "User",
    "Wallet",
    "MiningSlot",
    "SlotType",
    "CloseReason",
    "ActivityLog",
    "ActivityLogType",
    "BALANCE_DIRECTION",
    "ACTIVITY_DESCRIPTIONS",
    "signed_amount",
]
