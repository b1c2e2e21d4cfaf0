"""
Activity log - append-only audit trail of every balance-affecting event.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

from sqlalchemy import (
    ForeignKey, Index, Integer, Numeric, String, Text, Enum as SQLEnum
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class ActivityLogType(Enum):
    """Closed set of balance-affecting events."""

    DEPOSIT = "deposit"
    NEW_SLOT_PURCHASE = "new_slot_purchase"
    SLOT_EXTENSION = "slot_extension"
    SLOT_UPGRADE = "slot_upgrade"
    CLAIM = "claim"
    SLOT_EXPIRED = "slot_expired"
    BONUS = "bonus"
    PENALTY = "penalty"
    WITHDRAWAL = "withdrawal"


# +1 credits the wallet, -1 debits it. Must cover every ActivityLogType.
BALANCE_DIRECTION: Dict[ActivityLogType, int] = {
    ActivityLogType.DEPOSIT: 1,
    ActivityLogType.NEW_SLOT_PURCHASE: -1,
    ActivityLogType.SLOT_EXTENSION: -1,
    ActivityLogType.SLOT_UPGRADE: -1,
    ActivityLogType.CLAIM: 1,
    ActivityLogType.SLOT_EXPIRED: 1,
    ActivityLogType.BONUS: 1,
    ActivityLogType.PENALTY: -1,
    ActivityLogType.WITHDRAWAL: -1,
}

ACTIVITY_DESCRIPTIONS: Dict[ActivityLogType, str] = {
    ActivityLogType.DEPOSIT: "Deposit",
    ActivityLogType.NEW_SLOT_PURCHASE: "Mining slot purchased",
    ActivityLogType.SLOT_EXTENSION: "Mining slot extended",
    ActivityLogType.SLOT_UPGRADE: "Mining slot upgraded",
    ActivityLogType.CLAIM: "Mining earnings claimed",
    ActivityLogType.SLOT_EXPIRED: "Mining slot expired, earnings credited",
    ActivityLogType.BONUS: "Bonus",
    ActivityLogType.PENALTY: "Penalty",
    ActivityLogType.WITHDRAWAL: "Withdrawal",
}


def signed_amount(log_type: ActivityLogType, amount: Decimal) -> Decimal:
    """Apply the type's balance direction to an unsigned amount."""
    return abs(amount) * BALANCE_DIRECTION[log_type]


class ActivityLog(BaseModel, TimestampMixin):
    """One balance-affecting event. Rows are never updated."""

    __tablename__ = "activity_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        comment="Owner whose balance moved"
    )

    type: Mapped[ActivityLogType] = mapped_column(
        SQLEnum(ActivityLogType, name="activity_log_type"),
        comment="Event kind"
    )

    amount: Mapped[Decimal] = mapped_column(
        Numeric(20, 8),
        comment="Signed balance change"
    )

    currency: Mapped[str] = mapped_column(String(10))

    slot_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        comment="Slot involved, if any"
    )

    description: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("idx_activity_user_time", "user_id", "created_at"),
        Index("idx_activity_type_time", "type", "created_at"),
    )

    @classmethod
    def record(
        cls,
        user_id: int,
        log_type: ActivityLogType,
        amount: Decimal,
        currency: str,
        slot_id: Optional[str] = None,
        description: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> "ActivityLog":
        entry = cls(
            user_id=user_id,
            type=log_type,
            amount=signed_amount(log_type, amount),
            currency=currency,
            slot_id=slot_id,
            description=description or ACTIVITY_DESCRIPTIONS[log_type],
        )
        if created_at is not None:
            entry.created_at = created_at
        return entry
