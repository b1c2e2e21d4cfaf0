"""
Mining slot model: one investment position accruing at a fixed weekly rate.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean, CheckConstraint, ForeignKey, Index, Integer, Numeric, String
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, TimestampMixin, UTCDateTime


class SlotType(str, Enum):
    """How the slot came to exist."""
    STANDARD = "standard"
    WELCOME = "welcome"


class CloseReason(str, Enum):
    """Why a slot was deactivated."""
    EXPIRED = "expired"
    CLAIMED = "claimed"


class MiningSlot(BaseModel, TimestampMixin):
    """
    A principal accruing `weekly_rate` per 7 days between start_at and expires_at.

    Earnings before last_accrued_at are realized in accrued_earnings; earnings
    after it are virtual and derived on read. `version` is bumped by every
    UPDATE so two writers can never both advance the same window.
    """

    __tablename__ = "mining_slots"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )

    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        comment="Owning user"
    )

    slot_type: Mapped[str] = mapped_column(
        String(20),
        default=SlotType.STANDARD.value
    )

    principal: Mapped[Decimal] = mapped_column(
        Numeric(20, 8),
        comment="Invested amount, changed only by upgrades"
    )

    weekly_rate: Mapped[Decimal] = mapped_column(
        Numeric(12, 8),
        comment="Fractional yield per 7 days, fixed at creation"
    )

    start_at: Mapped[datetime] = mapped_column(UTCDateTime)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime)

    last_accrued_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        comment="Checkpoint: earnings before this point are realized"
    )

    accrued_earnings: Mapped[Decimal] = mapped_column(
        Numeric(20, 8),
        default=Decimal("0"),
        comment="Realized but unclaimed earnings"
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    closed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    close_reason: Mapped[Optional[str]] = mapped_column(String(20))

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="slots", lazy="raise")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_slot_active_expires", "is_active", "expires_at"),
        Index("idx_slot_user", "user_id"),
        CheckConstraint("principal >= 0", name="ck_slot_principal_non_negative"),
        CheckConstraint("accrued_earnings >= 0", name="ck_slot_accrued_non_negative"),
    )

    @property
    def window_seconds(self) -> float:
        return (self.expires_at - self.start_at).total_seconds()

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def deactivate(self, reason: CloseReason, now: datetime) -> None:
        self.is_active = False
        self.close_reason = reason.value
        self.closed_at = now
