"""
Per-currency wallet balances.
"""

from decimal import Decimal

from sqlalchemy import (
    CheckConstraint, ForeignKey, Integer, Numeric, String, UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, TimestampMixin


class Wallet(BaseModel, TimestampMixin):
    """
    One balance per (owner, currency).

    Balances only move through atomic increment statements issued together
    with the ActivityLog row that explains them.
    """

    __tablename__ = "wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        comment="Owning user"
    )

    currency: Mapped[str] = mapped_column(
        String(10),
        comment="Currency code"
    )

    balance: Mapped[Decimal] = mapped_column(
        Numeric(20, 8),
        default=Decimal("0"),
        comment="Spendable balance"
    )

    user: Mapped["User"] = relationship("User", back_populates="wallets", lazy="raise")

    __table_args__ = (
        UniqueConstraint("user_id", "currency", name="uq_wallet_user_currency"),
        CheckConstraint("balance >= 0", name="ck_wallet_balance_non_negative"),
    )
