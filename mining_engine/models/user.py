"""
Owner model. Identity only: authentication lives outside the engine.
"""

from typing import List, Optional

from sqlalchemy import BigInteger, Boolean, Integer, String, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, TimestampMixin


class User(BaseModel, TimestampMixin):
    """A slot owner."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    external_id: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        unique=True,
        comment="Identifier assigned by the auth layer (e.g. Telegram user id)"
    )

    username: Mapped[Optional[str]] = mapped_column(
        String(64),
        comment="Display name"
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        comment="Whether the owner may purchase or claim"
    )

    wallets: Mapped[List["Wallet"]] = relationship(
        "Wallet",
        back_populates="user",
        lazy="raise"
    )

    slots: Mapped[List["MiningSlot"]] = relationship(
        "MiningSlot",
        back_populates="user",
        lazy="raise"
    )

    __table_args__ = (
        Index("idx_user_username", "username"),
    )
