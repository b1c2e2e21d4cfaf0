"""
Slot-related Pydantic schemas for API.
"""

from decimal import Decimal
from pydantic import BaseModel, Field

from mining_engine.models.slot import SlotType


class PurchaseSlotRequest(BaseModel):
    """Open a new mining slot funded from the wallet."""
    principal: Decimal = Field(description="Amount to lock in the slot")
    slot_type: SlotType = Field(default=SlotType.STANDARD)


class UpgradeSlotRequest(BaseModel):
    """Add principal to an active slot."""
    amount: Decimal = Field(description="Principal to add")
