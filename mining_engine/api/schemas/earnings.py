"""
Earnings-related Pydantic schemas for API.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, Field


class ClaimRequest(BaseModel):
    """Earnings claim request model."""
    slot_ids: Optional[List[str]] = Field(
        default=None,
        description="Claim only these slots (default: every active slot)"
    )


class SlotClaimDetail(BaseModel):
    """Per-slot outcome of a claim."""
    slot_id: str
    claimed: Decimal
    last_accrued_at: datetime
    is_active: bool


class ClaimResponse(BaseModel):
    """Earnings claim response model."""
    success: bool
    claimed_amount: Decimal = Field(ge=0)
    message: Optional[str] = None
    new_balance: Optional[Decimal] = None
    slots: List[SlotClaimDetail] = Field(default_factory=list)


class SlotEarnings(BaseModel):
    """Live view of one slot."""
    slot_id: str
    slot_type: str
    principal: Decimal
    weekly_rate: Decimal
    start_at: datetime
    expires_at: datetime
    last_accrued_at: datetime
    is_active: bool
    close_reason: Optional[str] = None
    realized: Decimal
    accrued: Decimal
    per_second_rate: Decimal
    projected_total: Decimal
    progress: Decimal
    seconds_until_expiry: int


class ProjectedEarningsResponse(BaseModel):
    """Projected earnings of every active slot of an owner."""
    owner_id: int
    currency: str
    balance: Decimal
    per_slot: List[SlotEarnings] = Field(default_factory=list)
    total_accrued: Decimal
    per_second_rate: Decimal
    computed_at: datetime
