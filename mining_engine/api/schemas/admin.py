"""
Administrative Pydantic schemas for API.
"""

from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field

from mining_engine.models.activity import ActivityLogType


class RegisterOwnerRequest(BaseModel):
    """Create an owner with an empty wallet."""
    external_id: Optional[int] = Field(default=None, description="Identifier in the host system")
    username: Optional[str] = Field(default=None, max_length=64)


class BalanceAdjustmentRequest(BaseModel):
    """Manual wallet movement recorded in the activity ledger."""
    amount: Decimal = Field(description="Positive amount; direction comes from log_type")
    log_type: ActivityLogType
    description: Optional[str] = Field(default=None, max_length=500)
