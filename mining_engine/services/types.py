"""
Result and statistics types shared by the engine services.
"""

from datetime import datetime
from dataclasses import dataclass, field, asdict
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class ProcessorStatus(Enum):
    """Status of a background processor."""
    IDLE = "idle"
    RUNNING = "running"
    FAILED = "failed"
    COMPLETED = "completed"


@dataclass
class ProcessingStats:
    """Outcome of one expiry batch run."""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    total_slots: int = 0
    processed_slots: int = 0
    failed_slots: int = 0
    skipped_slots: int = 0
    batches_processed: int = 0
    total_credited: Decimal = Decimal("0")
    processing_time_ms: int = 0
    timed_out: bool = False
    affected_owners: List[int] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["total_credited"] = str(self.total_credited)
        data["start_time"] = self.start_time.isoformat() if self.start_time else None
        data["end_time"] = self.end_time.isoformat() if self.end_time else None
        return data


@dataclass
class PersistenceStats:
    """Outcome of one accrual persistence sweep."""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    scanned: int = 0
    checkpointed: int = 0
    skipped: int = 0
    failed: int = 0
    total_realized: Decimal = Decimal("0")
    processing_time_ms: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["total_realized"] = str(self.total_realized)
        data["start_time"] = self.start_time.isoformat() if self.start_time else None
        data["end_time"] = self.end_time.isoformat() if self.end_time else None
        return data


@dataclass
class SlotCheckpoint:
    """Where a slot's checkpoint landed after a claim."""
    slot_id: str
    claimed: Decimal
    last_accrued_at: datetime
    is_active: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slot_id": self.slot_id,
            "claimed": str(self.claimed),
            "last_accrued_at": self.last_accrued_at.isoformat(),
            "is_active": self.is_active,
        }


@dataclass
class ClaimResult:
    """
    Outcome of a claim.

    success=False with a message means there was nothing (or too little) to
    claim; system failures are raised instead.
    """
    success: bool
    claimed_amount: Decimal = Decimal("0")
    message: Optional[str] = None
    new_balance: Optional[Decimal] = None
    slots: List[SlotCheckpoint] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "claimed_amount": str(self.claimed_amount),
            "message": self.message,
            "new_balance": str(self.new_balance) if self.new_balance is not None else None,
            "slots": [s.to_dict() for s in self.slots],
        }
