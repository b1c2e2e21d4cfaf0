"""
Ephemeral engine counters for dashboards.

One LiveStats is created at process start and handed to the components
that update it. Nothing here is authoritative; restarting loses it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from mining_engine.models.base import utc_now


@dataclass
class LiveStats:
    """Counters since start (or the last reset)."""

    clock: Callable[[], datetime] = utc_now
    started_at: Optional[datetime] = None
    claims_processed: int = 0
    total_claimed: Decimal = Decimal("0")
    slots_finalized: int = 0
    total_finalized: Decimal = Decimal("0")
    checkpoints_written: int = 0
    total_realized: Decimal = Decimal("0")
    last_expiry_run: Optional[datetime] = None
    last_persistence_run: Optional[datetime] = None
    counters: Dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.started_at is None:
            self.started_at = self.clock()

    def record_claim(self, amount: Decimal) -> None:
        self.claims_processed += 1
        self.total_claimed += amount

    def record_expiry_run(self, finalized: int, credited: Decimal) -> None:
        self.slots_finalized += finalized
        self.total_finalized += credited
        self.last_expiry_run = self.clock()

    def record_persistence_run(self, checkpointed: int, realized: Decimal) -> None:
        self.checkpoints_written += checkpointed
        self.total_realized += realized
        self.last_persistence_run = self.clock()

    def increment(self, name: str, by: int = 1) -> None:
        self.counters[name] = self.counters.get(name, 0) + by

    def reset(self) -> None:
        self.started_at = self.clock()
        self.claims_processed = 0
        self.total_claimed = Decimal("0")
        self.slots_finalized = 0
        self.total_finalized = Decimal("0")
        self.checkpoints_written = 0
        self.total_realized = Decimal("0")
        self.last_expiry_run = None
        self.last_persistence_run = None
        self.counters = {}

    def snapshot(self) -> Dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "started_at": iso(self.started_at),
            "claims_processed": self.claims_processed,
            "total_claimed": str(self.total_claimed),
            "slots_finalized": self.slots_finalized,
            "total_finalized": str(self.total_finalized),
            "checkpoints_written": self.checkpoints_written,
            "total_realized": str(self.total_realized),
            "last_expiry_run": iso(self.last_expiry_run),
            "last_persistence_run": iso(self.last_persistence_run),
            "counters": dict(self.counters),
        }
