"""
Input validation for engine operations.
Runs before any storage access; failures raise ValidationError.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional, Sequence

import structlog

from mining_engine.core.exceptions import ValidationError
from mining_engine.services.accrual import floor_amount, to_decimal


logger = structlog.get_logger(__name__)


def validate_owner_id(owner_id: Any) -> int:
    """Owner ids are positive integers."""
    if isinstance(owner_id, bool) or not isinstance(owner_id, int) or owner_id <= 0:
        raise ValidationError(
            "Owner id must be a positive integer",
            {"owner_id": repr(owner_id)}
        )
    return owner_id


def validate_slot_id(slot_id: Any) -> str:
    if not isinstance(slot_id, str) or not slot_id.strip() or len(slot_id) > 36:
        raise ValidationError("Invalid slot id", {"slot_id": repr(slot_id)})
    return slot_id


def validate_slot_ids(slot_ids: Optional[Sequence[Any]]) -> Optional[List[str]]:
    """None means "all active slots"; an explicit list must be non-empty."""
    if slot_ids is None:
        return None
    if isinstance(slot_ids, str):
        raise ValidationError("Slot ids must be a list", {"slot_ids": slot_ids})
    ids = [validate_slot_id(slot_id) for slot_id in slot_ids]
    if not ids:
        raise ValidationError("At least one slot id is required")
    # de-duplicate, keep order
    return list(dict.fromkeys(ids))


def validate_amount(
    value: Any,
    field: str = "amount",
    minimum: Optional[Decimal] = None,
) -> Decimal:
    """
    Parse a strictly positive amount with at most 8 fractional digits.

    Args:
        value: Decimal, int, str or float
        field: Name used in the error details
        minimum: Optional inclusive lower bound
    """
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field}", {field: repr(value)})
    try:
        amount = to_decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid {field}", {field: repr(value)})

    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{field} must be positive", {field: str(amount)})
    if floor_amount(amount) != amount:
        raise ValidationError(
            f"{field} has more than 8 fractional digits",
            {field: str(amount)}
        )
    if minimum is not None and amount < minimum:
        raise ValidationError(
            f"{field} must be at least {minimum}",
            {field: str(amount), "minimum": str(minimum)}
        )
    return amount
