"""
API dependencies for FastAPI endpoints.
Provides reusable dependency functions for validation and engine access.
"""

from fastapi import HTTPException, Path, status

import structlog

from mining_engine.core.exceptions import ValidationError
from mining_engine.services.engine import MiningEngine, get_engine
from mining_engine.utils.validation import validate_owner_id, validate_slot_id


logger = structlog.get_logger(__name__)


def get_mining_engine() -> MiningEngine:
    """Engine dependency; 503 until the application lifespan has built it."""
    try:
        return get_engine()
    except RuntimeError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "ENGINE_NOT_READY",
                "message": "Mining engine is not initialized"
            }
        )


async def validate_owner_param(
    owner_id: int = Path(..., description="Owner identifier")
) -> int:
    """Validate owner ID path parameter."""
    try:
        return validate_owner_id(owner_id)
    except ValidationError as e:
        logger.warning("Invalid owner id provided", owner_id=owner_id)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "INVALID_OWNER_ID",
                "message": e.message
            }
        )


async def validate_slot_param(
    slot_id: str = Path(..., description="Slot identifier")
) -> str:
    """Validate slot ID path parameter."""
    try:
        return validate_slot_id(slot_id)
    except ValidationError as e:
        logger.warning("Invalid slot id provided", slot_id=slot_id)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "INVALID_SLOT_ID",
                "message": e.message
            }
        )
