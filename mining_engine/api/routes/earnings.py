"""
Earnings routes for the mining engine API.
Live projected earnings and claiming.
"""

from typing import Optional

from fastapi import APIRouter, Body, Depends

import structlog

from mining_engine.api.dependencies import get_mining_engine, validate_owner_param
from mining_engine.api.schemas.common import SuccessResponse, create_success_response
from mining_engine.api.schemas.earnings import (
    ClaimRequest,
    ClaimResponse,
    ProjectedEarningsResponse,
)
from mining_engine.services.engine import MiningEngine

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get(
    "/{owner_id}",
    response_model=SuccessResponse,
    summary="Get Projected Earnings",
    description="Realized plus accrued earnings of every active slot, as of now"
)
async def get_projected_earnings(
    owner_id: int = Depends(validate_owner_param),
    engine: MiningEngine = Depends(get_mining_engine),
):
    projection = await engine.get_projected_earnings(owner_id)
    return create_success_response(data=ProjectedEarningsResponse(**projection))


@router.post(
    "/{owner_id}/claim",
    response_model=SuccessResponse,
    summary="Claim Earnings",
    description="Credit accrued earnings of the owner's active slots to the wallet"
)
async def claim_earnings(
    owner_id: int = Depends(validate_owner_param),
    request: Optional[ClaimRequest] = Body(default=None),
    engine: MiningEngine = Depends(get_mining_engine),
):
    """
    Claim earnings.

    Nothing to claim is not an error: the response carries success=false and
    a message, with HTTP 200.
    """
    slot_ids = request.slot_ids if request else None
    result = await engine.claim(owner_id, slot_ids)

    logger.info(
        "Claim request handled",
        owner_id=owner_id,
        success=result.success,
        amount=str(result.claimed_amount)
    )
    return SuccessResponse(
        success=result.success,
        message=result.message,
        data=ClaimResponse(**result.to_dict()),
    )
