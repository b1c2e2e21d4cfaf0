"""
Slot routes for the mining engine API.
"""

from fastapi import APIRouter, Depends, Query

import structlog

from mining_engine.api.dependencies import (
    get_mining_engine,
    validate_owner_param,
    validate_slot_param,
)
from mining_engine.api.schemas.common import SuccessResponse, create_success_response
from mining_engine.api.schemas.slots import PurchaseSlotRequest, UpgradeSlotRequest
from mining_engine.services.engine import MiningEngine

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get(
    "/{owner_id}",
    response_model=SuccessResponse,
    summary="List Slots",
    description="Slots of an owner with their live accrual state"
)
async def list_slots(
    owner_id: int = Depends(validate_owner_param),
    include_inactive: bool = Query(False, description="Include closed slots"),
    engine: MiningEngine = Depends(get_mining_engine),
):
    slots = await engine.list_slots(owner_id, include_inactive)
    return create_success_response(data={"owner_id": owner_id, "slots": slots})


@router.post(
    "/{owner_id}",
    response_model=SuccessResponse,
    status_code=201,
    summary="Purchase Slot",
    description="Open a new slot funded from the owner's wallet"
)
async def purchase_slot(
    request: PurchaseSlotRequest,
    owner_id: int = Depends(validate_owner_param),
    engine: MiningEngine = Depends(get_mining_engine),
):
    result = await engine.purchase_slot(owner_id, request.principal, slot_type=request.slot_type)
    return create_success_response(data=result, message="Slot purchased")


@router.post(
    "/{owner_id}/{slot_id}/extend",
    response_model=SuccessResponse,
    summary="Extend Slot",
    description="Pay the extension fee to push the slot's expiry further"
)
async def extend_slot(
    owner_id: int = Depends(validate_owner_param),
    slot_id: str = Depends(validate_slot_param),
    engine: MiningEngine = Depends(get_mining_engine),
):
    result = await engine.extend_slot(owner_id, slot_id)
    return create_success_response(data=result, message="Slot extended")


@router.post(
    "/{owner_id}/{slot_id}/upgrade",
    response_model=SuccessResponse,
    summary="Upgrade Slot",
    description="Checkpoint the slot, then add principal from the wallet"
)
async def upgrade_slot(
    request: UpgradeSlotRequest,
    owner_id: int = Depends(validate_owner_param),
    slot_id: str = Depends(validate_slot_param),
    engine: MiningEngine = Depends(get_mining_engine),
):
    result = await engine.upgrade_slot(owner_id, slot_id, request.amount)
    return create_success_response(data=result, message="Slot upgraded")
