"""
Administrative routes: processing triggers, status and wallet tools.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status

import structlog

from mining_engine.api.dependencies import get_mining_engine, validate_owner_param
from mining_engine.api.schemas.admin import BalanceAdjustmentRequest, RegisterOwnerRequest
from mining_engine.api.schemas.common import SuccessResponse, create_success_response
from mining_engine.core.exceptions import SchedulerError
from mining_engine.services.engine import MiningEngine

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post(
    "/processing/run-expiry",
    response_model=SuccessResponse,
    summary="Run Expiry Batch",
    description="Finalize every slot that has expired, outside the schedule"
)
async def run_expiry(engine: MiningEngine = Depends(get_mining_engine)):
    try:
        stats = await engine.run_expiry_batch_now()
    except SchedulerError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": e.code, "message": e.message}
        )
    return create_success_response(
        data=stats.to_dict(),
        message=f"Processed {stats.processed_slots} of {stats.total_slots} expired slots"
    )


@router.post(
    "/processing/run-persistence",
    response_model=SuccessResponse,
    summary="Run Accrual Persistence",
    description="Checkpoint material unrealized earnings of active slots"
)
async def run_persistence(engine: MiningEngine = Depends(get_mining_engine)):
    stats = await engine.run_persistence_now()
    return create_success_response(
        data=stats.to_dict(),
        message=f"Checkpointed {stats.checkpointed} slots"
    )


@router.get(
    "/processing/status",
    response_model=SuccessResponse,
    summary="Processing Status",
    description="Slot counters, last expiry run and scheduler state"
)
async def processing_status(
    request: Request,
    engine: MiningEngine = Depends(get_mining_engine),
):
    data = await engine.get_processing_status()
    scheduler = getattr(request.app.state, "scheduler", None)
    data["scheduler"] = scheduler.health_check() if scheduler else None
    return create_success_response(data=data)


@router.get(
    "/stats/live",
    response_model=SuccessResponse,
    summary="Live Statistics",
    description="In-process counters since start"
)
async def live_stats(engine: MiningEngine = Depends(get_mining_engine)):
    return create_success_response(data=engine.get_live_stats())


@router.post(
    "/owners",
    response_model=SuccessResponse,
    status_code=201,
    summary="Register Owner",
    description="Create an owner with an empty wallet"
)
async def register_owner(
    request: RegisterOwnerRequest,
    engine: MiningEngine = Depends(get_mining_engine),
):
    owner_id = await engine.register_owner(request.external_id, request.username)
    return create_success_response(data={"owner_id": owner_id}, message="Owner registered")


@router.get(
    "/wallets/{owner_id}",
    response_model=SuccessResponse,
    summary="Wallet Balance"
)
async def wallet_balance(
    owner_id: int = Depends(validate_owner_param),
    engine: MiningEngine = Depends(get_mining_engine),
):
    balance = await engine.get_balance(owner_id)
    return create_success_response(data={"owner_id": owner_id, "balance": str(balance)})


@router.post(
    "/wallets/{owner_id}/adjust",
    response_model=SuccessResponse,
    summary="Adjust Balance",
    description="Deposit, bonus, penalty or withdrawal recorded in the ledger"
)
async def adjust_balance(
    request: BalanceAdjustmentRequest,
    owner_id: int = Depends(validate_owner_param),
    engine: MiningEngine = Depends(get_mining_engine),
):
    new_balance = await engine.adjust_balance(
        owner_id, request.amount, request.log_type, request.description
    )
    return create_success_response(
        data={"owner_id": owner_id, "balance": str(new_balance)},
        message="Balance adjusted"
    )


@router.get(
    "/wallets/{owner_id}/reconcile",
    response_model=SuccessResponse,
    summary="Reconcile Wallet",
    description="Compare the stored balance with the sum of the activity ledger"
)
async def reconcile_wallet(
    owner_id: int = Depends(validate_owner_param),
    engine: MiningEngine = Depends(get_mining_engine),
):
    return create_success_response(data=await engine.reconcile(owner_id))
