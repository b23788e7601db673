from fastapi import APIRouter, Depends

from ..dependencies import get_lifecycle
from ..schemas import (
    CancelSessionIn,
    CancelSessionOut,
    StartSessionIn,
    StartSessionOut,
    StopSessionIn,
    StopSessionOut,
)
from ..services.sessions import SessionLifecycle
from ..utils import require_service_api_key

router = APIRouter(prefix="/api/v1/session", tags=["sessions"], dependencies=[Depends(require_service_api_key)])


@router.post("/start", response_model=StartSessionOut)
async def start_session(payload: StartSessionIn, lifecycle: SessionLifecycle = Depends(get_lifecycle)):
    """Start a charging session, verifying the wallet balance first unless check_balance is false."""
    return await lifecycle.start_session(
        payload.user_id,
        payload.charger_id,
        check_balance=payload.check_balance,
        wallet_address=payload.wallet_address,
        chain=payload.chain,
        expected_max_cost=payload.expected_max_cost,
        metadata=payload.metadata,
    )


@router.post("/stop", response_model=StopSessionOut)
async def stop_session(payload: StopSessionIn, lifecycle: SessionLifecycle = Depends(get_lifecycle)):
    """Complete the session and issue a 24h payment link for the final cost."""
    return await lifecycle.stop_session(payload.session_id, payload.final_cost, provider=payload.provider)


@router.post("/cancel", response_model=CancelSessionOut)
async def cancel_session(payload: CancelSessionIn, lifecycle: SessionLifecycle = Depends(get_lifecycle)):
    return await lifecycle.cancel_session(payload.session_id, payload.reason)
