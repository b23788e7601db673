from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ..chains import Chain
from ..config import settings
from ..dependencies import get_lifecycle
from ..schemas import BalanceCheckOut, RecentCheckOut, SessionOut
from ..services.sessions import SessionLifecycle
from ..utils import require_service_api_key

router = APIRouter(prefix="/api/v1/user", tags=["users"], dependencies=[Depends(require_service_api_key)])


@router.get("/{user_id}/balance-checks", response_model=List[BalanceCheckOut])
async def balance_check_history(user_id: str, limit: Optional[int] = Query(default=None, ge=1, le=100),
                                lifecycle: SessionLifecycle = Depends(get_lifecycle)):
    return await lifecycle.balance_check_history(user_id, limit)


@router.get("/{user_id}/sessions", response_model=List[SessionOut])
async def user_sessions(user_id: str, limit: Optional[int] = Query(default=None, ge=1, le=100),
                        lifecycle: SessionLifecycle = Depends(get_lifecycle)):
    return await lifecycle.sessions_by_user(user_id, limit)


@router.get("/balance-check/{balance_check_id}", response_model=BalanceCheckOut)
async def balance_check(balance_check_id: str, lifecycle: SessionLifecycle = Depends(get_lifecycle)):
    return await lifecycle.balance_check_by_id(balance_check_id)


@router.get("/recent-balance-check/{user_id}", response_model=RecentCheckOut)
async def recent_balance_check(
    user_id: str,
    wallet_address: str,
    chain: Chain,
    requested_amount: Decimal,
    within_minutes: int = Query(default=settings.recent_check_window_minutes, ge=1),
    lifecycle: SessionLifecycle = Depends(get_lifecycle),
):
    """Whether a SUFFICIENT check for this exact wallet and amount exists inside the window."""
    return await lifecycle.recent_balance_check(user_id, wallet_address, chain, requested_amount, within_minutes)
