from fastapi import APIRouter, Depends

from ..dependencies import get_lifecycle, get_payments, get_verifier
from ..schemas import (
    PaymentLinkView,
    PrecheckIn,
    PrecheckOut,
    RecreateLinkOut,
    RefundOut,
    SessionRef,
)
from ..services.balance import BalanceVerifier
from ..services.payment_links import PaymentLinkManager
from ..services.sessions import SessionLifecycle
from ..utils import require_service_api_key

router = APIRouter(prefix="/api/v1/payment", tags=["payments"], dependencies=[Depends(require_service_api_key)])


@router.post("/precheck", response_model=PrecheckOut)
async def precheck(payload: PrecheckIn, verifier: BalanceVerifier = Depends(get_verifier)):
    """
    Check the wallet's USDC and gas balance against the amount.

    With a user_id the check is also recorded for tracking and session linking.
    """
    if payload.user_id:
        record = await verifier.precheck_and_record(
            payload.user_id,
            payload.address,
            payload.chain,
            payload.amount_usd,
            {"source": "precheck-api"},
        )
        return PrecheckOut(
            **record.result.model_dump(),
            balance_check_id=record.balance_check_id,
            balance_status=record.status,
        )
    result = await verifier.precheck(payload.address, payload.chain, payload.amount_usd)
    return PrecheckOut(**result.model_dump())


@router.get("/link/{session_id}", response_model=PaymentLinkView)
async def get_payment_link(session_id: str, lifecycle: SessionLifecycle = Depends(get_lifecycle)):
    return await lifecycle.get_payment_link(session_id)


@router.get("/status/{session_id}", response_model=PaymentLinkView)
async def payment_status(session_id: str, payments: PaymentLinkManager = Depends(get_payments)):
    """Latest link for the session, refreshed from the provider while it is pending."""
    return await payments.refresh_status(session_id)


@router.post("/recreate-link", response_model=RecreateLinkOut)
async def recreate_payment_link(payload: SessionRef, lifecycle: SessionLifecycle = Depends(get_lifecycle)):
    return await lifecycle.recreate_link(payload.session_id)


@router.post("/refund", response_model=RefundOut)
async def refund_payment(payload: SessionRef, lifecycle: SessionLifecycle = Depends(get_lifecycle)):
    return await lifecycle.refund_payment(payload.session_id)
