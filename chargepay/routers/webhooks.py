import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from ..dependencies import get_reconciler
from ..errors import AuthenticationError, MalformedPayload
from ..services.webhooks import WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])

SIGNATURE_HEADERS = {
    "stripe": "stripe-signature",
    "mollie": "x-mollie-signature",
}


# Provider -> POST, raw signed body
@router.post("/{provider}")
async def webhook(provider: str, request: Request, reconciler: WebhookReconciler = Depends(get_reconciler)):
    """
    Business outcomes (including unknown references and unhandled event
    types) are acknowledged with 200 so the provider does not retry them.
    """
    if provider not in reconciler.providers:
        raise HTTPException(status_code=404, detail=f"Unknown payment provider: {provider}")

    signature = request.headers.get(SIGNATURE_HEADERS.get(provider, "x-signature"))
    if not signature:
        logger.error("Missing %s webhook signature", provider)
        raise HTTPException(status_code=400, detail="Missing signature")
    payload = await request.body()
    if not payload:
        logger.error("Missing raw body for %s webhook", provider)
        raise HTTPException(status_code=400, detail="Missing payload")

    try:
        return await reconciler.handle(provider, payload, signature)
    except (AuthenticationError, MalformedPayload) as e:
        logger.warning("Rejected %s webhook: %s", provider, e.message)
        return JSONResponse(status_code=400, content={"error": e.code, "message": e.message})
