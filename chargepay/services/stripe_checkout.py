import json
import logging
from typing import Any, Callable, Dict, Optional

import stripe

from ..errors import AuthenticationError, MalformedPayload, ProviderError, TransportError
from ..utils import from_epoch, to_epoch
from .checkout import (
    CheckoutRequest,
    CheckoutSession,
    CheckoutSnapshot,
    CheckoutState,
    EventKind,
    RefundReceipt,
    WebhookEvent,
)

logger = logging.getLogger(__name__)

EVENT_KINDS = {
    "checkout.session.completed": EventKind.CHECKOUT_COMPLETED,
    "checkout.session.expired": EventKind.CHECKOUT_EXPIRED,
    "payment_intent.payment_failed": EventKind.PAYMENT_FAILED,
    "charge.refunded": EventKind.CHARGE_REFUNDED,
}

CHECKOUT_STATES = {
    "open": CheckoutState.OPEN,
    "complete": CheckoutState.COMPLETE,
    "expired": CheckoutState.EXPIRED,
}


class StripeCheckoutProvider:
    """Stripe Checkout (crypto, optionally card) through the async SDK."""

    name = "stripe"

    def __init__(self, api_key: str, webhook_secret: Optional[str] = None,
                 enable_card_payments: bool = True, tolerance: int = 300):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.enable_card_payments = enable_card_payments
        self.tolerance = tolerance

    async def _call(self, func: Callable, *args, **kwargs) -> Any:
        try:
            return await func(*args, api_key=self.api_key, **kwargs)
        except stripe.APIConnectionError as e:
            raise TransportError(f"Stripe unreachable: {e.user_message or e}") from e
        except stripe.StripeError as e:
            logger.error("Stripe request failed: %s", e)
            raise ProviderError(
                e.user_message or str(e),
                details={"provider": self.name, "code": e.code},
            ) from e

    def payment_method_types(self, requested) -> list:
        methods = [m for m in requested if m != "card" or self.enable_card_payments]
        return methods or ["crypto"]

    async def create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        methods = self.payment_method_types(request.payment_methods)
        metadata = {k: str(v) for k, v in request.metadata.items()}
        metadata.update({
            "session_id": request.session_ref,
            "type": "ev_charging",
            "payment_methods": ",".join(methods),
        })
        session = await self._call(
            stripe.checkout.Session.create_async,
            mode="payment",
            payment_method_types=methods,
            line_items=[{
                "price_data": {
                    "currency": request.currency,
                    "product_data": {
                        "name": "EV Charging Session",
                        "description": request.description or f"Charging Session ID: {request.session_ref}",
                    },
                    "unit_amount": request.amount_minor_units,
                },
                "quantity": 1,
            }],
            success_url=request.success_url,
            cancel_url=request.cancel_url,
            metadata=metadata,
            expires_at=to_epoch(request.expires_at),
        )
        logger.info("Stripe checkout %s created with payment methods: %s", session.id, ", ".join(methods))
        return CheckoutSession(
            external_ref=session.id,
            url=session.url or "",
            expires_at=from_epoch(session.expires_at),
            payment_intent_ref=session.payment_intent,
        )

    async def get_checkout(self, external_ref: str) -> CheckoutSnapshot:
        session = await self._call(stripe.checkout.Session.retrieve_async, external_ref)
        return CheckoutSnapshot(
            external_ref=session.id,
            state=CHECKOUT_STATES.get(session.status, CheckoutState.OPEN),
            payment_intent_ref=session.payment_intent,
            amount_minor_units=session.amount_total,
            currency=session.currency,
        )

    async def refund(self, payment_intent_ref: str) -> RefundReceipt:
        logger.info("Processing refund for payment intent: %s", payment_intent_ref)
        refund = await self._call(stripe.Refund.create_async, payment_intent=payment_intent_ref)
        logger.info("Refund created successfully: %s", refund.id)
        return RefundReceipt(refund_ref=refund.id, amount_minor_units=refund.amount, currency=refund.currency)

    async def expire_checkout(self, external_ref: str) -> None:
        await self._call(stripe.checkout.Session.expire_async, external_ref)

    async def verify_and_parse(self, raw_payload: bytes, signature: Optional[str]) -> WebhookEvent:
        if not self.webhook_secret:
            raise AuthenticationError("Stripe webhook secret not configured")
        if not signature:
            raise AuthenticationError("Missing Stripe signature")

        try:
            payload = raw_payload.decode("utf-8") if isinstance(raw_payload, bytes) else raw_payload
        except UnicodeDecodeError as e:
            raise MalformedPayload("Stripe webhook payload is not valid UTF-8") from e
        try:
            stripe.WebhookSignature.verify_header(payload, signature, self.webhook_secret, self.tolerance)
        except stripe.SignatureVerificationError as e:
            raise AuthenticationError(f"Invalid Stripe signature: {e}") from e

        try:
            event = json.loads(payload)
            event_type = event["type"]
            obj: Dict[str, Any] = event["data"]["object"]
        except (ValueError, KeyError, TypeError) as e:
            raise MalformedPayload(f"Invalid Stripe event payload: {e}") from e
        if not isinstance(obj, dict):
            raise MalformedPayload("Invalid Stripe event payload: data.object is not an object")

        kind = EVENT_KINDS.get(event_type, EventKind.UNKNOWN)
        if kind in (EventKind.CHECKOUT_COMPLETED, EventKind.CHECKOUT_EXPIRED):
            external_ref = obj.get("id")
            payment_intent_ref = obj.get("payment_intent")
        elif kind is EventKind.PAYMENT_FAILED:
            external_ref = None
            payment_intent_ref = obj.get("id")
        else:
            external_ref = None
            payment_intent_ref = obj.get("payment_intent")

        return WebhookEvent(
            id=event.get("id", ""),
            kind=kind,
            provider_type=event_type,
            external_ref=external_ref,
            payment_intent_ref=payment_intent_ref,
            data=obj,
        )
