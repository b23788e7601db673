"""
Provider webhook reconciliation.

Verified events are mapped onto payment-link status changes through
``PaymentLinkManager.apply_status``, which makes replays and out-of-order
deliveries harmless. Field-level problems inside a handler are logged and
swallowed so the provider does not retry a delivery that can never succeed;
persistence failures propagate so it does.
"""

import logging
from typing import Any, Dict, Optional

from ..models import PaymentStatus
from ..utils import utcnow
from .checkout import EventKind, ProviderRegistry, WebhookEvent
from .payment_links import PaymentLinkManager

logger = logging.getLogger(__name__)


class WebhookReconciler:

    def __init__(self, providers: ProviderRegistry, payments: PaymentLinkManager):
        self.providers = providers
        self.payments = payments
        self._handlers = {
            EventKind.CHECKOUT_COMPLETED: self._checkout_completed,
            EventKind.CHECKOUT_EXPIRED: self._checkout_expired,
            EventKind.PAYMENT_FAILED: self._payment_failed,
            EventKind.CHARGE_REFUNDED: self._charge_refunded,
        }

    async def handle(self, provider_key: str, raw_payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify and dispatch one delivery.

        Raises AuthenticationError / MalformedPayload for bad deliveries and
        InvalidArgument for an unknown provider key.
        """
        provider = self.providers.get(provider_key)
        event = await provider.verify_and_parse(raw_payload, signature)
        logger.info("Processing %s event %s (%s)", provider.name, event.id, event.provider_type)
        await self.dispatch(event)
        return {"received": True}

    async def dispatch(self, event: WebhookEvent) -> None:
        handler = self._handlers.get(event.kind)
        if handler is None:
            logger.info("Unhandled event type: %s", event.provider_type)
            return
        try:
            await handler(event)
        except (AttributeError, KeyError, TypeError, ValueError):
            logger.exception("Failed to process %s event %s", event.provider_type, event.id)

    async def _checkout_completed(self, event: WebhookEvent) -> None:
        data = event.data
        metadata = data.get("metadata") or {}
        customer = data.get("customer_details") or {}
        logger.info(
            "Checkout completed: %s (session: %s, user: %s, amount: %s %s)",
            event.external_ref, metadata.get("session_id"), metadata.get("user_id"),
            data.get("amount_total"), data.get("currency"),
        )
        await self.payments.apply_status(
            event.external_ref,
            PaymentStatus.PAID,
            {
                "event_id": event.id,
                "payment_methods": data.get("payment_method_types"),
                "customer_email": customer.get("email") or data.get("customer_email"),
                "amount_total": data.get("amount_total"),
                "currency": data.get("currency"),
                "payment_status": data.get("payment_status") or data.get("status"),
                "completed_at": utcnow().isoformat(),
            },
            payment_intent_ref=event.payment_intent_ref,
        )

    async def _checkout_expired(self, event: WebhookEvent) -> None:
        logger.info("Checkout expired: %s", event.external_ref)
        await self.payments.apply_status(
            event.external_ref,
            PaymentStatus.EXPIRED,
            {"event_id": event.id, "expired_at": utcnow().isoformat()},
        )

    async def _payment_failed(self, event: WebhookEvent) -> None:
        # the session can retry through recreate_link
        error = event.data.get("last_payment_error") or {}
        logger.info(
            "Payment failed for payment intent: %s (%s)",
            event.payment_intent_ref, error.get("message", "no reason given"),
        )

    async def _charge_refunded(self, event: WebhookEvent) -> None:
        # REFUNDED is written by the refund flow, not by this notification
        logger.info("Refund notification for payment intent: %s", event.payment_intent_ref)
