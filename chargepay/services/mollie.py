import hashlib
import hmac
import json
import logging
import uuid
from decimal import Decimal
from typing import Optional
from urllib.parse import parse_qs

import httpx

from ..errors import AuthenticationError, MalformedPayload, ProviderError, TransportError
from ..utils import money, parse_iso, to_minor_units
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

SIGNATURE_PREFIX = "sha256="

# our payment method names -> Mollie's; crypto has no Mollie counterpart
METHODS = {"card": "creditcard"}

STATES = {
    "open": CheckoutState.OPEN,
    "pending": CheckoutState.OPEN,
    "authorized": CheckoutState.OPEN,
    "paid": CheckoutState.COMPLETE,
    "expired": CheckoutState.EXPIRED,
    "failed": CheckoutState.FAILED,
    "canceled": CheckoutState.FAILED,
}


def format_amount(minor_units: int, currency: str) -> dict:
    value = money(Decimal(minor_units) / 100)
    return {"currency": currency.upper(), "value": f"{value:.2f}"}


class MollieCheckoutProvider:
    """Mollie payments over the REST API; webhooks carry a payment id only."""

    name = "mollie"

    def __init__(self, api_key: str, api_base: str = "https://api.mollie.com/v2",
                 webhook_secret: Optional[str] = None, webhook_url: Optional[str] = None,
                 timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_base = api_base.rstrip("/")
        self.webhook_secret = webhook_secret
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        self._transport = transport

    async def _request(self, method: str, path: str, payload: Optional[dict] = None,
                       idempotency_key: Optional[str] = None) -> dict:
        headers = self.headers.copy()
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                resp = await client.request(method, f"{self.api_base}{path}", json=payload, headers=headers)
            except httpx.HTTPError as e:
                raise TransportError(f"Mollie unreachable: {e}") from e
        if resp.status_code >= 400:
            detail = resp.text
            try:
                detail = resp.json().get("detail", detail)
            except ValueError:
                pass
            logger.error("Mollie %s %s failed with %s: %s", method, path, resp.status_code, detail)
            if resp.status_code >= 500:
                raise TransportError(f"Mollie error {resp.status_code}: {detail}")
            raise ProviderError(detail, details={"provider": self.name, "status": resp.status_code})
        return resp.json() if resp.content else {}

    async def create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        redirect = request.success_url.replace("{CHECKOUT_SESSION_ID}", request.session_ref)
        cancel = request.cancel_url.replace("{CHECKOUT_SESSION_ID}", request.session_ref)
        payload = {
            "amount": format_amount(request.amount_minor_units, request.currency),
            "description": request.description or f"EV Charging Session {request.session_ref}",
            "redirectUrl": redirect,
            "cancelUrl": cancel,
            "metadata": {"session_id": request.session_ref, **request.metadata},
        }
        methods = [METHODS[m] for m in request.payment_methods if m in METHODS]
        if methods:
            payload["method"] = methods
        if self.webhook_url:
            payload["webhookUrl"] = self.webhook_url

        data = await self._request("POST", "/payments", payload, idempotency_key=str(uuid.uuid4()))
        checkout_url = data.get("_links", {}).get("checkout", {}).get("href", "")
        logger.info("Mollie payment %s created for session %s", data.get("id"), request.session_ref)
        return CheckoutSession(
            external_ref=data["id"],
            url=checkout_url,
            expires_at=parse_iso(data.get("expiresAt")) or request.expires_at,
            payment_intent_ref=data["id"],
        )

    async def get_payment(self, payment_id: str) -> dict:
        return await self._request("GET", f"/payments/{payment_id}")

    async def get_checkout(self, external_ref: str) -> CheckoutSnapshot:
        data = await self.get_payment(external_ref)
        amount = data.get("amount") or {}
        return CheckoutSnapshot(
            external_ref=data.get("id", external_ref),
            state=STATES.get(data.get("status"), CheckoutState.OPEN),
            payment_intent_ref=data.get("id"),
            amount_minor_units=to_minor_units(amount["value"]) if amount.get("value") else None,
            currency=(amount.get("currency") or "").lower() or None,
            raw=data,
        )

    async def refund(self, payment_intent_ref: str) -> RefundReceipt:
        payment = await self.get_payment(payment_intent_ref)
        # full refund of the payment amount
        data = await self._request(
            "POST",
            f"/payments/{payment_intent_ref}/refunds",
            {"amount": payment["amount"]},
            idempotency_key=str(uuid.uuid4()),
        )
        amount = data.get("amount") or payment["amount"]
        return RefundReceipt(
            refund_ref=data["id"],
            amount_minor_units=to_minor_units(amount["value"]),
            currency=amount.get("currency", "").lower() or None,
        )

    async def expire_checkout(self, external_ref: str) -> None:
        await self._request("DELETE", f"/payments/{external_ref}")

    def verify_signature(self, raw_payload: bytes, signature: Optional[str]) -> None:
        if not self.webhook_secret:
            raise AuthenticationError("Mollie webhook secret not configured")
        if not signature:
            raise AuthenticationError("Missing Mollie signature")
        expected = hmac.new(self.webhook_secret.encode(), raw_payload, hashlib.sha256).hexdigest()
        received = signature[len(SIGNATURE_PREFIX):] if signature.startswith(SIGNATURE_PREFIX) else signature
        if not hmac.compare_digest(expected, received):
            raise AuthenticationError("Invalid Mollie signature")

    async def verify_and_parse(self, raw_payload: bytes, signature: Optional[str]) -> WebhookEvent:
        self.verify_signature(raw_payload, signature)

        text = raw_payload.decode("utf-8", errors="replace")
        try:
            body = json.loads(text)
        except ValueError:
            body = {k: v[0] for k, v in parse_qs(text).items()}
        payment_id = (body.get("id") or body.get("entityId")) if isinstance(body, dict) else None
        if not payment_id or not isinstance(payment_id, str):
            raise MalformedPayload("Missing id in Mollie webhook payload")

        # the payload is only a pointer; the status comes from the API
        payment = await self.get_payment(payment_id)
        status = payment.get("status", "")
        refunded = (payment.get("amountRefunded") or {}).get("value")
        if refunded and Decimal(refunded) > 0:
            kind = EventKind.CHARGE_REFUNDED
        elif status == "paid":
            kind = EventKind.CHECKOUT_COMPLETED
        elif status == "expired":
            kind = EventKind.CHECKOUT_EXPIRED
        elif status in ("failed", "canceled"):
            kind = EventKind.PAYMENT_FAILED
        else:
            kind = EventKind.UNKNOWN

        return WebhookEvent(
            id=f"{payment_id}:{status}",
            kind=kind,
            provider_type=f"payment.{status or 'unknown'}",
            external_ref=payment_id,
            payment_intent_ref=payment_id,
            data=payment,
        )
