import json
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import stripe

from chargepay.errors import MalformedPayload, ProviderError, TransportError
from chargepay.services.checkout import CheckoutRequest, CheckoutState, EventKind
from chargepay.services.mollie import MollieCheckoutProvider, format_amount
from chargepay.services.stripe_checkout import StripeCheckoutProvider
from chargepay.utils import to_epoch

from .conftest import STRIPE_WEBHOOK_SECRET, stripe_event, stripe_signature


def checkout_request(**overrides):
    values = dict(
        amount_minor_units=550,
        currency="usd",
        session_ref="session-1",
        success_url="https://app.example.com/success?session_id={CHECKOUT_SESSION_ID}",
        cancel_url="https://app.example.com/cancel",
        expires_at=datetime(2030, 1, 1, 12, 0, 0, tzinfo=timezone.utc),
        payment_methods=["crypto", "card"],
        metadata={"user_id": "user-1"},
    )
    values.update(overrides)
    return CheckoutRequest(**values)


# --- stripe -----------------------------------------------------------------

@pytest.mark.asyncio
async def test_stripe_create_checkout():
    provider = StripeCheckoutProvider(api_key="sk_test_123")
    created = SimpleNamespace(
        id="cs_test_1",
        url="https://checkout.stripe.com/c/pay/cs_test_1",
        expires_at=to_epoch(datetime(2030, 1, 1, 12, 0, 0, tzinfo=timezone.utc)),
        payment_intent=None,
    )
    with patch.object(stripe.checkout.Session, "create_async", AsyncMock(return_value=created)) as create:
        session = await provider.create_checkout(checkout_request())

    assert session.external_ref == "cs_test_1"
    assert session.url == created.url
    assert session.expires_at == datetime(2030, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    kwargs = create.await_args.kwargs
    assert kwargs["api_key"] == "sk_test_123"
    assert kwargs["mode"] == "payment"
    assert kwargs["payment_method_types"] == ["crypto", "card"]
    assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 550
    assert kwargs["metadata"] == {
        "user_id": "user-1",
        "session_id": "session-1",
        "type": "ev_charging",
        "payment_methods": "crypto,card",
    }
    assert kwargs["expires_at"] == created.expires_at


@pytest.mark.asyncio
async def test_stripe_card_payments_disabled():
    provider = StripeCheckoutProvider(api_key="sk_test_123", enable_card_payments=False)
    created = SimpleNamespace(id="cs_test_1", url="u", expires_at=1893499200, payment_intent=None)
    with patch.object(stripe.checkout.Session, "create_async", AsyncMock(return_value=created)) as create:
        await provider.create_checkout(checkout_request())
    assert create.await_args.kwargs["payment_method_types"] == ["crypto"]


@pytest.mark.asyncio
async def test_stripe_errors_are_translated():
    provider = StripeCheckoutProvider(api_key="sk_test_123")
    with patch.object(stripe.Refund, "create_async", AsyncMock(side_effect=stripe.InvalidRequestError("No such payment_intent", "payment_intent"))):
        with pytest.raises(ProviderError):
            await provider.refund("pi_missing")
    with patch.object(stripe.Refund, "create_async", AsyncMock(side_effect=stripe.APIConnectionError("network down"))):
        with pytest.raises(TransportError):
            await provider.refund("pi_1")


@pytest.mark.asyncio
async def test_stripe_refund_and_status():
    provider = StripeCheckoutProvider(api_key="sk_test_123")
    refund = SimpleNamespace(id="re_1", amount=550, currency="usd")
    with patch.object(stripe.Refund, "create_async", AsyncMock(return_value=refund)) as create:
        receipt = await provider.refund("pi_1")
    assert receipt.refund_ref == "re_1"
    assert receipt.amount_minor_units == 550
    assert create.await_args.kwargs["payment_intent"] == "pi_1"

    retrieved = SimpleNamespace(id="cs_test_1", status="complete", payment_intent="pi_1", amount_total=550, currency="usd")
    with patch.object(stripe.checkout.Session, "retrieve_async", AsyncMock(return_value=retrieved)):
        snapshot = await provider.get_checkout("cs_test_1")
    assert snapshot.state == CheckoutState.COMPLETE
    assert snapshot.payment_intent_ref == "pi_1"


@pytest.mark.asyncio
async def test_stripe_parses_signed_event():
    provider = StripeCheckoutProvider(api_key="sk_test_123", webhook_secret=STRIPE_WEBHOOK_SECRET)
    payload = stripe_event("payment_intent.payment_failed", {"id": "pi_9", "object": "payment_intent"}, event_id="evt_9")

    event = await provider.verify_and_parse(payload.encode(), stripe_signature(payload))

    assert event.id == "evt_9"
    assert event.kind == EventKind.PAYMENT_FAILED
    assert event.external_ref is None
    assert event.payment_intent_ref == "pi_9"


@pytest.mark.asyncio
async def test_stripe_rejects_non_utf8_payload():
    provider = StripeCheckoutProvider(api_key="sk_test_123", webhook_secret=STRIPE_WEBHOOK_SECRET)
    with pytest.raises(MalformedPayload, match="not valid UTF-8"):
        await provider.verify_and_parse(b"\xff\xfe\x00garbage", "t=1,v1=abc")


@pytest.mark.asyncio
async def test_stripe_rejects_non_object_event_data():
    provider = StripeCheckoutProvider(api_key="sk_test_123", webhook_secret=STRIPE_WEBHOOK_SECRET)
    payload = json.dumps({"id": "evt_1", "type": "checkout.session.completed", "data": {"object": "cs_1"}})
    with pytest.raises(MalformedPayload):
        await provider.verify_and_parse(payload.encode(), stripe_signature(payload))


# --- mollie -----------------------------------------------------------------

def test_format_amount():
    assert format_amount(550, "eur") == {"currency": "EUR", "value": "5.50"}
    assert format_amount(5, "usd") == {"currency": "USD", "value": "0.05"}


@pytest.mark.asyncio
async def test_mollie_create_checkout():
    sent = []

    def handler(request: httpx.Request):
        sent.append(request)
        return httpx.Response(201, json={
            "resource": "payment",
            "id": "tr_7UhSN1zuXS",
            "status": "open",
            "expiresAt": "2030-01-01T12:15:00+00:00",
            "_links": {"checkout": {"href": "https://www.mollie.com/checkout/select-method/7UhSN1zuXS"}},
        })

    provider = MollieCheckoutProvider(
        api_key="test_mollie",
        webhook_url="https://api.example.com/api/v1/webhooks/mollie",
        transport=httpx.MockTransport(handler),
    )
    session = await provider.create_checkout(checkout_request())

    assert session.external_ref == "tr_7UhSN1zuXS"
    assert session.url.endswith("7UhSN1zuXS")
    assert session.expires_at == datetime(2030, 1, 1, 12, 15, 0, tzinfo=timezone.utc)

    request = sent[0]
    assert request.method == "POST"
    assert request.url.path == "/v2/payments"
    assert "Idempotency-Key" in request.headers
    body = json.loads(request.content)
    assert body["amount"] == {"currency": "USD", "value": "5.50"}
    assert body["redirectUrl"] == "https://app.example.com/success?session_id=session-1"
    assert body["method"] == ["creditcard"]
    assert body["metadata"] == {"session_id": "session-1", "user_id": "user-1"}
    assert body["webhookUrl"] == "https://api.example.com/api/v1/webhooks/mollie"


@pytest.mark.asyncio
async def test_mollie_error_responses():
    def rejected(request):
        return httpx.Response(422, json={"status": 422, "detail": "The amount is higher than the maximum"})

    def broken(request):
        return httpx.Response(503, text="unavailable")

    with pytest.raises(ProviderError, match="higher than the maximum"):
        await MollieCheckoutProvider("test_mollie", transport=httpx.MockTransport(rejected)).get_payment("tr_1")
    with pytest.raises(TransportError):
        await MollieCheckoutProvider("test_mollie", transport=httpx.MockTransport(broken)).get_payment("tr_1")


@pytest.mark.asyncio
async def test_mollie_refund_full_amount():
    sent = []

    def handler(request: httpx.Request):
        sent.append(request)
        if request.method == "GET":
            return httpx.Response(200, json={"id": "tr_1", "status": "paid", "amount": {"currency": "EUR", "value": "12.00"}})
        return httpx.Response(201, json={"id": "re_4qqhO89gsT", "amount": {"currency": "EUR", "value": "12.00"}})

    provider = MollieCheckoutProvider("test_mollie", transport=httpx.MockTransport(handler))
    receipt = await provider.refund("tr_1")

    assert receipt.refund_ref == "re_4qqhO89gsT"
    assert receipt.amount_minor_units == 1200
    assert receipt.currency == "eur"
    assert sent[1].url.path == "/v2/payments/tr_1/refunds"
    assert json.loads(sent[1].content) == {"amount": {"currency": "EUR", "value": "12.00"}}


@pytest.mark.asyncio
async def test_mollie_expire_checkout_cancels_payment():
    sent = []

    def handler(request: httpx.Request):
        sent.append(request)
        return httpx.Response(200, json={"id": "tr_1", "status": "canceled"})

    provider = MollieCheckoutProvider("test_mollie", transport=httpx.MockTransport(handler))
    await provider.expire_checkout("tr_1")
    assert sent[0].method == "DELETE"
    assert sent[0].url.path == "/v2/payments/tr_1"
