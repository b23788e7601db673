from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError

from chargepay.config import settings
from chargepay.dependencies import build_services
from chargepay.errors import AuthenticationError
from chargepay.main import create_app
from chargepay.models import PaymentStatus
from chargepay.services.checkout import EventKind, ProviderRegistry, WebhookEvent
from chargepay.services.stripe_checkout import StripeCheckoutProvider

from .conftest import STRIPE_WEBHOOK_SECRET, WALLET


@pytest_asyncio.fixture
async def client(services):
    app = create_app(services=services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


async def start(client, **overrides):
    body = {"user_id": "user-1", "charger_id": "charger-7", "check_balance": False}
    body.update(overrides)
    return await client.post("/api/v1/session/start", json=body)


@pytest.mark.asyncio
async def test_start_and_stop_session(client):
    resp = await start(client)
    assert resp.status_code == 200
    session_id = resp.json()["session_id"]
    assert resp.json()["message"] == "Charging session started successfully (balance check skipped)"

    resp = await client.post("/api/v1/session/stop", json={"session_id": session_id})
    assert resp.status_code == 200
    data = resp.json()
    assert Decimal(data["final_cost"]) == Decimal("0.50")
    assert data["payment_url"].startswith("https://checkout.example.com/")

    resp = await client.get(f"/api/v1/payment/link/{session_id}")
    assert resp.status_code == 200
    assert resp.json()["payment_link_id"] == data["payment_link_id"]
    assert resp.json()["status"] == "PENDING"


@pytest.mark.asyncio
async def test_insufficient_balance_is_400(client, oracle):
    oracle.stable = Decimal("5.00")
    resp = await start(client, check_balance=True, wallet_address=WALLET, chain="polygon", expected_max_cost="10.00")

    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "INSUFFICIENT_BALANCE"
    assert body["message"] == "Insufficient balance. Required: $10.00, Available: $5.00"
    assert body["details"]["balance_check_id"]


@pytest.mark.asyncio
async def test_missing_balance_inputs_is_400(client):
    resp = await start(client, check_balance=True)
    assert resp.status_code == 400
    assert resp.json()["error"] == "INVALID_ARGUMENT"


@pytest.mark.asyncio
async def test_unknown_session_is_404(client):
    resp = await client.post("/api/v1/session/stop", json={"session_id": "missing"})
    assert resp.status_code == 404
    assert resp.json()["error"] == "NOT_FOUND"

    resp = await client.get("/api/v1/payment/link/missing")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_recreate_after_payment_is_refused(client, services):
    session_id = (await start(client)).json()["session_id"]
    stopped = (await client.post("/api/v1/session/stop", json={"session_id": session_id, "final_cost": "3.00"})).json()
    link = await services.payments.links.get(stopped["payment_link_id"])
    await services.payments.apply_status(link.external_ref, PaymentStatus.PAID)

    resp = await client.post("/api/v1/payment/recreate-link", json={"session_id": session_id})
    assert resp.status_code == 400
    assert resp.json()["error"] == "ALREADY_PAID"

    resp = await client.post("/api/v1/payment/refund", json={"session_id": session_id})
    assert resp.status_code == 200
    assert resp.json()["refund_id"] == "re_test_1"


@pytest.mark.asyncio
async def test_precheck(client):
    resp = await client.post("/api/v1/payment/precheck", json={"address": WALLET, "chain": "base", "amount_usd": "10"})
    assert resp.status_code == 200
    assert resp.json()["can_pay"] is True
    assert resp.json()["balance_check_id"] is None

    resp = await client.post(
        "/api/v1/payment/precheck",
        json={"address": WALLET, "chain": "base", "amount_usd": "10", "user_id": "user-1"},
    )
    check_id = resp.json()["balance_check_id"]
    assert resp.json()["balance_status"] == "SUFFICIENT"

    resp = await client.get(f"/api/v1/user/balance-check/{check_id}")
    assert resp.status_code == 200
    assert resp.json()["check_metadata"]["source"] == "precheck-api"

    resp = await client.get("/api/v1/user/user-1/balance-checks")
    assert [c["id"] for c in resp.json()] == [check_id]

    resp = await client.get(
        "/api/v1/user/recent-balance-check/user-1",
        params={"wallet_address": WALLET, "chain": "base", "requested_amount": "10"},
    )
    assert resp.json()["exists"] is True
    assert resp.json()["balance_check"]["id"] == check_id


@pytest.mark.asyncio
async def test_precheck_rejects_tiny_amounts(client):
    resp = await client.post("/api/v1/payment/precheck", json={"address": WALLET, "chain": "base", "amount_usd": "0"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_user_sessions(client):
    session_id = (await start(client)).json()["session_id"]
    await client.post("/api/v1/session/stop", json={"session_id": session_id})

    resp = await client.get("/api/v1/user/user-1/sessions")
    assert resp.status_code == 200
    sessions = resp.json()
    assert sessions[0]["id"] == session_id
    assert sessions[0]["status"] == "COMPLETED"
    assert len(sessions[0]["payment_links"]) == 1


@pytest.mark.asyncio
async def test_api_key_required_when_configured(client, monkeypatch):
    monkeypatch.setattr(settings, "service_api_key", "s3cret")

    assert (await start(client)).status_code == 401
    resp = await client.post(
        "/api/v1/session/start",
        json={"user_id": "user-1", "charger_id": "charger-7", "check_balance": False},
        headers={"X-API-KEY": "s3cret"},
    )
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_webhook_acknowledges_verified_event(client, provider):
    provider.verify_and_parse.return_value = WebhookEvent(
        id="evt_1", kind=EventKind.CHECKOUT_COMPLETED, provider_type="checkout.session.completed",
        external_ref="cs_unknown", data={},
    )
    resp = await client.post("/api/v1/webhooks/stripe", content=b"{}", headers={"stripe-signature": "t=1,v1=abc"})

    assert resp.status_code == 200
    assert resp.json() == {"received": True}
    provider.verify_and_parse.assert_awaited_once_with(b"{}", "t=1,v1=abc")


@pytest.mark.asyncio
async def test_webhook_rejections(client, provider):
    resp = await client.post("/api/v1/webhooks/stripe", content=b"{}")
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Missing signature"

    resp = await client.post("/api/v1/webhooks/stripe", content=b"", headers={"stripe-signature": "t=1,v1=abc"})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Missing payload"

    resp = await client.post("/api/v1/webhooks/paypal", content=b"{}", headers={"x-signature": "abc"})
    assert resp.status_code == 404

    provider.verify_and_parse.side_effect = AuthenticationError("Invalid Stripe signature")
    resp = await client.post("/api/v1/webhooks/stripe", content=b"{}", headers={"stripe-signature": "t=1,v1=bad"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "AUTHENTICATION_ERROR", "message": "Invalid Stripe signature"}


@pytest.mark.asyncio
async def test_precheck_oracle_crash_is_a_soft_answer(client, oracle):
    oracle.error = RuntimeError("boom")

    resp = await client.post("/api/v1/payment/precheck", json={"address": WALLET, "chain": "base", "amount_usd": "10"})
    assert resp.status_code == 200
    assert resp.json()["can_pay"] is False
    assert resp.json()["error"] == "boom"


@pytest.mark.asyncio
async def test_recreate_for_cancelled_session_is_400(client):
    session_id = (await start(client)).json()["session_id"]
    assert (await client.post("/api/v1/session/cancel", json={"session_id": session_id})).status_code == 200

    resp = await client.post("/api/v1/payment/recreate-link", json={"session_id": session_id})
    assert resp.status_code == 400
    assert resp.json()["error"] == "INVALID_STATE"


@pytest.mark.asyncio
async def test_webhook_non_utf8_body_is_400(test_settings, session_factory, oracle):
    stripe_provider = StripeCheckoutProvider(api_key="sk_test_123", webhook_secret=STRIPE_WEBHOOK_SECRET)
    services = build_services(
        test_settings, session_factory, oracle=oracle,
        providers=ProviderRegistry([stripe_provider], default="stripe"),
    )
    app = create_app(services=services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        resp = await ac.post(
            "/api/v1/webhooks/stripe",
            content=b"\xff\xfe\x00garbage",
            headers={"stripe-signature": "t=1,v1=abc"},
        )

    assert resp.status_code == 400
    assert resp.json()["error"] == "MALFORMED_PAYLOAD"


@pytest.mark.asyncio
async def test_webhook_database_failure_is_5xx(services, provider, monkeypatch):
    provider.verify_and_parse.return_value = WebhookEvent(
        id="evt_1", kind=EventKind.CHECKOUT_COMPLETED, provider_type="checkout.session.completed",
        external_ref="cs_test_1", data={},
    )
    locked = OperationalError("SELECT payment_links", {}, Exception("database is locked"))
    monkeypatch.setattr(services.payments.links, "by_external_ref", AsyncMock(side_effect=locked))

    app = create_app(services=services)
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        resp = await ac.post("/api/v1/webhooks/stripe", content=b"{}", headers={"stripe-signature": "t=1,v1=abc"})

    assert resp.status_code == 500
    assert resp.text != '{"received":true}'
