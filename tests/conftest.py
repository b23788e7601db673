"""
Shared fixtures: an in-memory SQLite database with the real repositories,
plus fake oracle/checkout capabilities so no network is touched.
"""

import asyncio
import hashlib
import hmac
import itertools
import json
import time
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.pool import StaticPool

from chargepay.config import Settings
from chargepay.db import init_db, make_engine, make_session_factory
from chargepay.dependencies import build_services
from chargepay.repositories import BalanceCheckRepository, ChargingSessionRepository, PaymentLinkRepository
from chargepay.services.checkout import CheckoutSession, ProviderRegistry, RefundReceipt
from chargepay.services.oracle import OracleBalances

WALLET = "0x742d35Cc6634C0532925a3b844Bc9e7595f0bEb0"
STRIPE_WEBHOOK_SECRET = "whsec_test_secret"


class FakeOracle:
    name = "fake-oracle"

    def __init__(self, stable="100", native="1", error=None, delay=0.0):
        self.stable = Decimal(stable)
        self.native = Decimal(native)
        self.error = error
        self.delay = delay
        self.calls = 0

    async def get_balances(self, address, chain):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return OracleBalances(stable_balance=self.stable, native_balance=self.native)


class FakeCheckoutProvider:
    def __init__(self, name="stripe", prefix="test"):
        self.name = name
        self.prefix = prefix
        self.requests = []
        self._ids = itertools.count(1)
        self.create_checkout = AsyncMock(side_effect=self._create)
        self.get_checkout = AsyncMock()
        self.refund = AsyncMock(return_value=RefundReceipt(refund_ref="re_test_1", amount_minor_units=550, currency="usd"))
        self.expire_checkout = AsyncMock(return_value=None)
        self.verify_and_parse = AsyncMock()

    async def _create(self, request):
        self.requests.append(request)
        n = next(self._ids)
        return CheckoutSession(
            external_ref=f"cs_{self.prefix}_{n}",
            url=f"https://checkout.example.com/c/pay/cs_{self.prefix}_{n}",
            expires_at=request.expires_at,
            payment_intent_ref=f"pi_{self.prefix}_{n}",
        )


def stripe_signature(payload: str, secret: str = STRIPE_WEBHOOK_SECRET, timestamp=None) -> str:
    timestamp = int(timestamp or time.time())
    digest = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> str:
    return json.dumps({"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}})


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        checkout_provider="stripe",
        oracle_timeout_seconds=1.0,
        checkout_timeout_seconds=1.0,
    )


@pytest_asyncio.fixture
async def engine():
    engine = make_engine("sqlite+aiosqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def session_repo(session_factory):
    return ChargingSessionRepository(session_factory)


@pytest.fixture
def check_repo(session_factory):
    return BalanceCheckRepository(session_factory)


@pytest.fixture
def link_repo(session_factory):
    return PaymentLinkRepository(session_factory)


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def provider():
    return FakeCheckoutProvider()


@pytest.fixture
def services(test_settings, session_factory, oracle, provider):
    registry = ProviderRegistry([provider], default="stripe")
    return build_services(test_settings, session_factory, oracle=oracle, providers=registry)
