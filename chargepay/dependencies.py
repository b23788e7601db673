"""
Wiring of long-lived clients and services.

Provider clients are built once per process from ``Settings`` and injected;
routers reach them through ``request.app.state.services``.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from .config import Settings
from .repositories import BalanceCheckRepository, ChargingSessionRepository, PaymentLinkRepository
from .services.balance import BalanceVerifier
from .services.checkout import ProviderRegistry
from .services.mollie import MollieCheckoutProvider
from .services.oracle import BalanceOracle, RpcBalanceOracle
from .services.payment_links import PaymentLinkManager
from .services.sessions import SessionLifecycle
from .services.stripe_checkout import StripeCheckoutProvider
from .services.webhooks import WebhookReconciler

logger = logging.getLogger(__name__)


@dataclass
class Services:
    lifecycle: SessionLifecycle
    verifier: BalanceVerifier
    payments: PaymentLinkManager
    reconciler: WebhookReconciler


def build_providers(settings: Settings) -> ProviderRegistry:
    providers = []
    if settings.stripe_secret_key:
        providers.append(StripeCheckoutProvider(
            api_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            enable_card_payments=settings.stripe_enable_card_payments,
        ))
    if settings.mollie_api_key:
        providers.append(MollieCheckoutProvider(
            api_key=settings.mollie_api_key,
            api_base=settings.mollie_api_base,
            webhook_secret=settings.mollie_webhook_secret,
            webhook_url=settings.mollie_webhook_url,
            timeout=settings.checkout_timeout_seconds,
        ))
    registry = ProviderRegistry(providers, default=settings.checkout_provider)
    logger.info("Checkout providers: %s (default: %s)", ", ".join(registry.keys()) or "none", registry.default)
    return registry


def build_services(settings: Settings, session_factory, oracle: Optional[BalanceOracle] = None,
                   providers: Optional[ProviderRegistry] = None) -> Services:
    sessions = ChargingSessionRepository(session_factory)
    balance_checks = BalanceCheckRepository(session_factory)
    links = PaymentLinkRepository(session_factory)

    if oracle is None:
        oracle = RpcBalanceOracle(settings.rpc_urls, timeout=settings.oracle_timeout_seconds)
    if providers is None:
        providers = build_providers(settings)

    verifier = BalanceVerifier(oracle, balance_checks, timeout=settings.oracle_timeout_seconds)
    payments = PaymentLinkManager(
        providers,
        links,
        success_url=settings.checkout_success_url,
        cancel_url=settings.checkout_cancel_url,
        currency=settings.checkout_currency,
        timeout=settings.checkout_timeout_seconds,
    )
    lifecycle = SessionLifecycle(
        sessions,
        balance_checks,
        links,
        verifier,
        payments,
        default_cost=settings.default_session_cost,
        link_expiry_minutes=settings.session_link_expiry_minutes,
        history_limit=settings.history_limit,
    )
    return Services(
        lifecycle=lifecycle,
        verifier=verifier,
        payments=payments,
        reconciler=WebhookReconciler(providers, payments),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_lifecycle(request: Request) -> SessionLifecycle:
    return get_services(request).lifecycle


def get_verifier(request: Request) -> BalanceVerifier:
    return get_services(request).verifier


def get_payments(request: Request) -> PaymentLinkManager:
    return get_services(request).payments


def get_reconciler(request: Request) -> WebhookReconciler:
    return get_services(request).reconciler
