"""
Checkout provider capability.

Providers hand back plain dataclasses so the orchestrators never touch SDK
objects. Amounts cross this boundary in minor units (cents).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol

from ..errors import InvalidArgument

logger = logging.getLogger(__name__)


@dataclass
class CheckoutRequest:
    amount_minor_units: int
    currency: str
    session_ref: str
    success_url: str
    cancel_url: str
    expires_at: datetime
    payment_methods: List[str]
    metadata: Dict[str, str] = field(default_factory=dict)
    description: Optional[str] = None


@dataclass
class CheckoutSession:
    external_ref: str
    url: str
    expires_at: datetime
    payment_intent_ref: Optional[str] = None


class CheckoutState(str, Enum):
    OPEN = "open"
    COMPLETE = "complete"
    EXPIRED = "expired"
    FAILED = "failed"


@dataclass
class CheckoutSnapshot:
    external_ref: str
    state: CheckoutState
    payment_intent_ref: Optional[str] = None
    amount_minor_units: Optional[int] = None
    currency: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundReceipt:
    refund_ref: str
    amount_minor_units: int
    currency: Optional[str] = None


class EventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    CHECKOUT_EXPIRED = "checkout_expired"
    PAYMENT_FAILED = "payment_failed"
    CHARGE_REFUNDED = "charge_refunded"
    UNKNOWN = "unknown"


@dataclass
class WebhookEvent:
    """A verified provider notification, normalized."""

    id: str
    kind: EventKind
    provider_type: str
    external_ref: Optional[str] = None
    payment_intent_ref: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


class CheckoutProvider(Protocol):
    name: str

    async def create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        ...

    async def get_checkout(self, external_ref: str) -> CheckoutSnapshot:
        ...

    async def refund(self, payment_intent_ref: str) -> RefundReceipt:
        ...

    async def expire_checkout(self, external_ref: str) -> None:
        ...

    async def verify_and_parse(self, raw_payload: bytes, signature: Optional[str]) -> WebhookEvent:
        ...


class ProviderRegistry:
    """Checkout providers by key, with one default."""

    def __init__(self, providers: Iterable[CheckoutProvider], default: Optional[str] = None):
        self._providers: Dict[str, CheckoutProvider] = {p.name: p for p in providers}
        if default is not None and default not in self._providers:
            logger.warning("Default checkout provider '%s' is not configured", default)
        self.default = default or next(iter(self._providers), None)

    def get(self, key: Optional[str] = None) -> CheckoutProvider:
        key = key or self.default
        provider = self._providers.get(key) if key else None
        if provider is None:
            raise InvalidArgument(
                f"Unsupported payment provider: {key}",
                details={"available": self.keys()},
            )
        return provider

    def keys(self) -> List[str]:
        return list(self._providers)

    def __contains__(self, key: str) -> bool:
        return key in self._providers
