import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from ..errors import AlreadyPaid, InvalidState, NotFound, PaymentServiceError, TransportError
from ..models import PaymentLink, PaymentStatus, can_transition
from ..repositories import PaymentLinkRepository
from ..schemas import PaymentLinkView, RefundOut
from ..utils import from_minor_units, money, to_minor_units, utcnow
from .checkout import CheckoutRequest, CheckoutState, ProviderRegistry

logger = logging.getLogger(__name__)

SNAPSHOT_STATUS = {
    CheckoutState.COMPLETE: PaymentStatus.PAID,
    CheckoutState.EXPIRED: PaymentStatus.EXPIRED,
}


@dataclass(frozen=True)
class Superseded:
    previous: PaymentLink
    # pending links this call moved to EXPIRED
    expired: int


def view(link: PaymentLink) -> PaymentLinkView:
    return PaymentLinkView(
        session_id=link.session_id,
        payment_link_id=link.id,
        payment_url=link.payment_url,
        amount=link.amount,
        status=link.status,
        expires_at=link.expires_at,
        is_expired=link.is_expired(),
    )


class PaymentLinkManager:
    """Creates, supersedes, refunds and reconciles checkout-backed payment links."""

    def __init__(self, providers: ProviderRegistry, links: PaymentLinkRepository,
                 success_url: str, cancel_url: str, currency: str = "usd",
                 timeout: float = 20.0):
        self.providers = providers
        self.links = links
        self.success_url = success_url
        self.cancel_url = cancel_url
        self.currency = currency
        self.timeout = timeout

    async def _bounded(self, coro, what: str):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"Checkout provider timed out during {what}") from e

    async def create_link(self, session_id: str, amount_usd: Decimal, expiry_minutes: int = 30,
                          allow_card_fallback: bool = True, metadata: Optional[dict] = None,
                          provider: Optional[str] = None) -> PaymentLink:
        checkout_provider = self.providers.get(provider)
        amount = money(amount_usd)
        await self._expire_pending(session_id)

        expires_at = utcnow() + timedelta(minutes=expiry_minutes)
        methods = ["crypto", "card"] if allow_card_fallback else ["crypto"]
        logger.info(
            "Creating %s payment link for session %s, amount: $%s, methods: %s",
            checkout_provider.name, session_id, amount, ",".join(methods),
        )
        checkout = await self._bounded(
            checkout_provider.create_checkout(CheckoutRequest(
                amount_minor_units=to_minor_units(amount),
                currency=self.currency,
                session_ref=session_id,
                success_url=self.success_url,
                cancel_url=self.cancel_url,
                expires_at=expires_at,
                payment_methods=methods,
                metadata={k: str(v) for k, v in (metadata or {}).items() if v is not None},
            )),
            "checkout creation",
        )

        link = await self.links.add(PaymentLink(
            session_id=session_id,
            external_ref=checkout.external_ref,
            payment_url=checkout.url,
            amount=amount,
            currency=self.currency,
            provider=checkout_provider.name,
            status=PaymentStatus.PENDING,
            expires_at=checkout.expires_at,
            payment_intent_ref=checkout.payment_intent_ref,
            link_metadata={
                **(metadata or {}),
                "expiry_minutes": expiry_minutes,
                "created_at": utcnow().isoformat(),
            },
        ))
        logger.info("Payment link %s created for session %s, expires at: %s", link.id, session_id, link.expires_at)
        return link

    async def _expire_pending(self, session_id: str) -> int:
        expired = 0
        for link in await self.links.list_for_session(session_id, status=PaymentStatus.PENDING):
            if await self.links.transition(link.id, [PaymentStatus.PENDING], PaymentStatus.EXPIRED):
                expired += 1
                logger.info("Expired previous payment link: %s for session: %s", link.id, session_id)
                await self._expire_at_provider(link)
        return expired

    async def _expire_at_provider(self, link: PaymentLink) -> None:
        # best effort: a superseded checkout should not stay payable
        try:
            await self._bounded(self.providers.get(link.provider).expire_checkout(link.external_ref), "expiry")
        except PaymentServiceError as e:
            logger.warning("Could not expire checkout %s at %s: %s", link.external_ref, link.provider, e.message)

    async def supersede(self, session_id: str) -> Optional[Superseded]:
        previous = await self.links.latest_for_session(session_id)
        if previous is None:
            return None
        if previous.status == PaymentStatus.PAID:
            raise AlreadyPaid(f"Session {session_id} has already been paid")
        expired = await self._expire_pending(session_id)
        return Superseded(previous=await self.links.get(previous.id), expired=expired)

    async def get_active_or_latest(self, session_id: str) -> PaymentLinkView:
        link = await self.links.latest_for_session(session_id)
        if link is None:
            raise NotFound(f"No payment link found for session {session_id}")
        return view(link)

    async def refresh_status(self, session_id: str) -> PaymentLinkView:
        link = await self.links.latest_for_session(session_id)
        if link is None:
            raise NotFound(f"No payment link found for session {session_id}")
        if link.status == PaymentStatus.PENDING:
            provider = self.providers.get(link.provider)
            snapshot = await self._bounded(provider.get_checkout(link.external_ref), "status lookup")
            target = SNAPSHOT_STATUS.get(snapshot.state)
            if target is not None:
                await self.apply_status(
                    link.external_ref,
                    target,
                    {"source": "poll", "provider_state": snapshot.state.value},
                    payment_intent_ref=snapshot.payment_intent_ref,
                )
                link = await self.links.get(link.id)
        return view(link)

    async def refund(self, session_id: str) -> RefundOut:
        logger.info("Processing refund for session: %s", session_id)
        link = await self.links.latest_for_session(session_id, status=PaymentStatus.PAID)
        if link is None:
            raise NotFound(f"No paid payment found for session {session_id}")
        if not link.payment_intent_ref:
            raise InvalidState(f"No payment intent found for session {session_id}")

        provider = self.providers.get(link.provider)
        receipt = await self._bounded(provider.refund(link.payment_intent_ref), "refund")

        await self.links.transition(
            link.id, [PaymentStatus.PAID], PaymentStatus.REFUNDED,
            link_metadata={
                **(link.link_metadata or {}),
                "refund_id": receipt.refund_ref,
                "refunded_at": utcnow().isoformat(),
            },
        )
        return RefundOut(
            session_id=session_id,
            refund_id=receipt.refund_ref,
            amount=from_minor_units(receipt.amount_minor_units),
        )

    async def apply_status(self, external_ref: str, new_status: PaymentStatus,
                           metadata: Optional[dict] = None,
                           payment_intent_ref: Optional[str] = None) -> bool:
        """
        Idempotent status write for provider notifications.

        Returns True only when the stored status changed. Unknown references,
        repeats and transitions the link cannot take are logged and ignored.
        """
        logger.info("Updating payment status for checkout: %s to %s", external_ref, new_status.value)
        link = await self.links.by_external_ref(external_ref)
        if link is None:
            logger.warning("Payment link not found for checkout: %s", external_ref)
            return False
        if link.status == new_status:
            logger.info("Payment link %s already %s; nothing to do", link.id, new_status.value)
            return False
        if not can_transition(link.status, new_status):
            logger.warning(
                "Ignoring %s for payment link %s in status %s",
                new_status.value, link.id, link.status.value,
            )
            return False

        values = {"link_metadata": {**(link.link_metadata or {}), **(metadata or {})}}
        if payment_intent_ref and not link.payment_intent_ref:
            values["payment_intent_ref"] = payment_intent_ref
        changed = await self.links.transition(link.id, [link.status], new_status, **values)
        if changed:
            logger.info("Payment link %s moved %s -> %s", link.id, link.status.value, new_status.value)
        return changed
