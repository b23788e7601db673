"""
Charging-session lifecycle.

IN_PROGRESS -> COMPLETED | CANCELLED; both end states are terminal. A
session is only created after a SUFFICIENT balance check (or when the caller
opts out of checking), and ``final_cost`` is written exactly once, together
with the move to COMPLETED.
"""

import logging
from decimal import Decimal
from typing import List, Optional

from ..chains import Chain
from ..errors import BalanceCheckFailed, InsufficientBalance, InvalidArgument, InvalidState, NotFound
from ..models import BalanceCheck, BalanceCheckStatus, ChargingSession, ChargingSessionStatus
from ..repositories import BalanceCheckRepository, ChargingSessionRepository, PaymentLinkRepository
from ..schemas import (
    BalanceCheckOut,
    CancelSessionOut,
    PaymentLinkOut,
    PaymentLinkView,
    RecentCheckOut,
    RecreateLinkOut,
    RefundOut,
    SessionOut,
    StartSessionOut,
    StopSessionOut,
)
from ..utils import money
from .balance import BalanceVerifier
from .payment_links import PaymentLinkManager

logger = logging.getLogger(__name__)


class SessionLifecycle:

    def __init__(self, sessions: ChargingSessionRepository, balance_checks: BalanceCheckRepository,
                 links: PaymentLinkRepository, verifier: BalanceVerifier, payments: PaymentLinkManager,
                 default_cost: Decimal = Decimal("0.50"), link_expiry_minutes: int = 24 * 60,
                 history_limit: int = 10):
        self.sessions = sessions
        self.balance_checks = balance_checks
        self.links = links
        self.verifier = verifier
        self.payments = payments
        self.default_cost = money(default_cost)
        self.link_expiry_minutes = link_expiry_minutes
        self.history_limit = history_limit

    async def _get_session(self, session_id: str) -> ChargingSession:
        session = await self.sessions.get(session_id)
        if session is None:
            raise NotFound(f"Session {session_id} not found")
        return session

    async def start_session(self, user_id: str, charger_id: str, check_balance: bool = True,
                            wallet_address: Optional[str] = None, chain: Optional[Chain] = None,
                            expected_max_cost: Optional[Decimal] = None,
                            metadata: Optional[dict] = None) -> StartSessionOut:
        logger.info(
            "Starting new charging session for user: %s, charger: %s, check_balance: %s",
            user_id, charger_id, check_balance,
        )
        record = None
        if check_balance:
            if not wallet_address or chain is None or expected_max_cost is None:
                raise InvalidArgument(
                    "wallet_address, chain, and expected_max_cost are required when check_balance is true"
                )
            record = await self.verifier.precheck_and_record(
                user_id, wallet_address, chain, expected_max_cost, metadata,
            )
            if record.status == BalanceCheckStatus.INSUFFICIENT:
                raise InsufficientBalance(
                    required=money(expected_max_cost),
                    available=money(record.result.stable_balance),
                    balance_check_id=record.balance_check_id,
                )
            if record.status == BalanceCheckStatus.ERROR:
                raise BalanceCheckFailed(
                    f"Balance check failed: {record.result.error}",
                    details={"balance_check_id": record.balance_check_id},
                )
        else:
            logger.info("Skipping balance check for user: %s", user_id)

        session_metadata = {**(metadata or {}), "balance_check_skipped": not check_balance}
        if record is not None:
            session_metadata.update({
                "balance_check_id": record.balance_check_id,
                "wallet_address": wallet_address,
                "chain": chain.value,
            })

        session = await self.sessions.add(ChargingSession(
            user_id=user_id,
            charger_id=charger_id,
            status=ChargingSessionStatus.IN_PROGRESS,
            final_cost=Decimal("0"),
            session_metadata=session_metadata,
        ))
        return StartSessionOut(
            session_id=session.id,
            user_id=session.user_id,
            charger_id=session.charger_id,
            balance_check_id=record.balance_check_id if record else None,
            balance_status=record.status if record else None,
            message=(
                "Charging session started successfully with sufficient balance"
                if check_balance else
                "Charging session started successfully (balance check skipped)"
            ),
        )

    async def stop_session(self, session_id: str, final_cost: Optional[Decimal] = None,
                           provider: Optional[str] = None) -> StopSessionOut:
        logger.info("Stopping charging session: %s", session_id)
        session = await self._get_session(session_id)
        if session.status != ChargingSessionStatus.IN_PROGRESS:
            raise InvalidState(
                f"Session {session_id} is not in progress. Current status: {session.status.value}"
            )

        cost = money(final_cost) if final_cost is not None else self.default_cost
        # completed before the checkout exists; recreate_link recovers a failed checkout
        completed = await self.sessions.transition(
            session_id, [ChargingSessionStatus.IN_PROGRESS], ChargingSessionStatus.COMPLETED,
            final_cost=cost,
        )
        if not completed:
            current = await self._get_session(session_id)
            raise InvalidState(
                f"Session {session_id} is not in progress. Current status: {current.status.value}"
            )

        link = await self.payments.create_link(
            session_id,
            cost,
            expiry_minutes=self.link_expiry_minutes,
            allow_card_fallback=True,
            metadata={
                "user_id": session.user_id,
                "charger_id": session.charger_id,
                "final_cost": str(cost),
                "created_by": "stop_session",
            },
            provider=provider,
        )
        return StopSessionOut(
            session_id=session.id,
            user_id=session.user_id,
            final_cost=cost,
            payment_url=link.payment_url,
            amount=link.amount,
            payment_link_id=link.id,
            expires_at=link.expires_at,
        )

    async def cancel_session(self, session_id: str, reason: Optional[str] = None) -> CancelSessionOut:
        logger.info("Cancelling charging session: %s", session_id)
        session = await self._get_session(session_id)
        cancelled = session.status == ChargingSessionStatus.IN_PROGRESS and await self.sessions.transition(
            session_id, [ChargingSessionStatus.IN_PROGRESS], ChargingSessionStatus.CANCELLED,
            session_metadata={**(session.session_metadata or {}), "cancel_reason": reason},
        )
        if not cancelled:
            current = await self._get_session(session_id)
            raise InvalidState(
                f"Session {session_id} is not in progress. Current status: {current.status.value}"
            )
        return CancelSessionOut(
            session_id=session_id,
            status=ChargingSessionStatus.CANCELLED,
            message="Charging session cancelled",
        )

    async def get_payment_link(self, session_id: str) -> PaymentLinkView:
        logger.info("Fetching payment link for session: %s", session_id)
        return await self.payments.get_active_or_latest(session_id)

    async def recreate_link(self, session_id: str) -> RecreateLinkOut:
        logger.info("Recreating payment link for session: %s", session_id)
        session = await self._get_session(session_id)
        if session.status == ChargingSessionStatus.CANCELLED:
            raise InvalidState(
                f"Session {session_id} was cancelled. Current status: {session.status.value}"
            )
        superseded = await self.payments.supersede(session_id)
        previous = superseded.previous if superseded else None

        amount = money(session.final_cost) if session.final_cost else self.default_cost
        link = await self.payments.create_link(
            session_id,
            amount,
            expiry_minutes=self.link_expiry_minutes,
            allow_card_fallback=True,
            metadata={
                "user_id": session.user_id,
                "charger_id": session.charger_id,
                "created_by": "recreate_link",
                "previous_link_id": previous.id if previous else None,
            },
            provider=previous.provider if previous else None,
        )
        return RecreateLinkOut(
            session_id=session.id,
            user_id=session.user_id,
            payment_url=link.payment_url,
            amount=link.amount,
            payment_link_id=link.id,
            expires_at=link.expires_at,
            previous_link_expired=bool(superseded and superseded.expired),
        )

    async def refund_payment(self, session_id: str) -> RefundOut:
        return await self.payments.refund(session_id)

    # queries

    async def balance_check_history(self, user_id: str, limit: Optional[int] = None) -> List[BalanceCheck]:
        logger.info("Getting balance check history for user: %s", user_id)
        return await self.balance_checks.list_by_user(user_id, limit or self.history_limit)

    async def sessions_by_user(self, user_id: str, limit: Optional[int] = None) -> List[SessionOut]:
        logger.info("Getting sessions for user: %s", user_id)
        sessions = await self.sessions.list_by_user(user_id, limit or self.history_limit)
        links = await self.links.list_for_sessions(s.id for s in sessions)
        return [
            SessionOut(
                **s.model_dump(),
                payment_links=[PaymentLinkOut.model_validate(link) for link in links[s.id]],
            )
            for s in sessions
        ]

    async def balance_check_by_id(self, balance_check_id: str) -> BalanceCheck:
        check = await self.balance_checks.get(balance_check_id)
        if check is None:
            raise NotFound(f"Balance check {balance_check_id} not found")
        return check

    async def recent_balance_check(self, user_id: str, wallet_address: str, chain: Chain,
                                   amount: Decimal, within_minutes: int = 5) -> RecentCheckOut:
        check = await self.verifier.recent_sufficient_check(user_id, wallet_address, chain, amount, within_minutes)
        if check is None:
            return RecentCheckOut(
                exists=False,
                message=f"No recent sufficient balance check found within {within_minutes} minutes",
            )
        return RecentCheckOut(
            exists=True,
            balance_check=BalanceCheckOut.model_validate(check),
            message=f"Recent sufficient balance check found from {check.created_at.isoformat()}",
        )
