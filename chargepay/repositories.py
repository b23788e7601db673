"""
Persistence for sessions, balance checks and payment links.

Every method is its own unit of work: it opens a session from the factory,
commits, and hands back detached records (``expire_on_commit=False``).
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, Generic, Iterable, List, Optional, Type, TypeVar

from sqlalchemy import update
from sqlmodel import SQLModel, col, select

from .utils import utcnow
from .models import (
    BalanceCheck,
    BalanceCheckStatus,
    ChargingSession,
    PaymentLink,
    PaymentStatus,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=SQLModel)


class BaseRepository(Generic[T]):
    model: Type[T]

    def __init__(self, session_factory):
        self._sessions = session_factory

    async def add(self, record: T) -> T:
        async with self._sessions() as session:
            session.add(record)
            await session.commit()
            await session.refresh(record)
            return record

    async def get(self, record_id: str) -> Optional[T]:
        async with self._sessions() as session:
            return await session.get(self.model, record_id)

    async def transition(self, record_id: str, sources: Iterable, target, **values) -> bool:
        """
        Compare-and-set the ``status`` column.

        Only a row currently in one of ``sources`` is updated, so concurrent
        writers cannot move a record backwards. Returns whether a row changed.
        """
        model = self.model
        stmt = (
            update(model)
            .where(col(model.id) == record_id, col(model.status).in_(list(sources)))
            .values(status=target, updated_at=utcnow(), **values)
        )
        async with self._sessions() as session:
            res = await session.execute(stmt)
            await session.commit()
        changed = res.rowcount == 1
        if not changed:
            logger.debug("%s %s not moved to %s", model.__name__, record_id, target.value)
        return changed


class ChargingSessionRepository(BaseRepository[ChargingSession]):
    model = ChargingSession

    async def list_by_user(self, user_id: str, limit: int = 10) -> List[ChargingSession]:
        q = (
            select(ChargingSession)
            .where(ChargingSession.user_id == user_id)
            .order_by(col(ChargingSession.created_at).desc())
            .limit(limit)
        )
        async with self._sessions() as session:
            res = await session.exec(q)
            return list(res.all())


class BalanceCheckRepository(BaseRepository[BalanceCheck]):
    model = BalanceCheck

    async def list_by_user(self, user_id: str, limit: int = 10) -> List[BalanceCheck]:
        q = (
            select(BalanceCheck)
            .where(BalanceCheck.user_id == user_id)
            .order_by(col(BalanceCheck.created_at).desc())
            .limit(limit)
        )
        async with self._sessions() as session:
            res = await session.exec(q)
            return list(res.all())

    async def latest_sufficient(self, user_id: str, wallet_address: str, chain: str,
                                requested_amount: Decimal, since: datetime) -> Optional[BalanceCheck]:
        q = (
            select(BalanceCheck)
            .where(
                BalanceCheck.user_id == user_id,
                BalanceCheck.wallet_address == wallet_address,
                BalanceCheck.chain == chain,
                BalanceCheck.requested_amount == requested_amount,
                BalanceCheck.status == BalanceCheckStatus.SUFFICIENT,
                col(BalanceCheck.created_at) > since,
            )
            .order_by(col(BalanceCheck.created_at).desc())
            .limit(1)
        )
        async with self._sessions() as session:
            res = await session.exec(q)
            return res.first()


class PaymentLinkRepository(BaseRepository[PaymentLink]):
    model = PaymentLink

    async def latest_for_session(self, session_id: str,
                                 status: Optional[PaymentStatus] = None) -> Optional[PaymentLink]:
        q = select(PaymentLink).where(PaymentLink.session_id == session_id)
        if status is not None:
            q = q.where(PaymentLink.status == status)
        q = q.order_by(col(PaymentLink.created_at).desc()).limit(1)
        async with self._sessions() as session:
            res = await session.exec(q)
            return res.first()

    async def list_for_session(self, session_id: str,
                               status: Optional[PaymentStatus] = None) -> List[PaymentLink]:
        q = select(PaymentLink).where(PaymentLink.session_id == session_id)
        if status is not None:
            q = q.where(PaymentLink.status == status)
        q = q.order_by(col(PaymentLink.created_at).desc())
        async with self._sessions() as session:
            res = await session.exec(q)
            return list(res.all())

    async def list_for_sessions(self, session_ids: Iterable[str]) -> Dict[str, List[PaymentLink]]:
        ids = list(session_ids)
        grouped: Dict[str, List[PaymentLink]] = {sid: [] for sid in ids}
        if not ids:
            return grouped
        q = (
            select(PaymentLink)
            .where(col(PaymentLink.session_id).in_(ids))
            .order_by(col(PaymentLink.created_at).desc())
        )
        async with self._sessions() as session:
            res = await session.exec(q)
            for link in res.all():
                grouped[link.session_id].append(link)
        return grouped

    async def by_external_ref(self, external_ref: str) -> Optional[PaymentLink]:
        q = select(PaymentLink).where(PaymentLink.external_ref == external_ref)
        async with self._sessions() as session:
            res = await session.exec(q)
            return res.one_or_none()

