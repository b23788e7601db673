import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Column, DateTime
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel

from .utils import as_utc, utcnow


def new_id() -> str:
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC timestamps on every backend.

    SQLite drops the offset on write, so values are normalized to UTC before
    binding and tagged as UTC again when read back.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return as_utc(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return as_utc(value)


def created_column() -> Column:
    return Column(UTCDateTime, nullable=False, index=True)


def updated_column() -> Column:
    return Column(UTCDateTime, nullable=False)


class ChargingSessionStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class BalanceCheckStatus(str, Enum):
    SUFFICIENT = "SUFFICIENT"
    INSUFFICIENT = "INSUFFICIENT"
    ERROR = "ERROR"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    REFUNDED = "REFUNDED"


# target status -> statuses it may be entered from
ALLOWED_PAYMENT_TRANSITIONS = {
    PaymentStatus.PAID: {PaymentStatus.PENDING},
    PaymentStatus.EXPIRED: {PaymentStatus.PENDING},
    PaymentStatus.FAILED: {PaymentStatus.PENDING},
    PaymentStatus.REFUNDED: {PaymentStatus.PAID},
}


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return current in ALLOWED_PAYMENT_TRANSITIONS.get(target, set())


class ChargingSession(SQLModel, table=True):
    __tablename__ = "charging_sessions"

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(index=True, max_length=255)
    charger_id: str = Field(max_length=255)
    status: ChargingSessionStatus = Field(default=ChargingSessionStatus.IN_PROGRESS, index=True)
    final_cost: Decimal = Field(default=Decimal("0"), max_digits=10, decimal_places=2)
    session_metadata: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_column=created_column())
    updated_at: datetime = Field(default_factory=utcnow, sa_column=updated_column())


class BalanceCheck(SQLModel, table=True):
    __tablename__ = "balance_checks"

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(index=True, max_length=255)
    wallet_address: str = Field(max_length=255)
    chain: str = Field(max_length=50)
    requested_amount: Decimal = Field(max_digits=18, decimal_places=8)
    actual_balance: Decimal = Field(default=Decimal("0"), max_digits=18, decimal_places=8)
    status: BalanceCheckStatus = Field(index=True)
    provider: str = Field(max_length=50)
    error_message: Optional[str] = None
    check_metadata: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_column=created_column())
    updated_at: datetime = Field(default_factory=utcnow, sa_column=updated_column())


class PaymentLink(SQLModel, table=True):
    __tablename__ = "payment_links"

    id: str = Field(default_factory=new_id, primary_key=True)
    session_id: str = Field(foreign_key="charging_sessions.id", index=True)
    external_ref: str = Field(unique=True, index=True)
    payment_url: str
    amount: Decimal = Field(max_digits=10, decimal_places=2)
    currency: str = "usd"
    provider: str = Field(max_length=50)
    status: PaymentStatus = Field(default=PaymentStatus.PENDING, index=True)
    expires_at: datetime = Field(sa_column=Column(UTCDateTime, nullable=False))
    payment_intent_ref: Optional[str] = None
    link_metadata: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_column=created_column())
    updated_at: datetime = Field(default_factory=utcnow, sa_column=updated_column())

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return as_utc(now or utcnow()) > as_utc(self.expires_at)
