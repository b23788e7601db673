from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .chains import Chain
from .models import BalanceCheckStatus, ChargingSessionStatus, PaymentStatus


# --- precheck -------------------------------------------------------------

class Shortfall(BaseModel):
    token: str = "0"
    native: str = "0"


class PrecheckResult(BaseModel):
    can_pay: bool
    stable_balance: Decimal = Decimal("0")
    native_balance: Decimal = Decimal("0")
    estimated_gas: Decimal = Decimal("0")
    required_amount: Decimal
    shortfall: Optional[Shortfall] = None
    error: Optional[str] = None


class PrecheckIn(BaseModel):
    address: str = Field(..., description="Public wallet address")
    chain: Chain
    amount_usd: Decimal = Field(..., ge=Decimal("0.01"))
    user_id: Optional[str] = Field(default=None, description="Records a balance check when given")


class PrecheckOut(PrecheckResult):
    balance_check_id: Optional[str] = None
    balance_status: Optional[BalanceCheckStatus] = None


class PrecheckRecord(BaseModel):
    result: PrecheckResult
    balance_check_id: str
    status: BalanceCheckStatus


# --- records --------------------------------------------------------------

class BalanceCheckOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    wallet_address: str
    chain: str
    requested_amount: Decimal
    actual_balance: Decimal
    status: BalanceCheckStatus
    provider: str
    error_message: Optional[str] = None
    check_metadata: Optional[dict] = None
    created_at: datetime


class PaymentLinkOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    session_id: str
    payment_url: str
    amount: Decimal
    currency: str
    provider: str
    status: PaymentStatus
    expires_at: datetime
    created_at: datetime


class PaymentLinkView(BaseModel):
    session_id: str
    payment_link_id: str
    payment_url: str
    amount: Decimal
    status: PaymentStatus
    expires_at: datetime
    is_expired: bool


class SessionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    charger_id: str
    status: ChargingSessionStatus
    final_cost: Decimal
    session_metadata: Optional[dict] = None
    created_at: datetime
    updated_at: datetime
    payment_links: List[PaymentLinkOut] = []


# --- session lifecycle ----------------------------------------------------

class StartSessionIn(BaseModel):
    user_id: str = Field(..., min_length=1)
    charger_id: str = Field(..., min_length=1)
    check_balance: bool = True
    wallet_address: Optional[str] = None
    chain: Optional[Chain] = None
    expected_max_cost: Optional[Decimal] = Field(default=None, ge=0)
    metadata: Optional[dict] = None


class StartSessionOut(BaseModel):
    success: bool = True
    session_id: str
    user_id: str
    charger_id: str
    balance_check_id: Optional[str] = None
    balance_status: Optional[BalanceCheckStatus] = None
    message: str


class StopSessionIn(BaseModel):
    session_id: str = Field(..., min_length=1)
    final_cost: Optional[Decimal] = Field(default=None, ge=0)
    provider: Optional[str] = None


class StopSessionOut(BaseModel):
    success: bool = True
    session_id: str
    user_id: str
    final_cost: Decimal
    payment_url: str
    amount: Decimal
    payment_link_id: str
    expires_at: datetime


class CancelSessionIn(BaseModel):
    session_id: str = Field(..., min_length=1)
    reason: Optional[str] = None


class CancelSessionOut(BaseModel):
    success: bool = True
    session_id: str
    status: ChargingSessionStatus
    message: str


class SessionRef(BaseModel):
    session_id: str = Field(..., min_length=1)


class RecreateLinkOut(BaseModel):
    success: bool = True
    session_id: str
    user_id: str
    payment_url: str
    amount: Decimal
    payment_link_id: str
    expires_at: datetime
    previous_link_expired: bool


class RefundOut(BaseModel):
    success: bool = True
    session_id: str
    refund_id: str
    amount: Decimal
    message: str = "Refund processed successfully"


class RecentCheckOut(BaseModel):
    exists: bool
    balance_check: Optional[BalanceCheckOut] = None
    message: str
