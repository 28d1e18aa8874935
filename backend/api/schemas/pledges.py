"""Pledge, payment and position schemas"""
from pydantic import BaseModel, Field, field_validator
from typing import Any, Dict, Optional
from datetime import datetime
from decimal import Decimal

from pledgehub.domain.consent import DigitalConsent, RiskAcknowledgment
from pledgehub.log_config import mask_account_id


class PledgeCreate(BaseModel):
    session_id: str
    qty: int
    price_target: Decimal
    risk_acknowledgment: RiskAcknowledgment
    digital_consent: DigitalConsent
    auto_sell_price: Optional[Decimal] = None  # buy/sell cycle target; omitted means admin-managed
    payment_method: Optional[str] = None
    client_correlation_id: Optional[str] = Field(default=None, max_length=64)


class PaymentRetry(BaseModel):
    payment_method: Optional[str] = None


class PledgeCancel(BaseModel):
    reason: Optional[str] = None


class PledgeResponse(BaseModel):
    id: str
    session_id: str
    user_id: str
    brokerage_account_id: str
    stock_symbol: str
    qty: int
    price_target: Decimal
    side: str
    status: str
    consent_hash: Optional[str] = None
    convenience_fee_amount: Decimal
    convenience_fee_paid: bool
    convenience_fee_payment_id: Optional[str] = None
    auto_sell_config: Optional[Dict[str, Any]] = None
    auto_sell_paused: bool = False
    client_correlation_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("brokerage_account_id")
    @classmethod
    def mask_account(cls, v: str) -> str:
        return mask_account_id(v)

    class Config:
        from_attributes = True


class PaymentResponse(BaseModel):
    id: str
    pledge_id: Optional[str] = None
    amount: Decimal
    currency: str
    status: str
    payment_ref: Optional[str] = None
    payment_provider: str
    payment_method: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SubmissionResponse(BaseModel):
    pledge: PledgeResponse
    payment: PaymentResponse
    fee: Decimal
    advisory: Optional[Dict[str, Any]] = None


class PositionResponse(BaseModel):
    pledge_id: str
    stock_symbol: str
    status: str
    side: str
    qty: int
    executed_qty: int = 0
    buy_price: Optional[Decimal] = None
    sell_price: Optional[Decimal] = None
    live_price: Optional[Decimal] = None
    unrealized_pl: Optional[Decimal] = None
    realized_pl: Optional[Decimal] = None
    platform_commission: Decimal = Decimal("0")
    commission_rate: Optional[Decimal] = None
    net_amount: Optional[Decimal] = None
    auto_sell: Optional[Dict[str, Any]] = None
    auto_sell_paused: bool = False

    class Config:
        from_attributes = True
