"""Execution record, admin override and audit schemas"""
from pydantic import BaseModel, field_validator
from typing import Any, Dict, List, Optional
from datetime import date, datetime
from decimal import Decimal

from api.schemas.pledges import PledgeResponse
from pledgehub.log_config import mask_account_id


class ExecutionRecordResponse(BaseModel):
    id: str
    pledge_id: str
    session_id: str
    brokerage_account_id: str
    stock_symbol: str
    side: str
    pledged_qty: int
    executed_qty: int
    executed_price: Optional[Decimal] = None
    total_execution_value: Decimal
    platform_commission: Decimal
    commission_rate: Optional[Decimal] = None
    realized_pl: Optional[Decimal] = None
    net_amount: Decimal
    status: str
    broker_order_id: Optional[str] = None
    executed_at: Optional[datetime] = None
    settlement_date: Optional[date] = None
    error_message: Optional[str] = None

    @field_validator("brokerage_account_id")
    @classmethod
    def mask_account(cls, v: str) -> str:
        return mask_account_id(v)

    class Config:
        from_attributes = True


class ExecuteNowRequest(BaseModel):
    market_price: Decimal
    broker_order_id: Optional[str] = None


class ChangeTargetRequest(BaseModel):
    new_price: Decimal


class TriggerAutoSellRequest(BaseModel):
    market_price: Decimal


class PositionsResponse(BaseModel):
    auto_target: List[PledgeResponse]
    admin_managed: List[PledgeResponse]


class AuditLogResponse(BaseModel):
    sequence: int
    id: str
    actor_id: Optional[str] = None
    actor_role: str
    action: str
    target_type: str
    target_pledge_id: Optional[str] = None
    target_session_id: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    success: bool
    error_message: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True
