"""Pledge session schemas"""
from pydantic import BaseModel
from typing import Dict, List, Optional
from datetime import datetime
from decimal import Decimal


class SessionCreate(BaseModel):
    stock_symbol: str
    stock_name: Optional[str] = None
    description: Optional[str] = None
    session_mode: str  # buy_only, sell_only, buy_sell_cycle
    execution_rule: str = "manual"
    session_start: datetime
    session_end: datetime
    min_qty: Optional[int] = 1
    max_qty: Optional[int] = None
    capacity: Optional[int] = None
    convenience_fee_type: str = "flat"
    convenience_fee_amount: Decimal = Decimal("0")
    commission_rate_override: Optional[Decimal] = None
    allow_amo: bool = False
    stock_price: Optional[Decimal] = None


class SessionUpdate(BaseModel):
    """Partial update; only fields present in the request are applied."""
    stock_name: Optional[str] = None
    description: Optional[str] = None
    session_start: Optional[datetime] = None
    session_end: Optional[datetime] = None
    min_qty: Optional[int] = None
    max_qty: Optional[int] = None
    capacity: Optional[int] = None
    convenience_fee_type: Optional[str] = None
    convenience_fee_amount: Optional[Decimal] = None
    commission_rate_override: Optional[Decimal] = None
    allow_amo: Optional[bool] = None
    stock_price: Optional[Decimal] = None
    execution_rule: Optional[str] = None
    execution_notes: Optional[str] = None


class SessionStatusChange(BaseModel):
    status: str


class SessionCancel(BaseModel):
    reason: Optional[str] = None


class SessionClone(BaseModel):
    session_start: datetime
    session_end: datetime


class SessionExecute(BaseModel):
    executed_price: Optional[Decimal] = None


class SessionResponse(BaseModel):
    id: str
    stock_symbol: str
    stock_name: Optional[str] = None
    description: Optional[str] = None
    session_mode: str
    execution_rule: str
    status: str
    session_start: datetime
    session_end: datetime
    min_qty: Optional[int] = None
    max_qty: Optional[int] = None
    capacity: Optional[int] = None
    convenience_fee_type: str
    convenience_fee_amount: Decimal
    commission_rate_override: Optional[Decimal] = None
    allow_amo: bool
    stock_price: Optional[Decimal] = None
    last_executed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SessionStatsResponse(BaseModel):
    session_id: str
    unique_pledgers_count: int
    total_pledges: int
    total_pledge_value: Decimal
    total_qty: int
    buy_count: int
    sell_count: int
    executing_count: int
    capacity: Optional[int] = None
    fill_percentage: Optional[float] = None
    is_filling_up: bool


class SessionsSnapshotResponse(BaseModel):
    dataset_hash: str
    sessions: List[dict]


class ExecutionSummaryResponse(BaseModel):
    session_id: str
    phase: str
    executed: List[str]
    failed: List[Dict[str, str]]
    skipped: List[str]
    session_status: Optional[str] = None
