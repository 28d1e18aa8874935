"""Pledge access request schemas"""
from pydantic import BaseModel, field_validator
from typing import Optional
from datetime import datetime

from pledgehub.log_config import mask_account_id


class AccessRequestCreate(BaseModel):
    brokerage_account_id: str
    broker: str
    trading_experience: Optional[str] = None  # beginner, intermediate, advanced
    annual_income_range: Optional[str] = None  # below_5l ... above_50l
    consent_given: bool = False


class AccessReview(BaseModel):
    decision: str  # approved, rejected
    rejection_reason: Optional[str] = None
    admin_notes: Optional[str] = None


class AccessRequestResponse(BaseModel):
    id: str
    user_id: str
    brokerage_account_id: str
    broker: str
    trading_experience: Optional[str] = None
    annual_income_range: Optional[str] = None
    risk_score: int
    status: str
    submitted_at: datetime
    reviewed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    @field_validator("brokerage_account_id")
    @classmethod
    def mask_account(cls, v: str) -> str:
        return mask_account_id(v)

    class Config:
        from_attributes = True
