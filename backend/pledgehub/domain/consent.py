"""
Structured consent, risk disclosure and auto-sell records.

These are parsed once at the boundary and stored as JSON columns on the
pledge. Consumers load them back through ``from_column`` instead of
reading raw dictionaries.
"""

import hashlib
import json
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from pledgehub.domain.states import ExecutionType

RISK_CATEGORIES = ("market", "execution", "financial")


class RiskAcknowledgment(BaseModel):
    """Explicit acknowledgment of the fixed risk disclosure categories."""

    acknowledged: bool = False
    categories: List[str] = Field(default_factory=list)
    acknowledged_at: Optional[datetime] = None
    disclosure_version: str = "1.0"

    @field_validator("categories")
    @classmethod
    def lower_categories(cls, v: List[str]) -> List[str]:
        return sorted({c.strip().lower() for c in v})

    def missing_categories(self) -> List[str]:
        return [c for c in RISK_CATEGORIES if c not in self.categories]

    def is_complete(self, required_version: str) -> bool:
        return (
            self.acknowledged
            and not self.missing_categories()
            and self.acknowledged_at is not None
            and self.disclosure_version == required_version
        )


class DigitalConsent(BaseModel):
    """Signed consent: three clauses plus a signature artifact."""

    agreed_to_terms: bool = False
    agreed_to_risks: bool = False
    agreed_to_execution: bool = False
    signature: str = ""
    signed_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def missing_clauses(self) -> List[str]:
        missing = []
        if not self.agreed_to_terms:
            missing.append("terms")
        if not self.agreed_to_risks:
            missing.append("risk")
        if not self.agreed_to_execution:
            missing.append("execution")
        if not self.signature.strip():
            missing.append("signature")
        return missing

    def is_complete(self) -> bool:
        return not self.missing_clauses()


class AutoSellConfig(BaseModel):
    """Sell-leg instructions for a buy/sell cycle pledge."""

    enabled: bool = True
    has_target: bool = False
    sell_price: Optional[Decimal] = None
    sell_qty: Optional[int] = None
    execution_type: Literal["auto_target", "admin_managed"] = ExecutionType.ADMIN_MANAGED

    @model_validator(mode="after")
    def check_target(self) -> "AutoSellConfig":
        if self.execution_type == ExecutionType.AUTO_TARGET:
            if self.sell_price is None or self.sell_price <= 0:
                raise ValueError("auto_target requires a positive sell_price")
            self.has_target = True
        else:
            self.has_target = False
            self.sell_price = None
        return self

    @classmethod
    def for_target(cls, sell_price: Optional[Decimal], sell_qty: int) -> "AutoSellConfig":
        """Build the config chosen at submission: a target price means auto_target."""
        if sell_price is not None:
            return cls(has_target=True, sell_price=sell_price, sell_qty=sell_qty,
                       execution_type=ExecutionType.AUTO_TARGET)
        return cls(sell_qty=sell_qty, execution_type=ExecutionType.ADMIN_MANAGED)

    @classmethod
    def from_column(cls, value: Optional[Dict[str, Any]]) -> Optional["AutoSellConfig"]:
        if not value:
            return None
        return cls.model_validate(value)

    def to_column(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


def _canonical(value: Any) -> Any:
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _canonical(v) for k, v in value.items()}
    return value


def compute_consent_hash(
    consent: DigitalConsent,
    session_id: str,
    stock_symbol: str,
    qty: int,
    price_target: Decimal,
    fee: Decimal,
    timestamp: datetime,
) -> str:
    """SHA-256 over the canonical JSON of the signed consent and pledge terms."""
    payload = {
        "agreed_to_terms": consent.agreed_to_terms,
        "agreed_to_risks": consent.agreed_to_risks,
        "agreed_to_execution": consent.agreed_to_execution,
        "signature": consent.signature,
        "session_id": session_id,
        "stock_symbol": stock_symbol,
        "qty": qty,
        "price_target": price_target,
        "fee": fee,
        "timestamp": timestamp,
    }
    encoded = json.dumps(_canonical(payload), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()
