"""
Brokerage account-id validation and applicant risk scoring.

Pure functions: nothing here touches the database or raises for bad input.
"""

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional, Pattern

MIN_ACCOUNT_ID_LENGTH = 10
MAX_ACCOUNT_ID_LENGTH = 18

BROKER_PATTERNS: Dict[str, Pattern] = {
    "zerodha": re.compile(r"^[A-Z0-9]{16}$"),
    "upstox": re.compile(r"^[0-9]{6}$"),
    "angel_broking": re.compile(r"^[A-Z0-9]{8,16}$"),
    "icicidirect": re.compile(r"^[A-Z]{4}[0-9]{10}$"),
    "hdfcsec": re.compile(r"^[0-9]{10,16}$"),
    "other": re.compile(r"^[A-Z0-9]{10,18}$"),
}

BROKER_NAMES = {
    "zerodha": "Zerodha",
    "upstox": "Upstox",
    "angel_broking": "Angel Broking",
    "icicidirect": "ICICI Direct",
    "hdfcsec": "HDFC Securities",
    "other": "Broker",
}

EXPERIENCE_ADJUSTMENTS = {
    "beginner": -15,
    "intermediate": 0,
    "advanced": 15,
}

INCOME_ADJUSTMENTS = {
    "below_5l": -10,
    "5l_to_10l": -5,
    "10l_to_25l": 5,
    "25l_to_50l": 10,
    "above_50l": 15,
}

BASE_RISK_SCORE = 50

# Advisory per-pledge limits in INR by risk level
ADVISORY_LIMITS = {
    "Low Risk": Decimal("50000"),
    "Medium Risk": Decimal("100000"),
    "High Risk": Decimal("200000"),
}


@dataclass(frozen=True)
class AccountValidation:
    is_valid: bool
    normalized_value: str
    message: str


@dataclass(frozen=True)
class TradingLimit:
    amount: Decimal
    risk_level: str


def normalize_account_id(raw: Optional[str]) -> str:
    """Trim, uppercase, strip non-alphanumerics and cap at 18 characters."""
    if not raw:
        return ""
    cleaned = re.sub(r"[^A-Za-z0-9]", "", raw.strip()).upper()
    return cleaned[:MAX_ACCOUNT_ID_LENGTH]


def broker_pattern(broker: Optional[str]) -> Pattern:
    """Format pattern for a broker; unknown brokers use the generic pattern."""
    return BROKER_PATTERNS.get((broker or "").lower(), BROKER_PATTERNS["other"])


def validate_account_id(raw: Optional[str], broker: Optional[str]) -> AccountValidation:
    """
    Validate a brokerage account id against its broker's format.

    Both the broker pattern and the universal 10-18 character bound must
    hold. Upstox's six-digit client codes therefore never pass on their own;
    users link the full demat id instead.
    """
    normalized = normalize_account_id(raw)
    key = (broker or "other").lower()
    name = BROKER_NAMES.get(key, BROKER_NAMES["other"])

    if not normalized:
        return AccountValidation(False, normalized, "Account ID is required")

    length_ok = MIN_ACCOUNT_ID_LENGTH <= len(normalized) <= MAX_ACCOUNT_ID_LENGTH
    if length_ok and broker_pattern(key).match(normalized):
        return AccountValidation(True, normalized, f"Valid {name} Account ID format")

    return AccountValidation(False, normalized, f"Please enter a valid {name} Account ID")


def calculate_risk_score(experience: Optional[str], income: Optional[str]) -> int:
    """Risk score in [0, 100]: base 50 adjusted by experience and income band."""
    score = BASE_RISK_SCORE
    score += EXPERIENCE_ADJUSTMENTS.get((experience or "").lower(), 0)
    score += INCOME_ADJUSTMENTS.get((income or "").lower(), 0)
    return max(0, min(100, score))


def recommended_trading_limit(risk_score: int) -> TradingLimit:
    """Advisory per-pledge limit for a risk score. Informational only."""
    if risk_score < 50:
        label = "Low Risk"
    elif risk_score < 70:
        label = "Medium Risk"
    else:
        label = "High Risk"
    return TradingLimit(amount=ADVISORY_LIMITS[label], risk_level=label)


def exceeds_recommended_limit(risk_score: int, pledge_value: Decimal) -> bool:
    return Decimal(pledge_value) > recommended_trading_limit(risk_score).amount
