"""
Datetime helpers for Pledge Hub.

All timestamps are stored as naive UTC. Settlement dates are computed in
the exchange timezone.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Optional

import pytz

from pledgehub.config import settings


def utc_now() -> datetime:
    """Current time as a naive UTC datetime (matches the stored column type)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware or naive datetime to naive UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def market_date(moment: Optional[datetime] = None, tz_name: Optional[str] = None) -> date:
    """
    Trading date of a UTC moment in the exchange timezone.

    Args:
        moment: Naive UTC datetime (defaults to now)
        tz_name: Timezone name (defaults to settings.market_timezone)
    """
    moment = moment or utc_now()
    tz = pytz.timezone(tz_name or settings.market_timezone)
    return pytz.utc.localize(moment).astimezone(tz).date()


def add_business_days(start: date, days: int) -> date:
    """Add business days to a date, skipping Saturdays and Sundays."""
    current = start
    remaining = days
    while remaining > 0:
        current += timedelta(days=1)
        if current.weekday() < 5:
            remaining -= 1
    return current


def settlement_date(executed_at: Optional[datetime] = None, days: Optional[int] = None) -> date:
    """T+N settlement date for a trade executed at ``executed_at`` (naive UTC)."""
    n = settings.settlement_days if days is None else days
    return add_business_days(market_date(executed_at), n)
