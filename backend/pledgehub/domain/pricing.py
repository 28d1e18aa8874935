"""
Convenience fee and profit/loss arithmetic.

All money is Decimal and rounded half-up to paise (2 places) at the edges.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from pledgehub.domain.states import FeeType

Number = Union[Decimal, int, float, str]

ZERO = Decimal("0")
HUNDRED = Decimal("100")
PAISE = Decimal("0.01")


def to_decimal(value: Optional[Number]) -> Decimal:
    """Convert ints, strings and floats to Decimal without float artifacts."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


def money(value: Number) -> Decimal:
    return to_decimal(value).quantize(PAISE, rounding=ROUND_HALF_UP)


def compute_convenience_fee(qty: int, price_target: Number, fee_type: str, fee_amount: Number) -> Decimal:
    """
    Convenience fee for a pledge.

    ``flat`` charges ``fee_amount`` as is; ``percentage`` charges
    ``qty * price_target * fee_amount / 100``. Never negative.
    """
    amount = to_decimal(fee_amount)
    if fee_type == FeeType.PERCENTAGE:
        fee = Decimal(qty) * to_decimal(price_target) * amount / HUNDRED
    else:
        fee = amount
    return money(max(ZERO, fee))


def pledge_value(qty: int, price: Number) -> Decimal:
    return money(Decimal(qty) * to_decimal(price))


def unrealized_pl(live_price: Number, buy_price: Number, qty: int) -> Decimal:
    return money((to_decimal(live_price) - to_decimal(buy_price)) * Decimal(qty))


def realized_pl(sell_price: Number, buy_price: Number, qty: int) -> Decimal:
    return money((to_decimal(sell_price) - to_decimal(buy_price)) * Decimal(qty))


def platform_commission(realized: Number, rate: Number) -> Decimal:
    """Commission is charged on positive realized profit only."""
    profit = max(ZERO, to_decimal(realized))
    return money(profit * to_decimal(rate) / HUNDRED)


@dataclass(frozen=True)
class CycleSettlement:
    realized_pl: Decimal
    platform_commission: Decimal
    net_realized: Decimal


def settle_cycle(buy_price: Number, sell_price: Number, qty: int, rate: Number) -> CycleSettlement:
    """P&L for a completed buy/sell cycle of ``qty`` shares."""
    realized = realized_pl(sell_price, buy_price, qty)
    commission = platform_commission(realized, rate)
    return CycleSettlement(
        realized_pl=realized,
        platform_commission=commission,
        net_realized=money(realized - commission),
    )


def single_leg_net_amount(executed_qty: int, executed_price: Number) -> Decimal:
    """Single-leg pledges carry no profit commission."""
    return pledge_value(executed_qty, executed_price)
