from __future__ import annotations

from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Any

CENT = Decimal("0.01")
BASIS = Decimal("0.0001")
ZERO = Decimal("0")
HUNDRED = Decimal("100")


def to_decimal(value: Any) -> Decimal:
    """Convert ints/floats/strings to Decimal without binary float noise."""
    if isinstance(value, Decimal):
        return value
    # str() of a float (numpy scalars included) is its shortest round-trip form
    return Decimal(str(value))


def money(value: Any) -> Decimal:
    """Round half-up to cents (storage/display boundary)."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def floor_cents(value: Any) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_DOWN)


def floor4(value: Any) -> Decimal:
    return to_decimal(value).quantize(BASIS, rounding=ROUND_DOWN)


def shares_for(amount: Any, price: Any) -> int:
    """Whole shares purchasable for `amount` at `price` (0 if price <= 0)."""
    p = to_decimal(price)
    if p <= 0:
        return 0
    q = (to_decimal(amount) / p).to_integral_value(rounding=ROUND_DOWN)
    return max(0, int(q))


def pct_change(new: Any, old: Any) -> Decimal:
    """(new / old - 1) * 100, unrounded."""
    o = to_decimal(old)
    if o == 0:
        return ZERO
    return (to_decimal(new) / o - 1) * HUNDRED
