from __future__ import annotations

from decimal import Decimal
from typing import Any, Iterable, Sequence

from .models import Cycle
from .money import HUNDRED, ZERO, floor4, pct_change, to_decimal


def return_rate(initial: Any, final: Any) -> Decimal:
    """Percent return, floored to 4 decimals."""
    return floor4(pct_change(final, initial))


def max_drawdown(values: Iterable[Any]) -> Decimal:
    """Largest peak-to-trough decline in percent (<= 0), floored toward zero at 4 decimals."""
    peak = None
    worst = ZERO
    for v in values:
        v = to_decimal(v)
        if peak is None or v > peak:
            peak = v
            continue
        if peak > 0:
            dd = (v / peak - 1) * HUNDRED
            if dd < worst:
                worst = dd
    return floor4(worst)


def win_rate(cycles: Sequence[Cycle]) -> Decimal:
    """Fraction of completed cycles with a positive return."""
    done = [c for c in cycles if c.final_asset is not None]
    if not done:
        return floor4(ZERO)
    wins = sum(1 for c in done if c.final_asset > c.initial_capital)
    return floor4(Decimal(wins) / Decimal(len(done)))


def period_score(return_pct: float, mdd_pct: float, weight: float = 0.01) -> float:
    """return% * e^(mdd% * weight); mdd is negative so deeper drawdowns shrink the score."""
    exponent = to_decimal(mdd_pct) * to_decimal(weight)
    return float(floor4(to_decimal(return_pct) * exponent.exp()))
