from __future__ import annotations

from decimal import Decimal
from typing import Any, List, Optional, Sequence, Union

from .config import StrategyConfig, get_strategy
from .cycle import CycleTracker
from .errors import ValidationError
from .indicators import IndicatorSeries
from .metrics import max_drawdown, return_rate
from .models import BacktestResult, DailySnapshot, PricePoint, TradeAction
from .money import to_decimal
from .position import TieredPositionEngine


def resolve_strategy(strategy: Union[str, StrategyConfig]) -> StrategyConfig:
    if isinstance(strategy, StrategyConfig):
        return strategy
    return get_strategy(str(strategy))


def validate_capital(initial_capital: Any) -> Decimal:
    try:
        cap = to_decimal(initial_capital)
    except (ArithmeticError, ValueError, TypeError):
        raise ValidationError("initial_capital", f"not a number: {initial_capital!r}") from None
    if not cap.is_finite() or cap <= 0:
        raise ValidationError("initial_capital", "must be > 0")
    return cap


def validate_range(prices: Sequence[PricePoint], start_index: int, end_index: Optional[int]) -> int:
    """Check index bounds and strict date ordering; returns the resolved end index."""
    n = len(prices)
    if n == 0:
        raise ValidationError("prices", "empty price series")
    if end_index is None:
        end_index = n - 1
    if not 0 <= start_index < n:
        raise ValidationError("start_index", f"{start_index} outside 0..{n - 1}")
    if not start_index <= end_index < n:
        raise ValidationError("end_index", f"{end_index} outside {start_index}..{n - 1}")
    for i in range(max(1, start_index), end_index + 1):
        if prices[i].date <= prices[i - 1].date:
            raise ValidationError("prices", f"dates not strictly increasing at {prices[i].date}")
    return end_index


def make_snapshot(
    price: PricePoint,
    engine: TieredPositionEngine,
    cycle_number: int,
    trades: List[TradeAction],
    indicators: Optional[IndicatorSeries] = None,
    index: Optional[int] = None,
) -> DailySnapshot:
    holdings = engine.holdings_value(price.adj_close)
    return DailySnapshot(
        date=price.date,
        close=price.close,
        adj_close=price.adj_close,
        cycle_number=cycle_number,
        strategy=engine.strategy.name,
        cash=engine.cash,
        holdings_value=holdings,
        total_asset=engine.cash + holdings,
        trades=tuple(trades),
        tiers_held=engine.held_count,
        indicators=indicators.snapshot(index) if indicators is not None and index is not None else None,
    )


def summarize(initial: Decimal, tracker: CycleTracker, history: List[DailySnapshot]) -> BacktestResult:
    final = history[-1].total_asset if history else initial
    return BacktestResult(
        initial_capital=initial,
        final_asset=final,
        return_rate=return_rate(initial, final),
        mdd=max_drawdown(s.total_asset for s in history),
        total_cycles=len(tracker.cycles),
        win_rate=tracker.win_rate(),
        daily_history=history,
        cycles=list(tracker.cycles),
    )


def run_backtest(
    strategy: Union[str, StrategyConfig],
    prices: Sequence[PricePoint],
    start_index: int = 0,
    initial_capital: Any = 10_000,
    end_index: Optional[int] = None,
) -> BacktestResult:
    """Fixed-strategy backtest over prices[start_index..end_index] at adjClose.

    The first processed day only establishes the buy reference.
    """
    cfg = resolve_strategy(strategy)
    cap = validate_capital(initial_capital)
    end_index = validate_range(prices, start_index, end_index)

    engine = TieredPositionEngine(cfg, cap)
    tracker = CycleTracker(engine)
    history: List[DailySnapshot] = []
    for i in range(start_index, end_index + 1):
        p = prices[i]
        number = tracker.cycle_number
        trades, _closed = tracker.step(p.date, p.adj_close)
        history.append(make_snapshot(p, engine, number, trades))
    return summarize(cap, tracker, history)
