from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .backtester import make_snapshot, summarize, validate_capital, validate_range
from .cache import RecommendationCache
from .config import EngineConfig, get_strategy
from .cycle import CycleTracker
from .errors import InsufficientHistoryError, ValidationError
from .metrics import max_drawdown
from .models import BacktestResult, CycleStrategyInfo, DailySnapshot, PricePoint, RecommendationRecord
from .position import TieredPositionEngine
from .recommender import StrategyRecommender, build_date_index, get_recommendation


@dataclass(frozen=True)
class BacktestRequest:
    start_date: str
    end_date: str
    initial_capital: Any

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "BacktestRequest":
        for k in ("start_date", "end_date", "initial_capital"):
            if d.get(k) in (None, ""):
                raise ValidationError(k, "required")
        return cls(str(d["start_date"]), str(d["end_date"]), d["initial_capital"])


def resolve_window(prices: Sequence[PricePoint], start_date: str, end_date: str) -> Tuple[int, int]:
    """Indices of the first date >= start_date and the last date <= end_date."""
    if start_date > end_date:
        raise ValidationError("date_range", f"start {start_date} is after end {end_date}")
    start = next((i for i, p in enumerate(prices) if p.date >= start_date), None)
    end = next((i for i in range(len(prices) - 1, -1, -1) if prices[i].date <= end_date), None)
    if start is None or end is None or start > end:
        raise ValidationError("date_range", f"no prices between {start_date} and {end_date}")
    return start, end


def _cycle_info(
    cycle_number: int,
    rec: RecommendationRecord,
    history: List[DailySnapshot],
    start_pos: int,
    cycle,
) -> CycleStrategyInfo:
    return CycleStrategyInfo(
        cycle_number=cycle_number,
        strategy=cycle.strategy,
        start_date=cycle.start_date,
        end_date=cycle.end_date,
        initial_capital=cycle.initial_capital,
        final_asset=cycle.final_asset,
        return_rate=cycle.return_rate,
        mdd=max_drawdown(s.total_asset for s in history[start_pos:]),
        start_rsi=rec.metrics.rsi14,
        is_golden_cross=rec.metrics.is_golden_cross,
        recommend_reason=rec.reason,
    )


def run_recommend_backtest(
    ticker: str,
    prices: Sequence[PricePoint],
    date_index: Optional[Mapping[str, int]] = None,
    request: Union[BacktestRequest, Mapping[str, Any], None] = None,
    *,
    cfg: Optional[EngineConfig] = None,
    cache: Optional[RecommendationCache] = None,
) -> BacktestResult:
    """Backtest that asks the recommender for a strategy at every cycle start.

    Each flat day uses the recommendation for the previous trading day, so the
    strategy a cycle runs with always comes from the day before its first buy.
    A strategy only changes while flat.
    """
    if request is None:
        raise ValidationError("request", "required")
    req = request if isinstance(request, BacktestRequest) else BacktestRequest.from_dict(request)
    cfg = cfg or EngineConfig()
    cap = validate_capital(req.initial_capital)
    start, end = resolve_window(prices, req.start_date, req.end_date)
    validate_range(prices, start, end)
    if start < cfg.min_history_days:
        raise InsufficientHistoryError(ticker, prices[start].date, start, cfg.min_history_days)

    date_index = date_index if date_index is not None else build_date_index(prices)
    recommender = StrategyRecommender(ticker, prices, cfg, date_index)

    def recommend_at(i: int) -> RecommendationRecord:
        return get_recommendation(ticker, prices[i].date, prices, date_index, cache=cache, recommender=recommender)

    pending = recommend_at(start - 1)
    engine = TieredPositionEngine(get_strategy(pending.strategy), cap)
    tracker = CycleTracker(engine)
    history: List[DailySnapshot] = []
    infos: List[CycleStrategyInfo] = []
    open_rec: Optional[RecommendationRecord] = None
    open_pos = 0
    day_counts: List[Tuple[str, int]] = []

    for i in range(start, end + 1):
        p = prices[i]
        was_flat = engine.is_flat
        # flat mornings re-pick from the previous close; the pick sticks once a buy fills
        if was_flat and i > start:
            pending = recommend_at(i - 1)
            if pending.strategy != engine.strategy.name:
                logging.debug("%s %s: flat, switching %s -> %s", ticker, p.date, engine.strategy.name, pending.strategy)
                engine.set_strategy(get_strategy(pending.strategy))
        number = tracker.cycle_number
        trades, closed = tracker.step(p.date, p.adj_close)
        history.append(make_snapshot(p, engine, number, trades, recommender.series, i))

        if was_flat and tracker.current is not None:
            open_rec, open_pos = pending, len(history) - 1

        if closed is not None:
            infos.append(_cycle_info(number, open_rec or pending, history, open_pos, closed))
            day_counts.append((closed.strategy, len(history) - open_pos))
            open_rec = None

    if tracker.current is not None and open_rec is not None:
        infos.append(_cycle_info(tracker.current.cycle_number, open_rec, history, open_pos, tracker.current))
        day_counts.append((tracker.current.strategy, len(history) - open_pos))

    stats: Dict[str, Dict[str, int]] = {}
    for name, days in day_counts:
        s = stats.setdefault(name, {"cycles": 0, "total_days": 0})
        s["cycles"] += 1
        s["total_days"] += days

    result = summarize(cap, tracker, history)
    result.cycle_strategies = infos
    result.strategy_stats = stats
    return result
