from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .backtester import run_backtest
from .config import DOWNGRADE, PRESETS, STRATEGY_ORDER, EngineConfig
from .divergence import detect_bearish_divergence
from .errors import InsufficientHistoryError, ValidationError
from .indicators import IndicatorSeries
from .metrics import period_score
from .models import IndicatorSnapshot, PricePoint, RecommendationRecord
from .money import floor4, to_decimal

if TYPE_CHECKING:
    from .cache import RecommendationCache

# [ma_slope, disparity, rsi14, roc12, volatility20]
SIMILARITY_WEIGHTS = np.array([0.35, 0.40, 0.05, 0.07, 0.13])
SIMILARITY_TOLERANCES = np.array([36.0, 90.0, 4.5, 40.0, 28.0])


def build_date_index(prices: Sequence[PricePoint]) -> Dict[str, int]:
    return {p.date: i for i, p in enumerate(prices)}


def similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Σ w·100·exp(-|a-b|/tol), rounded half-up to 2 decimals."""
    diff = np.abs(np.asarray(a, dtype=float) - np.asarray(b, dtype=float))
    raw = float(np.sum(SIMILARITY_WEIGHTS * 100.0 * np.exp(-diff / SIMILARITY_TOLERANCES)))
    return float(np.floor(raw * 100.0 + 0.5) / 100.0)


@dataclass(frozen=True)
class SimilarPeriod:
    end_index: int
    similarity: float


class StrategyRecommender:
    """Picks Pro1/Pro2/Pro3 for a reference date from one ticker's price history.

    Indicators are computed once for the bound series; every lookup only reads
    bars up to the reference date.
    """

    def __init__(
        self,
        ticker: str,
        prices: Sequence[PricePoint],
        cfg: Optional[EngineConfig] = None,
        date_index: Optional[Mapping[str, int]] = None,
    ):
        self.ticker = ticker
        self.prices = list(prices)
        self.cfg = cfg or EngineConfig()
        self.date_index = dict(date_index) if date_index is not None else build_date_index(self.prices)
        self.series = IndicatorSeries([p.date for p in self.prices], [p.adj_close for p in self.prices])

    # ---- public ------------------------------------------------------------------------

    def index_of(self, reference_date: str) -> int:
        idx = self.date_index.get(reference_date)
        if idx is None:
            raise ValidationError("date", f"no {self.ticker} price on {reference_date}")
        return idx

    def snapshot(self, reference_date: str) -> IndicatorSnapshot:
        idx = self.index_of(reference_date)
        required = self.cfg.min_history_days
        if idx + 1 < required:
            raise InsufficientHistoryError(self.ticker, reference_date, idx + 1, required)
        snap = self.series.snapshot(idx)
        if snap is None:
            raise InsufficientHistoryError(self.ticker, reference_date, idx + 1, required)
        return snap

    def recommend(self, reference_date: str) -> RecommendationRecord:
        snap = self.snapshot(reference_date)
        idx = self.index_of(reference_date)
        cfg = self.cfg

        excluded: Dict[str, str] = {}
        if snap.is_golden_cross:
            excluded["Pro1"] = "Pro1 excluded (golden cross)"

        scores, basis = self.strategy_scores(idx, snap)
        candidates = [name for name in STRATEGY_ORDER if name not in excluded]

        reasons: List[str] = []
        anomaly = False
        if not candidates:
            best = cfg.default_strategy
            anomaly = True
            logging.warning("all strategies excluded for %s %s; falling back to %s", self.ticker, reference_date, best)
            reasons.append(f"all strategies excluded, default {best}")
        else:
            best = candidates[0]
            for name in candidates[1:]:
                if scores[name] > scores[best]:
                    best = name
            reasons.append(f"{basis}: average score {scores[best]:.2f}")
        reasons.extend(excluded.values())

        strategy = best
        downgraded_from: Optional[str] = None
        triggers = self.downgrade_triggers(idx, snap)
        if triggers and not anomaly:
            target = DOWNGRADE[best]
            if target != best:
                strategy = target
                downgraded_from = best
                reasons.append(f"downgraded {best}->{target} ({', '.join(triggers)})")
            else:
                reasons.append(f"risk flags ({', '.join(triggers)}) with no more conservative preset")

        return RecommendationRecord(
            ticker=self.ticker,
            date=reference_date,
            strategy=strategy,
            reason="; ".join(reasons),
            metrics=snap,
            scores=tuple((name, None if name in excluded else scores[name]) for name in STRATEGY_ORDER),
            downgraded_from=downgraded_from,
            anomaly=anomaly,
        )

    # ---- scoring -----------------------------------------------------------------------

    def similar_periods(self, index: int, snap: IndicatorSnapshot) -> List[SimilarPeriod]:
        """Top-N historical end indices resembling `snap`, same golden-cross regime, spaced apart."""
        cfg = self.cfg
        last = index - cfg.min_past_gap_days
        indices, vectors, flags = self.series.snapshot_table()
        if len(indices) == 0:
            return []
        mask = (indices <= last) & (flags == snap.is_golden_cross)
        if not mask.any():
            return []
        cand_idx = indices[mask]
        diff = np.abs(vectors[mask] - np.asarray(snap.vector(), dtype=float))
        raw = np.sum(SIMILARITY_WEIGHTS * 100.0 * np.exp(-diff / SIMILARITY_TOLERANCES), axis=1)
        sims = np.floor(raw * 100.0 + 0.5) / 100.0

        picked: List[SimilarPeriod] = []
        for k in np.argsort(-sims, kind="stable"):
            p = int(cand_idx[k])
            if any(abs(p - s.end_index) < cfg.min_period_gap_days for s in picked):
                continue
            picked.append(SimilarPeriod(p, float(sims[k])))
            if len(picked) >= cfg.top_similar:
                break
        return picked

    def _score_window(self, name: str, start: int, end: int) -> float:
        res = run_backtest(PRESETS[name], self.prices, start, self.cfg.score_capital, end)
        return period_score(float(res.return_rate), float(res.mdd))

    def strategy_scores(self, index: int, snap: IndicatorSnapshot) -> Tuple[Dict[str, float], str]:
        """Average score per strategy and a label of the scoring basis used."""
        cfg = self.cfg
        periods = [p for p in self.similar_periods(index, snap) if p.end_index + cfg.performance_days < index]
        if len(periods) >= cfg.top_similar:
            scores: Dict[str, float] = {}
            weight_sum = to_decimal(sum(p.similarity for p in periods))
            for name in STRATEGY_ORDER:
                acc = to_decimal(0)
                for p in periods:
                    s = self._score_window(name, p.end_index + 1, p.end_index + cfg.performance_days)
                    acc += to_decimal(s) * to_decimal(p.similarity)
                scores[name] = float(floor4(acc / weight_sum)) if weight_sum > 0 else 0.0
            return scores, f"{len(periods)} similar periods"

        start = max(0, index - cfg.fallback_window_days + 1)
        scores = {name: self._score_window(name, start, index) for name in STRATEGY_ORDER}
        return scores, f"trailing {index - start + 1}-day simulation"

    # ---- risk --------------------------------------------------------------------------

    def downgrade_triggers(self, index: int, snap: IndicatorSnapshot) -> List[str]:
        cfg = self.cfg
        out: List[str] = []
        if snap.volatility20 > cfg.volatility_threshold:
            out.append(f"volatility20 {snap.volatility20:.2f} > {cfg.volatility_threshold:g}")
        if snap.rsi14 >= cfg.rsi_overheat and not snap.is_golden_cross:
            out.append(f"RSI {snap.rsi14:.2f} >= {cfg.rsi_overheat:g} without golden cross")
        if cfg.use_divergence and snap.disparity < cfg.disparity_guard and snap.rsi14 >= cfg.rsi_overheat:
            div = detect_bearish_divergence(self.series.adj, self.series.rsi14, index)
            if div.bearish:
                out.append(f"bearish RSI divergence with disparity {snap.disparity:.2f} < {cfg.disparity_guard:g}")
        return out


def get_recommendation(
    ticker: str,
    reference_date: str,
    prices: Sequence[PricePoint],
    date_index: Optional[Mapping[str, int]] = None,
    *,
    persist_to_cache: bool = False,
    force: bool = False,
    cache: Optional["RecommendationCache"] = None,
    cfg: Optional[EngineConfig] = None,
    recommender: Optional[StrategyRecommender] = None,
) -> RecommendationRecord:
    """Recommendation for (ticker, reference_date).

    With a cache, the key is computed at most once; `force` drops the cached entry
    first and `persist_to_cache` queues the record for the backing store.
    """
    if persist_to_cache and cache is None:
        raise ValidationError("persist_to_cache", "requires a cache")
    engine = recommender or StrategyRecommender(ticker, prices, cfg, date_index)
    if cache is None:
        return engine.recommend(reference_date)
    if force:
        cache.invalidate(ticker, reference_date)
    return cache.get_or_compute(ticker, reference_date, lambda: engine.recommend(reference_date), persist=persist_to_cache)
