from dataclasses import replace
from unittest.mock import patch

import numpy as np
import pytest

from split_trade_engine.cache import RecommendationCache
from split_trade_engine.config import EngineConfig
from split_trade_engine.errors import InsufficientHistoryError, ValidationError
from split_trade_engine.recommender import StrategyRecommender, get_recommendation, similarity

from .conftest import make_prices, wave


class TestSimilarity:
    def test_identical_vectors_score_100(self):
        v = (1.0, 2.0, 50.0, 3.0, 40.0)
        assert similarity(v, v) == 100.0

    def test_distance_lowers_score(self):
        a = (1.0, 2.0, 50.0, 3.0, 40.0)
        b = (5.0, 2.0, 50.0, 3.0, 40.0)
        assert similarity(a, b) < 100.0


class TestHistoryRequirement:
    def test_59_days_rejected(self):
        prices = make_prices(wave(59))
        rec = StrategyRecommender("SOXL", prices)
        with pytest.raises(InsufficientHistoryError) as exc:
            rec.recommend(prices[-1].date)
        assert exc.value.available == 59
        assert exc.value.required == 60

    def test_60_days_accepted(self):
        prices = make_prices(wave(60))
        rec = StrategyRecommender("SOXL", prices).recommend(prices[-1].date)
        assert rec.strategy in ("Pro1", "Pro2", "Pro3")
        assert "trailing 60-day simulation" in rec.reason

    def test_unknown_date(self, wave_prices):
        with pytest.raises(ValidationError):
            StrategyRecommender("SOXL", wave_prices).recommend("1999-01-01")


class TestSelection:
    def test_golden_cross_excludes_pro1(self):
        prices = make_prices(list(np.linspace(50.0, 150.0, 90)))
        rec = StrategyRecommender("TQQQ", prices).recommend(prices[-1].date)
        assert rec.metrics.is_golden_cross
        assert rec.to_dict()["scores"]["Pro1"] is None
        assert rec.strategy == "Pro2"
        assert "Pro1 excluded" in rec.reason

    def test_highest_score_wins(self, wave_prices):
        recommender = StrategyRecommender("SOXL", wave_prices)
        date = wave_prices[200].date
        scores = {"Pro1": 1.0, "Pro2": 2.0, "Pro3": 3.0}
        with patch.object(StrategyRecommender, "strategy_scores", return_value=(scores, "stub")), \
                patch.object(StrategyRecommender, "downgrade_triggers", return_value=[]), \
                patch.object(StrategyRecommender, "snapshot", return_value=replace(recommender.snapshot(date), is_golden_cross=False)):
            rec = recommender.recommend(date)
        assert rec.strategy == "Pro3"
        assert rec.downgraded_from is None

    def test_ties_keep_first(self, wave_prices):
        recommender = StrategyRecommender("SOXL", wave_prices)
        date = wave_prices[200].date
        scores = {"Pro1": 2.0, "Pro2": 2.0, "Pro3": 2.0}
        with patch.object(StrategyRecommender, "strategy_scores", return_value=(scores, "stub")), \
                patch.object(StrategyRecommender, "downgrade_triggers", return_value=[]), \
                patch.object(StrategyRecommender, "snapshot", return_value=replace(recommender.snapshot(date), is_golden_cross=False)):
            assert recommender.recommend(date).strategy == "Pro1"

    def test_downgrade_moves_one_step_conservative(self, wave_prices):
        recommender = StrategyRecommender("SOXL", wave_prices)
        date = wave_prices[200].date
        scores = {"Pro1": 1.0, "Pro2": 5.0, "Pro3": 2.0}
        with patch.object(StrategyRecommender, "strategy_scores", return_value=(scores, "stub")), \
                patch.object(StrategyRecommender, "downgrade_triggers", return_value=["volatility20 150.00 > 100"]):
            rec = recommender.recommend(date)
        assert rec.strategy == "Pro3"
        assert rec.downgraded_from == "Pro2"
        assert "downgraded Pro2->Pro3" in rec.reason

    def test_pro3_cannot_downgrade_further(self, wave_prices):
        recommender = StrategyRecommender("SOXL", wave_prices)
        date = wave_prices[200].date
        scores = {"Pro1": 1.0, "Pro2": 2.0, "Pro3": 5.0}
        with patch.object(StrategyRecommender, "strategy_scores", return_value=(scores, "stub")), \
                patch.object(StrategyRecommender, "downgrade_triggers", return_value=["x"]):
            rec = recommender.recommend(date)
        assert rec.strategy == "Pro3"
        assert rec.downgraded_from is None

    def test_repeatable(self, wave_prices):
        recommender = StrategyRecommender("SOXL", wave_prices)
        date = wave_prices[-1].date
        assert recommender.recommend(date) == recommender.recommend(date)


class TestRiskTriggers:
    def setup_method(self):
        self.prices = make_prices(wave(260))
        self.recommender = StrategyRecommender("SOXL", self.prices, EngineConfig(use_divergence=False))
        self.snap = self.recommender.snapshot(self.prices[200].date)

    def test_high_volatility(self):
        snap = replace(self.snap, volatility20=150.0, rsi14=40.0)
        assert len(self.recommender.downgrade_triggers(200, snap)) == 1

    def test_overheated_without_golden_cross(self):
        snap = replace(self.snap, volatility20=10.0, rsi14=65.0, is_golden_cross=False)
        assert len(self.recommender.downgrade_triggers(200, snap)) == 1

    def test_overheated_in_golden_cross_is_allowed(self):
        snap = replace(self.snap, volatility20=10.0, rsi14=65.0, is_golden_cross=True)
        assert self.recommender.downgrade_triggers(200, snap) == []

    def test_divergence_checked_only_when_enabled(self):
        recommender = StrategyRecommender("SOXL", self.prices)
        snap = replace(self.snap, volatility20=10.0, rsi14=65.0, is_golden_cross=True, disparity=5.0)
        with patch("split_trade_engine.recommender.detect_bearish_divergence") as div:
            div.return_value.bearish = True
            assert len(recommender.downgrade_triggers(200, snap)) == 1
            div.assert_called_once()


class TestSimilarPeriods:
    def test_periods_respect_gaps_and_regime(self, wave_prices):
        recommender = StrategyRecommender("SOXL", wave_prices)
        idx = 250
        snap = recommender.snapshot(wave_prices[idx].date)
        periods = recommender.similar_periods(idx, snap)

        assert 0 < len(periods) <= 3
        ends = [p.end_index for p in periods]
        assert all(e <= idx - 40 for e in ends)
        assert all(abs(a - b) >= 20 for i, a in enumerate(ends) for b in ends[i + 1:])
        for p in periods:
            assert recommender.series.snapshot(p.end_index).is_golden_cross == snap.is_golden_cross
        assert [p.similarity for p in periods] == sorted((p.similarity for p in periods), reverse=True)


class TestGetRecommendation:
    def test_cache_computes_once(self, wave_prices):
        cache = RecommendationCache()
        date = wave_prices[150].date
        with patch.object(StrategyRecommender, "recommend", autospec=True,
                          side_effect=lambda self, d: "rec-" + d) as rec:
            a = get_recommendation("SOXL", date, wave_prices, cache=cache)
            b = get_recommendation("SOXL", date, wave_prices, cache=cache)
        assert a == b == "rec-" + date
        assert rec.call_count == 1
        assert cache.computations == 1

    def test_force_recomputes(self, wave_prices):
        cache = RecommendationCache()
        date = wave_prices[150].date
        first = get_recommendation("SOXL", date, wave_prices, cache=cache)
        again = get_recommendation("SOXL", date, wave_prices, cache=cache, force=True)
        assert first == again
        assert cache.computations == 2

    def test_persist_without_cache_rejected(self, wave_prices):
        with patch.object(StrategyRecommender, "recommend") as rec:
            with pytest.raises(ValidationError) as exc:
                get_recommendation("SOXL", wave_prices[150].date, wave_prices, persist_to_cache=True)
        assert exc.value.field == "persist_to_cache"
        rec.assert_not_called()
