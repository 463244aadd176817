import pytest

from split_trade_engine.cache import RecommendationCache
from split_trade_engine.errors import InsufficientHistoryError, ValidationError
from split_trade_engine.orchestrator import BacktestRequest, resolve_window, run_recommend_backtest
from split_trade_engine.recommender import build_date_index


class TestRequest:
    def test_missing_fields(self):
        with pytest.raises(ValidationError) as exc:
            BacktestRequest.from_dict({"start_date": "2024-01-01", "end_date": "2024-06-01"})
        assert exc.value.field == "initial_capital"

    def test_window_snaps_to_trading_days(self, wave_prices):
        start, end = resolve_window(wave_prices, "2024-01-06", "2024-01-13")
        assert wave_prices[start].date == "2024-01-08"
        assert wave_prices[end].date == "2024-01-12"

    def test_inverted_window(self, wave_prices):
        with pytest.raises(ValidationError):
            resolve_window(wave_prices, "2024-05-01", "2024-04-01")


class TestRecommendBacktest:
    def request(self, prices, start=100, end=220, capital=10_000):
        return {"start_date": prices[start].date, "end_date": prices[end].date, "initial_capital": capital}

    def test_needs_history_before_start(self, wave_prices):
        with pytest.raises(InsufficientHistoryError):
            run_recommend_backtest("SOXL", wave_prices, request=self.request(wave_prices, start=30))

    def test_cycles_carry_their_recommendation(self, wave_prices):
        cache = RecommendationCache()
        res = run_recommend_backtest(
            "SOXL", wave_prices, build_date_index(wave_prices), self.request(wave_prices), cache=cache
        )

        assert len(res.daily_history) == 121
        assert cache.get("SOXL", wave_prices[99].date) is not None
        assert res.cycle_strategies
        for info, cycle in zip(res.cycle_strategies, res.cycles):
            assert info.strategy == cycle.strategy
            assert info.recommend_reason
            assert info.mdd <= 0

        stats = res.strategy_stats
        assert sum(s["cycles"] for s in stats.values()) == len(res.cycle_strategies)
        assert all(name in ("Pro1", "Pro2", "Pro3") for name in stats)


    def test_cycle_strategy_comes_from_day_before_first_buy(self, wave_prices):
        index = build_date_index(wave_prices)
        cache = RecommendationCache()
        res = run_recommend_backtest("SOXL", wave_prices, index, self.request(wave_prices, end=259), cache=cache)

        assert len(res.cycle_strategies) >= 2
        for info in res.cycle_strategies:
            prior = wave_prices[index[info.start_date] - 1].date
            rec = cache.get("SOXL", prior)
            assert rec is not None
            assert info.strategy == rec.strategy
            assert info.recommend_reason == rec.reason

    def test_flat_days_each_get_a_recommendation(self, wave_prices):
        index = build_date_index(wave_prices)
        cache = RecommendationCache()
        res = run_recommend_backtest("SOXL", wave_prices, index, self.request(wave_prices), cache=cache)

        hist = res.daily_history
        for prev, cur in zip(hist, hist[1:]):
            if prev.tiers_held == 0:
                assert ("SOXL", prev.date) in cache

    def test_strategy_changes_only_while_flat(self, wave_prices):
        res = run_recommend_backtest("SOXL", wave_prices, request=self.request(wave_prices))
        hist = res.daily_history
        for prev, cur in zip(hist, hist[1:]):
            if cur.strategy != prev.strategy:
                assert prev.tiers_held == 0
        assert all(s.indicators is not None for s in hist)

    def test_payload_shape(self, wave_prices):
        out = run_recommend_backtest("SOXL", wave_prices, request=self.request(wave_prices)).to_dict(include_history=False)
        assert "daily_history" not in out
        assert {"cycle_strategies", "strategy_stats", "return_rate", "mdd", "win_rate"} <= set(out)
