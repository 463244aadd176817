from decimal import Decimal

import pytest

from split_trade_engine.backtester import run_backtest, validate_capital
from split_trade_engine.errors import ValidationError
from split_trade_engine.models import BUY

from .conftest import make_prices


class TestValidation:
    @pytest.mark.parametrize("capital", [0, -1, "abc", "NaN", None])
    def test_bad_capital(self, capital):
        with pytest.raises(ValidationError) as exc:
            validate_capital(capital)
        assert exc.value.field == "initial_capital"

    def test_unknown_strategy(self, wave_prices):
        with pytest.raises(ValidationError) as exc:
            run_backtest("Pro9", wave_prices)
        assert exc.value.field == "strategy"

    def test_empty_prices(self):
        with pytest.raises(ValidationError):
            run_backtest("Pro2", [])

    def test_range_out_of_bounds(self, wave_prices):
        with pytest.raises(ValidationError):
            run_backtest("Pro2", wave_prices, start_index=10, end_index=5)

    def test_dates_must_increase(self):
        prices = make_prices([100, 95, 90])
        prices[2] = prices[1]
        with pytest.raises(ValidationError):
            run_backtest("Pro2", prices)


class TestRun:
    def test_descent_then_recovery(self):
        prices = make_prices([100, 95, 90.25, 99.27, 104.5])
        res = run_backtest("Pro2", prices, initial_capital=10_000)

        assert len(res.daily_history) == 5
        assert res.daily_history[0].trades == ()
        assert [t.type for t in res.daily_history[1].trades] == [BUY]
        assert res.total_cycles == 1
        assert res.cycles[0].end_date == prices[4].date
        # tier 2 sells at 99.27 (+9.02 x 16), tier 1 at 104.5 (+9.5 x 15)
        assert res.final_asset == Decimal("10000") + Decimal("144.32") + Decimal("142.5")
        assert res.win_rate == Decimal("1")
        assert res.mdd < 0

    def test_snapshot_cycle_number_taken_before_step(self):
        prices = make_prices([100, 95, 104.5, 99.27])
        res = run_backtest("Pro2", prices)
        assert [s.cycle_number for s in res.daily_history] == [1, 1, 1, 2]

    def test_uses_adjusted_close(self):
        prices = make_prices([100, 100], adj=[100, 95])
        res = run_backtest("Pro2", prices)
        assert res.daily_history[1].trades[0].price == Decimal("95")

    def test_window_slice(self, wave_prices):
        res = run_backtest("Pro1", wave_prices, start_index=50, end_index=99)
        assert len(res.daily_history) == 50
        assert res.daily_history[0].date == wave_prices[50].date

    def test_deterministic(self, wave_prices):
        a = run_backtest("Pro3", wave_prices, initial_capital=5_000).to_dict()
        b = run_backtest("Pro3", wave_prices, initial_capital=5_000).to_dict()
        assert a == b


class TestInvariants:
    def test_flat_market_never_trades(self):
        res = run_backtest("Pro2", make_prices([100] * 10), initial_capital=10_000)
        assert len(res.daily_history) == 10
        assert all(s.trades == () for s in res.daily_history)
        assert all(s.total_asset == Decimal("10000") for s in res.daily_history)
        assert res.total_cycles == 0

    @pytest.mark.parametrize("strategy", ["Pro1", "Pro2", "Pro3"])
    def test_cash_plus_holdings_is_total(self, wave_prices, strategy):
        res = run_backtest(strategy, wave_prices)
        for s in res.daily_history:
            assert s.cash + s.holdings_value == s.total_asset
            assert s.cash >= 0

    @pytest.mark.parametrize("strategy", ["Pro1", "Pro2", "Pro3"])
    def test_cycle_closes_exactly_when_tiers_empty(self, wave_prices, strategy):
        res = run_backtest(strategy, wave_prices)
        hist = res.daily_history
        emptied = {cur.date for prev, cur in zip(hist, hist[1:]) if prev.tiers_held > 0 and cur.tiers_held == 0}
        closed = {c.end_date for c in res.cycles if c.end_date is not None}
        assert closed
        assert emptied == closed

        for c in res.cycles:
            inside = [s for s in hist if s.date >= c.start_date and (c.end_date is None or s.date < c.end_date)]
            assert all(s.tiers_held > 0 for s in inside)

    def test_cycles_compound(self, wave_prices):
        res = run_backtest("Pro2", wave_prices, initial_capital=10_000)
        assert len(res.cycles) >= 2
        assert res.cycles[0].initial_capital == Decimal("10000")
        for prev, cur in zip(res.cycles, res.cycles[1:]):
            assert cur.initial_capital == prev.final_asset
