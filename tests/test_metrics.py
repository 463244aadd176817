from decimal import Decimal

from split_trade_engine.metrics import max_drawdown, period_score, return_rate, win_rate
from split_trade_engine.models import Cycle


class TestReturnAndDrawdown:
    def test_return_rate_percent(self):
        assert return_rate(10_000, Decimal("10142.5")) == Decimal("1.425")

    def test_drawdown_from_running_peak(self):
        assert max_drawdown([100, 120, 90, 130, 117]) == Decimal("-25")

    def test_drawdown_truncated_toward_zero(self):
        assert max_drawdown([3, 2]) == Decimal("-33.3333")

    def test_no_drawdown_on_rising_series(self):
        assert max_drawdown([1, 2, 3]) == Decimal("0")
        assert max_drawdown([]) == Decimal("0")


class TestWinRate:
    def test_open_cycles_ignored(self):
        cycles = [
            Cycle(1, "d1", "Pro2", Decimal("100"), "d5", Decimal("110")),
            Cycle(2, "d6", "Pro2", Decimal("110"), "d9", Decimal("100")),
            Cycle(3, "d10", "Pro2", Decimal("100")),
        ]
        assert win_rate(cycles) == Decimal("0.5")

    def test_no_completed_cycles(self):
        assert win_rate([]) == Decimal("0")


class TestPeriodScore:
    def test_no_drawdown_keeps_return(self):
        assert period_score(10.0, 0.0) == 10.0

    def test_drawdown_discounts_exponentially(self):
        assert period_score(10.0, -20.0) == 8.1873

    def test_negative_return_stays_negative(self):
        assert period_score(-5.0, -10.0) < 0
