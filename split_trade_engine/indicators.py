from __future__ import annotations

import math
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .models import IndicatorSnapshot

MA_SHORT = 20
MA_LONG = 60
SLOPE_LAG = 10
RSI_PERIOD = 14
ROC_PERIOD = 12
VOL_PERIOD = 20
TRADING_DAYS_PER_YEAR = 252

# First index with a complete indicator set (MA60 needs 60 bars)
MIN_INDEX = MA_LONG - 1

def rolling_sma(values: Sequence[float], period: int) -> np.ndarray:
    """Simple moving average aligned to each index (NaN until enough bars)."""
    arr = np.asarray(values, dtype=float)
    n = len(arr)
    out = np.full(n, np.nan)
    if n < period or period <= 0:
        return out
    cumsum = np.cumsum(arr)
    out[period - 1 :] = (cumsum[period - 1 :] - np.concatenate(([0.0], cumsum[: -period]))) / period
    return out

def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0.0 and avg_gain == 0.0:
        return 50.0
    if avg_loss == 0.0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))

def rsi_wilder(values: Sequence[float], period: int = RSI_PERIOD) -> np.ndarray:
    """RSI with Wilder smoothing.

    Seed at index `period` is the simple mean of the first `period` gains/losses;
    afterwards avg = (prev * (period - 1) + current) / period.
    NaN before index `period`.
    """
    c = np.asarray(values, dtype=float)
    n = len(c)
    out = np.full(n, np.nan)
    if n < period + 1 or period <= 0:
        return out

    d = np.diff(c)
    gains = np.clip(d, 0, None)
    losses = np.clip(-d, 0, None)

    avg_g = float(gains[:period].mean())
    avg_l = float(losses[:period].mean())
    out[period] = _rsi_value(avg_g, avg_l)
    # price index i closes delta d[i-1]
    for i in range(period + 1, n):
        avg_g = (avg_g * (period - 1) + float(gains[i - 1])) / period
        avg_l = (avg_l * (period - 1) + float(losses[i - 1])) / period
        out[i] = _rsi_value(avg_g, avg_l)
    return out

def rate_of_change(values: Sequence[float], period: int = ROC_PERIOD) -> np.ndarray:
    """Percent change versus `period` bars earlier."""
    c = np.asarray(values, dtype=float)
    n = len(c)
    out = np.full(n, np.nan)
    if n <= period or period <= 0:
        return out
    base = c[:-period]
    with np.errstate(divide="ignore", invalid="ignore"):
        out[period:] = np.where(base != 0, (c[period:] / base - 1.0) * 100.0, np.nan)
    return out

def rolling_volatility(values: Sequence[float], period: int = VOL_PERIOD) -> np.ndarray:
    """Annualised volatility in percent.

    Population standard deviation of the last `period` simple daily returns,
    times sqrt(252) times 100. NaN until index >= period.
    """
    c = np.asarray(values, dtype=float)
    n = len(c)
    out = np.full(n, np.nan)
    if n <= period or period <= 0:
        return out
    rets = np.full(n, np.nan)
    with np.errstate(divide="ignore", invalid="ignore"):
        rets[1:] = c[1:] / c[:-1] - 1.0
    scale = math.sqrt(TRADING_DAYS_PER_YEAR) * 100.0
    for i in range(period, n):
        window = rets[i - period + 1 : i + 1]
        if np.isnan(window).any():
            continue
        out[i] = float(np.std(window, ddof=0)) * scale
    return out

def ma_slope(ma: np.ndarray, lag: int = SLOPE_LAG) -> np.ndarray:
    """Percent change of a moving average versus `lag` bars earlier."""
    m = np.asarray(ma, dtype=float)
    n = len(m)
    out = np.full(n, np.nan)
    if n <= lag:
        return out
    prev = m[:-lag]
    with np.errstate(divide="ignore", invalid="ignore"):
        out[lag:] = np.where(prev != 0, (m[lag:] / prev - 1.0) * 100.0, np.nan)
    return out


class IndicatorSeries:
    """All indicators for one adjClose series, computed once.

    Every value at index i depends only on bars <= i, so reading index i from a
    longer series is identical to computing on the prefix ending at i.
    """

    def __init__(self, dates: Sequence[str], adj_closes: Sequence[float]):
        if len(dates) != len(adj_closes):
            raise ValueError("dates and adj_closes length mismatch")
        self.dates = list(dates)
        c = np.asarray([float(x) for x in adj_closes], dtype=float)
        self.adj = c
        self.ma20 = rolling_sma(c, MA_SHORT)
        self.ma60 = rolling_sma(c, MA_LONG)
        self.rsi14 = rsi_wilder(c, RSI_PERIOD)
        self.roc12 = rate_of_change(c, ROC_PERIOD)
        self.volatility20 = rolling_volatility(c, VOL_PERIOD)
        self.slope = ma_slope(self.ma20, SLOPE_LAG)
        with np.errstate(divide="ignore", invalid="ignore"):
            self.golden_cross = np.where(self.ma60 != 0, (self.ma20 - self.ma60) / self.ma60 * 100.0, np.nan)
            self.disparity = np.where(self.ma20 != 0, (c / self.ma20 - 1.0) * 100.0, np.nan)
        self._table = None

    def __len__(self) -> int:
        return len(self.dates)

    def snapshot_table(self):
        """(indices, vectors, golden_flags) for every index with a complete snapshot.

        Built once per series; vectors are the rounded snapshot values in
        IndicatorSnapshot.vector() order.
        """
        if self._table is None:
            idx: List[int] = []
            rows: List[Tuple[float, ...]] = []
            flags: List[bool] = []
            for i in range(MIN_INDEX, len(self.dates)):
                s = self.snapshot(i)
                if s is None:
                    continue
                idx.append(i)
                rows.append(s.vector())
                flags.append(s.is_golden_cross)
            self._table = (
                np.asarray(idx, dtype=int),
                np.asarray(rows, dtype=float).reshape(-1, 5),
                np.asarray(flags, dtype=bool),
            )
        return self._table

    def snapshot(self, index: int) -> Optional[IndicatorSnapshot]:
        if index < MIN_INDEX or index >= len(self.dates):
            return None
        raw = (
            self.ma20[index],
            self.ma60[index],
            self.rsi14[index],
            self.golden_cross[index],
            self.slope[index],
            self.disparity[index],
            self.roc12[index],
            self.volatility20[index],
        )
        if any(math.isnan(float(x)) for x in raw):
            return None
        ma20, ma60, rsi, gc, slope, disp, roc, vol = (round(float(x), 4) for x in raw)
        return IndicatorSnapshot(
            date=self.dates[index],
            ma20=ma20,
            ma60=ma60,
            rsi14=rsi,
            golden_cross_value=gc,
            is_golden_cross=gc > 0,
            ma_slope=slope,
            disparity=disp,
            roc12=roc,
            volatility20=vol,
        )


def compute_snapshot(dates: Sequence[str], adj_closes: Sequence[float], index: int) -> Optional[IndicatorSnapshot]:
    return IndicatorSeries(dates[: index + 1], adj_closes[: index + 1]).snapshot(index)
