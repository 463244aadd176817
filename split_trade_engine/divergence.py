from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List, Sequence

import numpy as np

WINDOW = 15
MIN_PEAK_DISTANCE = 3
PRICE_TOLERANCE = -0.01
RSI_MIN_DROP = 3.0


@dataclass
class DivergenceResult:
    bearish: bool = False
    peak_indices: List[int] = field(default_factory=list)
    peak_prices: List[float] = field(default_factory=list)
    peak_rsi: List[float] = field(default_factory=list)


def find_local_highs(prices: Sequence[float], start: int, end: int, min_distance: int = MIN_PEAK_DISTANCE) -> List[int]:
    """Indices in (start, end) strictly above both neighbours.

    Peaks closer than `min_distance` collapse into the higher one.
    """
    highs: List[int] = []
    for i in range(start + 1, end):
        if prices[i] > prices[i - 1] and prices[i] > prices[i + 1]:
            if not highs or i - highs[-1] >= min_distance:
                highs.append(i)
            elif prices[i] > prices[highs[-1]]:
                highs[-1] = i
    return highs


def detect_bearish_divergence(
    prices: Sequence[float],
    rsi: np.ndarray,
    index: int,
    *,
    window: int = WINDOW,
    min_distance: int = MIN_PEAK_DISTANCE,
    price_tolerance: float = PRICE_TOLERANCE,
    rsi_min_drop: float = RSI_MIN_DROP,
) -> DivergenceResult:
    """Price makes an equal-or-higher high (within tolerance) while RSI at that high drops.

    Compares the two most recent local highs inside the trailing `window` ending at `index`.
    """
    start = index - window + 1
    if start < 14 or index >= len(prices):
        return DivergenceResult()

    highs = find_local_highs(prices, start, index, min_distance)
    if len(highs) < 2:
        return DivergenceResult()

    prev_i, last_i = highs[-2], highs[-1]
    prev_rsi, last_rsi = float(rsi[prev_i]), float(rsi[last_i])
    if math.isnan(prev_rsi) or math.isnan(last_rsi):
        return DivergenceResult()

    prev_p, last_p = float(prices[prev_i]), float(prices[last_i])
    price_ok = last_p >= prev_p * (1.0 + price_tolerance)
    rsi_ok = last_rsi < prev_rsi - rsi_min_drop
    return DivergenceResult(
        bearish=bool(price_ok and rsi_ok),
        peak_indices=[prev_i, last_i],
        peak_prices=[prev_p, last_p],
        peak_rsi=[prev_rsi, last_rsi],
    )
