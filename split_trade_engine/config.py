from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Tuple

from .errors import ValidationError

def _env_float(key: str, default: float) -> float:
    v = os.getenv(key)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default

def _env_int(key: str, default: int) -> int:
    v = os.getenv(key)
    if v is None or v == "":
        return default
    try:
        return int(v)
    except ValueError:
        return default

def _env_str(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v not in (None, "") else default

def _env_bool(key: str, default: bool = True) -> bool:
    v = os.getenv(key)
    if v is None or v == "":
        return default
    return v.strip().lower() not in ("0", "false", "no", "off")

@dataclass(frozen=True)
class EngineConfig:
    # Data
    db_path: str = _env_str("STE_DB_PATH", "data/split_trade.db")

    # Recommender windows (trading days)
    min_history_days: int = _env_int("STE_MIN_HISTORY_DAYS", 60)
    performance_days: int = _env_int("STE_PERFORMANCE_DAYS", 20)
    min_past_gap_days: int = _env_int("STE_MIN_PAST_GAP_DAYS", 40)
    min_period_gap_days: int = _env_int("STE_MIN_PERIOD_GAP_DAYS", 20)
    top_similar: int = _env_int("STE_TOP_SIMILAR", 3)
    fallback_window_days: int = _env_int("STE_FALLBACK_WINDOW_DAYS", 60)
    score_capital: float = _env_float("STE_SCORE_CAPITAL", 10_000_000.0)

    # Downgrade thresholds
    volatility_threshold: float = _env_float("STE_VOLATILITY_THRESHOLD", 100.0)
    rsi_overheat: float = _env_float("STE_RSI_OVERHEAT", 60.0)
    disparity_guard: float = _env_float("STE_DISPARITY_GUARD", 20.0)
    use_divergence: bool = _env_bool("STE_USE_DIVERGENCE", True)

    # Used when every candidate ends up excluded
    default_strategy: str = _env_str("STE_DEFAULT_STRATEGY", "Pro2")

    # Batch jobs
    precompute_batch_size: int = _env_int("STE_PRECOMPUTE_BATCH_SIZE", 500)
    precompute_workers: int = _env_int("STE_PRECOMPUTE_WORKERS", 4)


@dataclass(frozen=True)
class StrategyConfig:
    """Tiered split-buy parameters. Percentages are fractions (0.05 == 5%)."""

    name: str
    split_count: int
    dip_percent: Decimal
    peak_percent: Decimal
    invest_ratio: Decimal
    stop_loss_days: int
    max_buy_count: int

    def __post_init__(self) -> None:
        if self.split_count < 1:
            raise ValidationError("split_count", "must be >= 1")
        if not (Decimal("0") < self.dip_percent < Decimal("1")):
            raise ValidationError("dip_percent", "must be in (0, 1)")
        if self.peak_percent <= 0:
            raise ValidationError("peak_percent", "must be > 0")
        if not (Decimal("0") < self.invest_ratio <= Decimal("1")):
            raise ValidationError("invest_ratio", "must be in (0, 1]")
        if self.stop_loss_days < 1:
            raise ValidationError("stop_loss_days", "must be >= 1")
        if self.max_buy_count < 1:
            raise ValidationError("max_buy_count", "must be >= 1")

    def tier_allocation(self, cycle_capital: Decimal) -> Decimal:
        return cycle_capital * self.invest_ratio / Decimal(self.split_count)

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "split_count": self.split_count,
            "dip_percent": float(self.dip_percent),
            "peak_percent": float(self.peak_percent),
            "invest_ratio": float(self.invest_ratio),
            "stop_loss_days": self.stop_loss_days,
            "max_buy_count": self.max_buy_count,
        }


def _preset(name: str, dip: str, peak: str, invest: str, stop_days: int, max_buys: int) -> StrategyConfig:
    return StrategyConfig(
        name=name,
        split_count=6,
        dip_percent=Decimal(dip),
        peak_percent=Decimal(peak),
        invest_ratio=Decimal(invest),
        stop_loss_days=stop_days,
        max_buy_count=max_buys,
    )

# Pro1 is the most aggressive (fully invested, tight dip/peak), Pro3 the most conservative.
PRESETS: Dict[str, StrategyConfig] = {
    "Pro1": _preset("Pro1", "0.03", "0.05", "1.00", 10, 12),
    "Pro2": _preset("Pro2", "0.05", "0.10", "0.90", 10, 10),
    "Pro3": _preset("Pro3", "0.07", "0.15", "0.80", 12, 8),
}

STRATEGY_ORDER: Tuple[str, ...] = ("Pro1", "Pro2", "Pro3")

# One step toward more conservative
DOWNGRADE: Dict[str, str] = {"Pro1": "Pro2", "Pro2": "Pro3", "Pro3": "Pro3"}


def get_strategy(name: str) -> StrategyConfig:
    try:
        return PRESETS[name]
    except KeyError:
        raise ValidationError("strategy", f"unknown strategy {name!r} (expected one of {', '.join(STRATEGY_ORDER)})") from None
