from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from .money import floor4, money, pct_change

BUY = "BUY"
SELL = "SELL"
STOP_LOSS = "STOP_LOSS"


def _f(x: Optional[Decimal]) -> Optional[float]:
    return float(x) if x is not None else None


@dataclass(frozen=True)
class PricePoint:
    date: str
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    adj_close: Decimal
    volume: int = 0

    @classmethod
    def of(
        cls,
        date: str,
        close: Any,
        *,
        adj_close: Any = None,
        open: Any = None,
        high: Any = None,
        low: Any = None,
        volume: Any = 0,
    ) -> "PricePoint":
        """Build a point with every price normalised to cents. Missing OHLC default to close."""
        c = money(close)
        return cls(
            date=str(date),
            open=money(open) if open is not None else c,
            high=money(high) if high is not None else c,
            low=money(low) if low is not None else c,
            close=c,
            adj_close=money(adj_close) if adj_close is not None else c,
            volume=int(volume or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "open": float(self.open),
            "high": float(self.high),
            "low": float(self.low),
            "close": float(self.close),
            "adj_close": float(self.adj_close),
            "volume": self.volume,
        }


@dataclass
class Tier:
    """One split slot. Empty when shares == 0."""

    index: int
    entry_date: Optional[str] = None
    entry_price: Optional[Decimal] = None
    shares: int = 0
    days_held: int = 0

    @property
    def holding(self) -> bool:
        return self.shares > 0

    def clear(self) -> None:
        self.entry_date = None
        self.entry_price = None
        self.shares = 0
        self.days_held = 0

    def market_value(self, price: Decimal) -> Decimal:
        return price * self.shares if self.holding else Decimal("0")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.index,
            "entry_date": self.entry_date,
            "entry_price": _f(self.entry_price),
            "shares": self.shares,
            "days_held": self.days_held,
        }


@dataclass(frozen=True)
class TradeAction:
    type: str
    tier: int
    price: Decimal
    shares: int
    entry_price: Optional[Decimal] = None
    entry_date: Optional[str] = None

    @property
    def amount(self) -> Decimal:
        return self.price * self.shares

    @property
    def profit(self) -> Optional[Decimal]:
        if self.type == BUY or self.entry_price is None:
            return None
        return (self.price - self.entry_price) * self.shares

    def to_dict(self) -> Dict[str, Any]:
        d = {"type": self.type, "tier": self.tier, "price": float(self.price), "shares": self.shares}
        if self.type != BUY:
            d["profit"] = _f(self.profit)
        return d


@dataclass(frozen=True)
class IndicatorSnapshot:
    date: str
    ma20: float
    ma60: float
    rsi14: float
    golden_cross_value: float
    is_golden_cross: bool
    ma_slope: float
    disparity: float
    roc12: float
    volatility20: float

    def vector(self) -> Tuple[float, float, float, float, float]:
        return (self.ma_slope, self.disparity, self.rsi14, self.roc12, self.volatility20)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "ma20": self.ma20,
            "ma60": self.ma60,
            "rsi14": self.rsi14,
            "golden_cross_value": self.golden_cross_value,
            "is_golden_cross": self.is_golden_cross,
            "ma_slope": self.ma_slope,
            "disparity": self.disparity,
            "roc12": self.roc12,
            "volatility20": self.volatility20,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "IndicatorSnapshot":
        return cls(
            date=str(d["date"]),
            ma20=float(d["ma20"]),
            ma60=float(d["ma60"]),
            rsi14=float(d["rsi14"]),
            golden_cross_value=float(d["golden_cross_value"]),
            is_golden_cross=bool(d["is_golden_cross"]),
            ma_slope=float(d["ma_slope"]),
            disparity=float(d["disparity"]),
            roc12=float(d["roc12"]),
            volatility20=float(d["volatility20"]),
        )


@dataclass(frozen=True)
class DailySnapshot:
    date: str
    close: Decimal
    adj_close: Decimal
    cycle_number: int
    strategy: str
    cash: Decimal
    holdings_value: Decimal
    total_asset: Decimal
    trades: Tuple[TradeAction, ...] = ()
    tiers_held: int = 0
    indicators: Optional[IndicatorSnapshot] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "close": float(self.close),
            "adj_close": float(self.adj_close),
            "cycle_number": self.cycle_number,
            "strategy": self.strategy,
            "cash": float(money(self.cash)),
            "holdings_value": float(money(self.holdings_value)),
            "total_asset": float(money(self.total_asset)),
            "tiers_held": self.tiers_held,
            "trades": [t.to_dict() for t in self.trades],
            "indicators": self.indicators.to_dict() if self.indicators else None,
        }


@dataclass
class Cycle:
    cycle_number: int
    start_date: str
    strategy: str
    initial_capital: Decimal
    end_date: Optional[str] = None
    final_asset: Optional[Decimal] = None

    @property
    def is_open(self) -> bool:
        return self.end_date is None

    @property
    def return_rate(self) -> Optional[Decimal]:
        if self.final_asset is None:
            return None
        return floor4(pct_change(self.final_asset, self.initial_capital))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_number": self.cycle_number,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "strategy": self.strategy,
            "initial_capital": float(money(self.initial_capital)),
            "final_asset": float(money(self.final_asset)) if self.final_asset is not None else None,
            "return_rate": _f(self.return_rate),
        }


@dataclass(frozen=True)
class CycleStrategyInfo:
    cycle_number: int
    strategy: str
    start_date: str
    end_date: Optional[str]
    initial_capital: Decimal
    final_asset: Optional[Decimal]
    return_rate: Optional[Decimal]
    mdd: Decimal
    start_rsi: Optional[float]
    is_golden_cross: Optional[bool]
    recommend_reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_number": self.cycle_number,
            "strategy": self.strategy,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "initial_capital": float(money(self.initial_capital)),
            "final_asset": float(money(self.final_asset)) if self.final_asset is not None else None,
            "return_rate": _f(self.return_rate),
            "mdd": float(self.mdd),
            "start_rsi": self.start_rsi,
            "is_golden_cross": self.is_golden_cross,
            "recommend_reason": self.recommend_reason,
        }


@dataclass(frozen=True)
class RecommendationRecord:
    ticker: str
    date: str
    strategy: str
    reason: str
    metrics: IndicatorSnapshot
    scores: Tuple[Tuple[str, Optional[float]], ...] = ()
    downgraded_from: Optional[str] = None
    anomaly: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticker": self.ticker,
            "date": self.date,
            "strategy": self.strategy,
            "reason": self.reason,
            "metrics": self.metrics.to_dict(),
            "scores": {name: score for name, score in self.scores},
            "downgraded_from": self.downgraded_from,
            "anomaly": self.anomaly,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RecommendationRecord":
        scores = d.get("scores") or {}
        return cls(
            ticker=str(d["ticker"]),
            date=str(d["date"]),
            strategy=str(d["strategy"]),
            reason=str(d.get("reason") or ""),
            metrics=IndicatorSnapshot.from_dict(d["metrics"]),
            scores=tuple((k, scores[k]) for k in scores),
            downgraded_from=d.get("downgraded_from"),
            anomaly=bool(d.get("anomaly", False)),
        )


@dataclass
class BacktestResult:
    initial_capital: Decimal
    final_asset: Decimal
    return_rate: Decimal
    mdd: Decimal
    total_cycles: int
    win_rate: Decimal
    daily_history: List[DailySnapshot]
    cycles: List[Cycle] = field(default_factory=list)
    cycle_strategies: List[CycleStrategyInfo] = field(default_factory=list)
    strategy_stats: Dict[str, Dict[str, int]] = field(default_factory=dict)

    def to_dict(self, include_history: bool = True) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "initial_capital": float(money(self.initial_capital)),
            "final_asset": float(money(self.final_asset)),
            "return_rate": float(self.return_rate),
            "mdd": float(self.mdd),
            "total_cycles": self.total_cycles,
            "win_rate": float(self.win_rate),
            "cycles": [c.to_dict() for c in self.cycles],
        }
        if self.cycle_strategies:
            out["cycle_strategies"] = [c.to_dict() for c in self.cycle_strategies]
            out["strategy_stats"] = self.strategy_stats
        if include_history:
            out["daily_history"] = [s.to_dict() for s in self.daily_history]
        return out


@dataclass(frozen=True)
class Order:
    account_id: int
    date: str
    ticker: str
    tier: int
    side: str
    method: str
    limit_price: Decimal
    shares: int
    id: Optional[int] = None
    executed: Optional[bool] = None
    executed_price: Optional[Decimal] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "date": self.date,
            "ticker": self.ticker,
            "tier": self.tier,
            "side": self.side,
            "method": self.method,
            "limit_price": float(self.limit_price),
            "shares": self.shares,
            "executed": self.executed,
            "executed_price": _f(self.executed_price),
            "reason": self.reason,
        }


@dataclass(frozen=True)
class ExecutionResult:
    order_id: Optional[int]
    date: str
    tier: int
    side: str
    executed: bool
    limit_price: Decimal
    close: Decimal
    shares: int
    reason: str
    profit: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "date": self.date,
            "tier": self.tier,
            "side": self.side,
            "executed": self.executed,
            "limit_price": float(self.limit_price),
            "close": float(self.close),
            "shares": self.shares,
            "reason": self.reason,
            "profit": _f(self.profit),
        }
