from __future__ import annotations

from decimal import Decimal
from typing import AbstractSet, Any, Iterable, List, Optional, Tuple

from .config import StrategyConfig
from .errors import InconsistentStateError, ValidationError
from .models import BUY, SELL, STOP_LOSS, Tier, TradeAction
from .money import floor_cents, shares_for, to_decimal

Permission = Tuple[int, str]


class TieredPositionEngine:
    """Tier/cash state machine for one strategy instance, advanced one day per `step`.

    Per day, in order: stop-loss, sell, buy (next empty tier), then days_held += 1.
    `reference_price` is the previous processed day's price; it is the buy
    reference for tier 1.
    """

    def __init__(
        self,
        strategy: StrategyConfig,
        capital: Any,
        *,
        cash: Any = None,
        tiers: Optional[Iterable[Tier]] = None,
        buys_in_cycle: int = 0,
        reference_price: Any = None,
    ):
        capital = to_decimal(capital)
        if capital <= 0:
            raise ValidationError("initial_capital", "must be > 0")
        self.strategy = strategy
        self.cycle_capital = capital
        self.cash = capital if cash is None else to_decimal(cash)
        self.buys_in_cycle = int(buys_in_cycle)
        self.reference_price: Optional[Decimal] = to_decimal(reference_price) if reference_price is not None else None
        self.tiers: List[Tier] = [Tier(i + 1) for i in range(strategy.split_count)]
        for t in tiers or ():
            if not 1 <= t.index <= strategy.split_count:
                raise InconsistentStateError(f"tier {t.index} outside 1..{strategy.split_count}")
            self.tiers[t.index - 1] = Tier(t.index, t.entry_date, t.entry_price, t.shares, t.days_held)
        self._check_invariants()

    # ---- state queries ----------------------------------------------------------------

    @property
    def held_count(self) -> int:
        return sum(1 for t in self.tiers if t.holding)

    @property
    def is_flat(self) -> bool:
        return self.held_count == 0

    def holding_tiers(self) -> List[Tier]:
        return [t for t in self.tiers if t.holding]

    def holdings_value(self, price: Any) -> Decimal:
        p = to_decimal(price)
        return sum((t.market_value(p) for t in self.tiers), Decimal("0"))

    def total_asset(self, price: Any) -> Decimal:
        return self.cash + self.holdings_value(price)

    def next_tier(self) -> Optional[int]:
        n = self.held_count
        return n + 1 if n < self.strategy.split_count else None

    def buy_limit(self) -> Optional[Decimal]:
        """Dip-trigger price for the next empty tier, or None when no buy is possible."""
        n = self.held_count
        if n >= self.strategy.split_count:
            return None
        ref = self.tiers[n - 1].entry_price if n > 0 else self.reference_price
        if ref is None:
            return None
        return floor_cents(ref * (Decimal("1") - self.strategy.dip_percent))

    def sell_limit(self, tier: Tier) -> Decimal:
        if tier.entry_price is None:
            raise InconsistentStateError(f"tier {tier.index} has no entry price")
        return floor_cents(tier.entry_price * (Decimal("1") + self.strategy.peak_percent))

    def buy_shares(self, limit: Decimal) -> int:
        return shares_for(self.strategy.tier_allocation(self.cycle_capital), limit)

    def stop_loss_due(self) -> List[Tier]:
        """Tiers that would be force-sold today if price stays under entry (cascade included)."""
        held = self.holding_tiers()
        for i, t in enumerate(held):
            if t.days_held >= self.strategy.stop_loss_days:
                return held[i:]
        return []

    # ---- transitions ------------------------------------------------------------------

    def set_strategy(self, strategy: StrategyConfig) -> None:
        if not self.is_flat:
            raise InconsistentStateError(f"cannot switch to {strategy.name} while {self.held_count} tiers are held")
        if strategy.split_count != len(self.tiers):
            self.tiers = [Tier(i + 1) for i in range(strategy.split_count)]
        self.strategy = strategy

    def reseed(self, capital: Any) -> None:
        """Start a new cycle's allocation base (only while flat)."""
        if not self.is_flat:
            raise InconsistentStateError("reseed while holding tiers")
        self.cycle_capital = to_decimal(capital)
        self.buys_in_cycle = 0

    def step(self, date: str, price: Any, permitted: Optional[AbstractSet[Permission]] = None) -> List[TradeAction]:
        """Advance one trading day at `price`.

        `permitted` restricts which (tier, side) transitions may happen; None allows all.
        """
        price = to_decimal(price)
        if price <= 0:
            raise ValidationError("price", f"non-positive price {price} on {date}")

        def allowed(tier: int, side: str) -> bool:
            return permitted is None or (tier, side) in permitted

        trades: List[TradeAction] = []
        was_holding = not self.is_flat

        # 1. stop-loss; qualifying tiers form a prefix, so the whole tail above goes too.
        # The tail closes together or not at all, otherwise a held tier would sit above an empty one.
        first: Optional[int] = None
        for t in self.holding_tiers():
            if t.days_held >= self.strategy.stop_loss_days and price < t.entry_price and allowed(t.index, STOP_LOSS):
                first = t.index
                break
        if first is not None:
            tail = [t for t in self.holding_tiers() if t.index >= first]
            if all(allowed(t.index, STOP_LOSS) for t in tail):
                for t in tail:
                    trades.append(self._close(t, price, STOP_LOSS))

        # 2. sell
        for t in self.holding_tiers():
            if price >= self.sell_limit(t) and allowed(t.index, SELL):
                trades.append(self._close(t, price, SELL))

        # 3. buy (never on the day the position was fully liquidated)
        liquidated = was_holding and self.is_flat
        if not liquidated:
            buy = self._try_buy(date, price, allowed)
            if buy is not None:
                trades.append(buy)

        # 4. age
        for t in self.holding_tiers():
            t.days_held += 1

        self.reference_price = price
        self._check_invariants()
        return trades

    def _try_buy(self, date: str, price: Decimal, allowed) -> Optional[TradeAction]:
        idx = self.next_tier()
        if idx is None or self.buys_in_cycle >= self.strategy.max_buy_count:
            return None
        limit = self.buy_limit()
        if limit is None or price > limit or not allowed(idx, BUY):
            return None
        shares = self.buy_shares(limit)
        cost = price * shares
        if shares < 1 or cost > self.cash:
            return None
        tier = self.tiers[idx - 1]
        if tier.holding:
            raise InconsistentStateError(f"tier {idx} bought while already holding")
        self.cash -= cost
        tier.entry_date = date
        tier.entry_price = price
        tier.shares = shares
        tier.days_held = 0
        self.buys_in_cycle += 1
        return TradeAction(BUY, idx, price, shares)

    def _close(self, tier: Tier, price: Decimal, kind: str) -> TradeAction:
        action = TradeAction(kind, tier.index, price, tier.shares, tier.entry_price, tier.entry_date)
        self.cash += price * tier.shares
        tier.clear()
        return action

    def _check_invariants(self) -> None:
        if self.cash < 0:
            raise InconsistentStateError(f"cash went negative: {self.cash}")
        seen_empty = False
        for t in self.tiers:
            if not t.holding:
                seen_empty = True
            elif seen_empty:
                raise InconsistentStateError(f"tier {t.index} holds while a lower tier is empty")
