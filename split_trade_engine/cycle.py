from __future__ import annotations

from decimal import Decimal
from typing import AbstractSet, Any, List, Optional, Tuple

from .metrics import win_rate
from .models import BUY, Cycle, TradeAction
from .position import Permission, TieredPositionEngine


class CycleTracker:
    """Owns cycle boundaries around a TieredPositionEngine.

    A cycle opens on the first BUY while flat and closes the day the position is
    flat again; the engine is then reseeded with the cash balance so cycles compound.
    """

    def __init__(self, engine: TieredPositionEngine):
        self.engine = engine
        self.cycles: List[Cycle] = []
        self.current: Optional[Cycle] = None

    @property
    def cycle_number(self) -> int:
        """Number of the open cycle, or of the next one when flat."""
        return len(self.completed) + 1

    @property
    def completed(self) -> List[Cycle]:
        return [c for c in self.cycles if not c.is_open]

    def step(
        self,
        date: str,
        price: Any,
        permitted: Optional[AbstractSet[Permission]] = None,
    ) -> Tuple[List[TradeAction], Optional[Cycle]]:
        """Advance the engine one day. Returns (trades, cycle closed today or None)."""
        was_flat = self.engine.is_flat
        trades = self.engine.step(date, price, permitted)

        if was_flat and any(t.type == BUY for t in trades):
            self.current = Cycle(
                cycle_number=len(self.cycles) + 1,
                start_date=date,
                strategy=self.engine.strategy.name,
                initial_capital=self.engine.cycle_capital,
            )
            self.cycles.append(self.current)

        closed: Optional[Cycle] = None
        if not was_flat and self.engine.is_flat:
            closed = self.current
            if closed is not None:
                closed.end_date = date
                closed.final_asset = self.engine.cash
            self.current = None
            self.engine.reseed(self.engine.cash)
        return trades, closed

    def win_rate(self) -> Decimal:
        return win_rate(self.completed)
