"""Live order sheets and their reconciliation against realised closes.

Same tier rules as the backtest engine, run one day at a time against persisted
state:

- generate_daily_orders: reconcile the previous trading day first, then write
  the day's LOC BUY / LOC SELL / MOC STOP_LOSS sheet.
- process_order_execution: step the engine with the day's raw close, allowing
  only transitions that have an order on the sheet.
"""
from __future__ import annotations

import logging
import sqlite3
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from . import db
from .backtester import resolve_strategy, validate_capital
from .config import StrategyConfig
from .errors import ValidationError
from .models import BUY, SELL, STOP_LOSS, ExecutionResult, Order, Tier
from .position import TieredPositionEngine

LOC = "LOC"
MOC = "MOC"


def open_account(
    conn: sqlite3.Connection,
    name: str,
    ticker: str,
    strategy: Union[str, StrategyConfig],
    seed_capital: Any,
) -> int:
    cfg = resolve_strategy(strategy)
    seed = validate_capital(seed_capital)
    if not ticker:
        raise ValidationError("ticker", "required")
    with conn:
        account_id = db.create_account(conn, name or ticker, ticker, cfg.name, seed)
    logging.info("trading account %s opened: %s %s seed=%s", account_id, ticker, cfg.name, seed)
    return account_id


def _require_account(conn: sqlite3.Connection, account_id: int) -> Dict[str, Any]:
    account = db.get_account(conn, account_id)
    if account is None:
        raise ValidationError("account_id", f"unknown account {account_id}")
    return account


def _previous_close(conn: sqlite3.Connection, ticker: str, date: str) -> Optional[Decimal]:
    prev = db.previous_trading_date(conn, ticker, date)
    if prev is None:
        return None
    p = db.get_price(conn, ticker, prev)
    return p.close if p else None


def _engine(
    conn: sqlite3.Connection,
    account: Dict[str, Any],
    reference_price: Optional[Decimal],
    holdings: Optional[List[Tier]] = None,
) -> TieredPositionEngine:
    tiers = holdings if holdings is not None else db.load_holdings(conn, account["id"])
    return TieredPositionEngine(
        resolve_strategy(account["strategy"]),
        account["cycle_capital"],
        cash=account["cash"],
        tiers=tiers,
        buys_in_cycle=account["buys_in_cycle"],
        reference_price=reference_price,
    )


def build_order_sheet(engine: TieredPositionEngine, account_id: int, date: str, ticker: str) -> List[Order]:
    """Orders in evaluation order: stop-loss, sells, then the next-tier buy."""
    cfg = engine.strategy
    orders: List[Order] = []
    for t in engine.stop_loss_due():
        orders.append(
            Order(account_id, date, ticker, t.index, STOP_LOSS, MOC, t.entry_price, t.shares,
                  reason=f"held {t.days_held}d (limit {cfg.stop_loss_days}d); sells at close if below entry")
        )
    for t in engine.holding_tiers():
        orders.append(Order(account_id, date, ticker, t.index, SELL, LOC, engine.sell_limit(t), t.shares))

    idx = engine.next_tier()
    limit = engine.buy_limit()
    if idx is not None and limit is not None and engine.buys_in_cycle < cfg.max_buy_count:
        shares = engine.buy_shares(limit)
        if shares >= 1:
            orders.append(Order(account_id, date, ticker, idx, BUY, LOC, limit, shares))
    return orders


def generate_daily_orders(
    conn: sqlite3.Connection,
    account_id: int,
    date: str,
    ticker: Optional[str] = None,
    strategy: Union[str, StrategyConfig, None] = None,
    holdings: Optional[List[Tier]] = None,
) -> List[Order]:
    """Order sheet for `date`.

    Unfilled orders of the previous trading day are re-evaluated against that
    day's close first. A sheet that already has evaluated orders is returned as is.
    `strategy` switches the account's preset, only while it holds nothing.
    """
    account = _require_account(conn, account_id)
    ticker = ticker or account["ticker"]

    existing = db.load_orders(conn, account_id, date)
    if any(o.executed is not None for o in existing):
        return existing

    if process_previous_day_execution(conn, account_id, date, ticker):
        account = _require_account(conn, account_id)
        holdings = None

    engine = _engine(conn, account, _previous_close(conn, ticker, date), holdings)

    if strategy is not None:
        cfg = resolve_strategy(strategy)
        if cfg.name != engine.strategy.name:
            if engine.is_flat:
                engine.set_strategy(cfg)
                with conn:
                    db.update_account(conn, account_id, strategy=cfg.name)
            else:
                logging.warning(
                    "account %s holds %s tiers; keeping %s instead of %s until the cycle ends",
                    account_id, engine.held_count, engine.strategy.name, cfg.name,
                )

    sheet = build_order_sheet(engine, account_id, date, ticker)
    with conn:
        db.delete_pending_orders(conn, account_id, date)
        saved = db.insert_orders(conn, sheet)
    return saved


def _miss_reason(order: Order, close: Decimal, engine: TieredPositionEngine, liquidated: bool) -> str:
    if order.side == BUY:
        if close > order.limit_price:
            return f"close {close} above limit {order.limit_price}"
        if liquidated:
            return "no buy on a liquidation day"
        return "insufficient cash or buy count exhausted"
    tier = engine.tiers[order.tier - 1] if order.tier <= len(engine.tiers) else None
    if tier is not None and not tier.holding:
        return "tier already closed"
    if order.side == SELL:
        return f"close {close} below limit {order.limit_price}"
    return f"close {close} not below entry {order.limit_price}"


def process_order_execution(
    conn: sqlite3.Connection,
    account_id: int,
    date: str,
    ticker: Optional[str] = None,
) -> List[ExecutionResult]:
    """Fill/miss the day's pending orders at the realised close and persist the new state."""
    account = _require_account(conn, account_id)
    ticker = ticker or account["ticker"]
    price = db.get_price(conn, ticker, date)
    if price is None:
        raise ValidationError("date", f"no {ticker} close for {date}")

    orders = db.load_orders(conn, account_id, date, pending_only=True)
    if not orders:
        return []

    engine = _engine(conn, account, _previous_close(conn, ticker, date))
    was_holding = not engine.is_flat
    permitted = {(o.tier, o.side) for o in orders}
    trades = engine.step(date, price.close, permitted)
    liquidated = was_holding and engine.is_flat
    filled = {(t.tier, t.type): t for t in trades}

    cycle_number = int(account["cycle_number"])
    results: List[ExecutionResult] = []
    with conn:
        for o in orders:
            t = filled.get((o.tier, o.side))
            if t is not None:
                reason = f"filled at close {price.close}"
                db.mark_order(conn, o.id, True, t.price, reason)
                if t.type != BUY:
                    db.insert_profit(conn, account_id, cycle_number, t, date)
                results.append(ExecutionResult(o.id, date, o.tier, o.side, True, o.limit_price, price.close, t.shares, reason, t.profit))
            else:
                reason = _miss_reason(o, price.close, engine, liquidated)
                db.mark_order(conn, o.id, False, None, reason)
                results.append(ExecutionResult(o.id, date, o.tier, o.side, False, o.limit_price, price.close, o.shares, reason))

        if liquidated:
            engine.reseed(engine.cash)
            cycle_number += 1
        db.save_holdings(conn, account_id, engine.tiers)
        db.update_account(
            conn,
            account_id,
            cash=engine.cash,
            cycle_capital=engine.cycle_capital,
            cycle_number=cycle_number,
            buys_in_cycle=engine.buys_in_cycle,
        )

    logging.info(
        "account %s %s: %s/%s orders filled, cash=%s, tiers=%s",
        account_id, date, sum(1 for r in results if r.executed), len(results), engine.cash, engine.held_count,
    )
    return results


def process_previous_day_execution(
    conn: sqlite3.Connection,
    account_id: int,
    date: str,
    ticker: Optional[str] = None,
) -> List[ExecutionResult]:
    """Carry-forward: reconcile the last trading day before `date` if it still has unevaluated orders."""
    account = _require_account(conn, account_id)
    ticker = ticker or account["ticker"]
    prev = db.previous_trading_date(conn, ticker, date)
    if prev is None or not db.load_orders(conn, account_id, prev, pending_only=True):
        return []
    logging.info("account %s: reconciling carried-over orders of %s before %s", account_id, prev, date)
    return process_order_execution(conn, account_id, prev, ticker)


def process_historical_orders(
    conn: sqlite3.Connection,
    account_id: int,
    start: str,
    end: str,
    ticker: Optional[str] = None,
) -> List[ExecutionResult]:
    """Catch up day by day over stored trading dates: generate, then execute."""
    account = _require_account(conn, account_id)
    ticker = ticker or account["ticker"]
    if start > end:
        raise ValidationError("date_range", f"start {start} is after end {end}")
    out: List[ExecutionResult] = []
    for d in db.trading_dates(conn, ticker, start, end):
        generate_daily_orders(conn, account_id, d, ticker)
        out.extend(process_order_execution(conn, account_id, d, ticker))
    return out


def account_state(conn: sqlite3.Connection, account_id: int) -> Dict[str, Any]:
    account = _require_account(conn, account_id)
    tiers = db.load_holdings(conn, account_id)
    return {
        "id": account["id"],
        "name": account["name"],
        "ticker": account["ticker"],
        "strategy": account["strategy"],
        "seed_capital": float(account["seed_capital"]),
        "cash": float(account["cash"]),
        "cycle_capital": float(account["cycle_capital"]),
        "cycle_number": account["cycle_number"],
        "buys_in_cycle": account["buys_in_cycle"],
        "holdings": [t.to_dict() for t in tiers],
    }
