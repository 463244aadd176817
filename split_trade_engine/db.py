from __future__ import annotations

import json
from dataclasses import replace
import sqlite3
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .models import Order, PricePoint, RecommendationRecord, Tier, TradeAction
from .money import to_decimal

SCHEMA = """
CREATE TABLE IF NOT EXISTS daily_price (
    ticker TEXT NOT NULL,
    date TEXT NOT NULL,
    open REAL,
    high REAL,
    low REAL,
    close REAL NOT NULL,
    adj_close REAL NOT NULL,
    volume INTEGER DEFAULT 0,
    PRIMARY KEY (ticker, date)
);

CREATE TABLE IF NOT EXISTS trading_accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    ticker TEXT NOT NULL,
    strategy TEXT NOT NULL,
    seed_capital TEXT NOT NULL,
    cash TEXT NOT NULL,
    cycle_capital TEXT NOT NULL,
    cycle_number INTEGER NOT NULL DEFAULT 1,
    buys_in_cycle INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tier_holdings (
    account_id INTEGER NOT NULL REFERENCES trading_accounts(id) ON DELETE CASCADE,
    tier INTEGER NOT NULL,
    entry_date TEXT NOT NULL,
    entry_price TEXT NOT NULL,
    shares INTEGER NOT NULL,
    days_held INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (account_id, tier)
);

CREATE TABLE IF NOT EXISTS daily_orders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL REFERENCES trading_accounts(id) ON DELETE CASCADE,
    date TEXT NOT NULL,
    ticker TEXT NOT NULL,
    tier INTEGER NOT NULL,
    side TEXT NOT NULL,
    method TEXT NOT NULL,
    limit_price TEXT NOT NULL,
    shares INTEGER NOT NULL,
    executed INTEGER,
    executed_price TEXT,
    evaluated_at TEXT,
    reason TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_daily_orders_account_date ON daily_orders(account_id, date);

CREATE TABLE IF NOT EXISTS profit_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL REFERENCES trading_accounts(id) ON DELETE CASCADE,
    cycle_number INTEGER NOT NULL,
    tier INTEGER NOT NULL,
    side TEXT NOT NULL,
    buy_date TEXT,
    buy_price TEXT,
    sell_date TEXT NOT NULL,
    sell_price TEXT NOT NULL,
    shares INTEGER NOT NULL,
    profit TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS recommendation_cache (
    ticker TEXT NOT NULL,
    date TEXT NOT NULL,
    strategy TEXT NOT NULL,
    reason TEXT,
    payload TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (ticker, date)
);
"""


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


def connect(db_path: str) -> sqlite3.Connection:
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout=5000;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA)
    conn.commit()


# ---- prices ---------------------------------------------------------------------------

def _price_from_row(r: sqlite3.Row) -> PricePoint:
    return PricePoint.of(
        r["date"],
        r["close"],
        adj_close=r["adj_close"],
        open=r["open"],
        high=r["high"],
        low=r["low"],
        volume=r["volume"],
    )


def upsert_prices(conn: sqlite3.Connection, ticker: str, prices: Iterable[PricePoint]) -> int:
    rows = [
        (ticker, p.date, float(p.open), float(p.high), float(p.low), float(p.close), float(p.adj_close), int(p.volume))
        for p in prices
    ]
    if not rows:
        return 0
    with conn:
        conn.executemany(
            "INSERT OR REPLACE INTO daily_price (ticker, date, open, high, low, close, adj_close, volume) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            rows,
        )
    return len(rows)


def get_price_range(
    conn: sqlite3.Connection,
    ticker: str,
    start: Optional[str] = None,
    end: Optional[str] = None,
) -> List[PricePoint]:
    """Ascending prices for ticker within [start, end] (either bound optional)."""
    sql = "SELECT * FROM daily_price WHERE ticker=?"
    args: List[Any] = [ticker]
    if start:
        sql += " AND date >= ?"
        args.append(start)
    if end:
        sql += " AND date <= ?"
        args.append(end)
    sql += " ORDER BY date ASC"
    return [_price_from_row(r) for r in conn.execute(sql, args).fetchall()]


def get_latest_prices(conn: sqlite3.Connection, ticker: str, limit: int) -> List[PricePoint]:
    """Most recent first."""
    cur = conn.execute("SELECT * FROM daily_price WHERE ticker=? ORDER BY date DESC LIMIT ?", (ticker, int(limit)))
    return [_price_from_row(r) for r in cur.fetchall()]


def get_price(conn: sqlite3.Connection, ticker: str, date: str) -> Optional[PricePoint]:
    r = conn.execute("SELECT * FROM daily_price WHERE ticker=? AND date=?", (ticker, date)).fetchone()
    return _price_from_row(r) if r else None


def previous_trading_date(conn: sqlite3.Connection, ticker: str, date: str) -> Optional[str]:
    r = conn.execute(
        "SELECT MAX(date) FROM daily_price WHERE ticker=? AND date < ?",
        (ticker, date),
    ).fetchone()
    return r[0] if r and r[0] else None


def trading_dates(conn: sqlite3.Connection, ticker: str, start: str, end: str) -> List[str]:
    cur = conn.execute(
        "SELECT date FROM daily_price WHERE ticker=? AND date >= ? AND date <= ? ORDER BY date",
        (ticker, start, end),
    )
    return [str(r[0]) for r in cur.fetchall()]


def list_tickers(conn: sqlite3.Connection, min_rows: int = 1) -> List[Tuple[str, int]]:
    """Return [(ticker, n_rows), ...]"""
    cur = conn.execute(
        "SELECT ticker, COUNT(*) AS n FROM daily_price GROUP BY ticker HAVING n >= ? ORDER BY ticker",
        (int(min_rows),),
    )
    return [(str(r[0]), int(r[1])) for r in cur.fetchall()]


# ---- recommendation cache -------------------------------------------------------------

def save_recommendations(conn: sqlite3.Connection, records: Sequence[RecommendationRecord]) -> None:
    now = _now()
    rows = [
        (r.ticker, r.date, r.strategy, r.reason, json.dumps(r.to_dict(), ensure_ascii=False, sort_keys=True), now)
        for r in records
    ]
    with conn:
        conn.executemany(
            "INSERT OR REPLACE INTO recommendation_cache (ticker, date, strategy, reason, payload, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            rows,
        )


def load_recommendations(conn: sqlite3.Connection, ticker: str) -> List[RecommendationRecord]:
    cur = conn.execute("SELECT payload FROM recommendation_cache WHERE ticker=? ORDER BY date", (ticker,))
    return [RecommendationRecord.from_dict(json.loads(r[0])) for r in cur.fetchall()]


def get_cached_recommendation(conn: sqlite3.Connection, ticker: str, date: str) -> Optional[RecommendationRecord]:
    r = conn.execute("SELECT payload FROM recommendation_cache WHERE ticker=? AND date=?", (ticker, date)).fetchone()
    return RecommendationRecord.from_dict(json.loads(r[0])) if r else None


def cached_dates(conn: sqlite3.Connection, ticker: str) -> Set[str]:
    return {str(r[0]) for r in conn.execute("SELECT date FROM recommendation_cache WHERE ticker=?", (ticker,))}


def count_recommendations(conn: sqlite3.Connection, ticker: Optional[str] = None) -> int:
    if ticker:
        return int(conn.execute("SELECT COUNT(*) FROM recommendation_cache WHERE ticker=?", (ticker,)).fetchone()[0])
    return int(conn.execute("SELECT COUNT(*) FROM recommendation_cache").fetchone()[0])


def delete_recommendation(conn: sqlite3.Connection, ticker: str, date: str) -> None:
    with conn:
        conn.execute("DELETE FROM recommendation_cache WHERE ticker=? AND date=?", (ticker, date))


# ---- accounts / holdings --------------------------------------------------------------
# The helpers below never commit; callers own the transaction (`with conn:`).

def create_account(conn: sqlite3.Connection, name: str, ticker: str, strategy: str, seed_capital: Decimal) -> int:
    seed = str(to_decimal(seed_capital))
    cur = conn.execute(
        "INSERT INTO trading_accounts (name, ticker, strategy, seed_capital, cash, cycle_capital, cycle_number, "
        "buys_in_cycle, created_at) VALUES (?, ?, ?, ?, ?, ?, 1, 0, ?)",
        (name, ticker, strategy, seed, seed, seed, _now()),
    )
    return int(cur.lastrowid)


def get_account(conn: sqlite3.Connection, account_id: int) -> Optional[Dict[str, Any]]:
    r = conn.execute("SELECT * FROM trading_accounts WHERE id=?", (int(account_id),)).fetchone()
    if not r:
        return None
    out = dict(r)
    for k in ("seed_capital", "cash", "cycle_capital"):
        out[k] = Decimal(out[k])
    return out


def update_account(conn: sqlite3.Connection, account_id: int, **fields: Any) -> None:
    if not fields:
        return
    cols = ", ".join(f"{k}=?" for k in fields)
    vals = [str(v) if isinstance(v, Decimal) else v for v in fields.values()]
    conn.execute(f"UPDATE trading_accounts SET {cols} WHERE id=?", (*vals, int(account_id)))


def load_holdings(conn: sqlite3.Connection, account_id: int) -> List[Tier]:
    cur = conn.execute("SELECT * FROM tier_holdings WHERE account_id=? ORDER BY tier", (int(account_id),))
    return [
        Tier(
            index=int(r["tier"]),
            entry_date=r["entry_date"],
            entry_price=Decimal(r["entry_price"]),
            shares=int(r["shares"]),
            days_held=int(r["days_held"]),
        )
        for r in cur.fetchall()
    ]


def save_holdings(conn: sqlite3.Connection, account_id: int, tiers: Iterable[Tier]) -> None:
    conn.execute("DELETE FROM tier_holdings WHERE account_id=?", (int(account_id),))
    conn.executemany(
        "INSERT INTO tier_holdings (account_id, tier, entry_date, entry_price, shares, days_held) VALUES (?, ?, ?, ?, ?, ?)",
        [
            (int(account_id), t.index, t.entry_date, str(t.entry_price), t.shares, t.days_held)
            for t in tiers
            if t.holding
        ],
    )


# ---- orders / profits -----------------------------------------------------------------

def _order_from_row(r: sqlite3.Row) -> Order:
    executed = r["executed"]
    return Order(
        id=int(r["id"]),
        account_id=int(r["account_id"]),
        date=r["date"],
        ticker=r["ticker"],
        tier=int(r["tier"]),
        side=r["side"],
        method=r["method"],
        limit_price=Decimal(r["limit_price"]),
        shares=int(r["shares"]),
        executed=None if executed is None else bool(executed),
        executed_price=Decimal(r["executed_price"]) if r["executed_price"] is not None else None,
        reason=r["reason"],
    )


def delete_pending_orders(conn: sqlite3.Connection, account_id: int, date: str) -> None:
    conn.execute(
        "DELETE FROM daily_orders WHERE account_id=? AND date=? AND evaluated_at IS NULL",
        (int(account_id), date),
    )


def insert_orders(conn: sqlite3.Connection, orders: Iterable[Order]) -> List[Order]:
    out: List[Order] = []
    now = _now()
    for o in orders:
        cur = conn.execute(
            "INSERT INTO daily_orders (account_id, date, ticker, tier, side, method, limit_price, shares, reason, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (o.account_id, o.date, o.ticker, o.tier, o.side, o.method, str(o.limit_price), o.shares, o.reason, now),
        )
        out.append(replace(o, id=int(cur.lastrowid)))
    return out


def load_orders(conn: sqlite3.Connection, account_id: int, date: str, pending_only: bool = False) -> List[Order]:
    sql = "SELECT * FROM daily_orders WHERE account_id=? AND date=?"
    if pending_only:
        sql += " AND evaluated_at IS NULL"
    sql += " ORDER BY tier, id"
    return [_order_from_row(r) for r in conn.execute(sql, (int(account_id), date)).fetchall()]


def mark_order(
    conn: sqlite3.Connection,
    order_id: int,
    executed: bool,
    executed_price: Optional[Decimal],
    reason: str,
) -> None:
    conn.execute(
        "UPDATE daily_orders SET executed=?, executed_price=?, reason=?, evaluated_at=? WHERE id=?",
        (
            1 if executed else 0,
            str(executed_price) if executed_price is not None else None,
            reason,
            _now(),
            int(order_id),
        ),
    )


def insert_profit(conn: sqlite3.Connection, account_id: int, cycle_number: int, trade: TradeAction, sell_date: str) -> None:
    conn.execute(
        "INSERT INTO profit_records (account_id, cycle_number, tier, side, buy_date, buy_price, sell_date, sell_price, "
        "shares, profit) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            int(account_id),
            int(cycle_number),
            trade.tier,
            trade.type,
            trade.entry_date,
            str(trade.entry_price) if trade.entry_price is not None else None,
            sell_date,
            str(trade.price),
            trade.shares,
            str(trade.profit if trade.profit is not None else Decimal("0")),
        ),
    )


def load_profits(conn: sqlite3.Connection, account_id: int) -> List[Dict[str, Any]]:
    cur = conn.execute("SELECT * FROM profit_records WHERE account_id=? ORDER BY sell_date, tier", (int(account_id),))
    return [dict(r) for r in cur.fetchall()]
