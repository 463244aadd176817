from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

from . import db
from .backtester import run_backtest
from .cache import RecommendationCache
from .config import EngineConfig
from .errors import EngineError, ValidationError
from .orchestrator import BacktestRequest, resolve_window, run_recommend_backtest
from .orders import (
    account_state,
    generate_daily_orders,
    open_account,
    process_historical_orders,
    process_order_execution,
)
from .precompute import precompute_recommendations
from .recommender import build_date_index, get_recommendation

def _p(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, default=str))

def _load_prices(cfg: EngineConfig, ticker: str, end: str = None):
    conn = db.connect(cfg.db_path)
    try:
        db.init_db(conn)
        prices = db.get_price_range(conn, ticker, None, end)
    finally:
        conn.close()
    if not prices:
        raise ValidationError("ticker", f"no stored prices for {ticker}")
    return prices

def cmd_backtest(args: argparse.Namespace) -> None:
    cfg = EngineConfig(db_path=args.db)
    prices = _load_prices(cfg, args.ticker)
    start, end = resolve_window(prices, args.start, args.end)
    res = run_backtest(args.strategy, prices, start, args.capital, end)
    _p({"ok": True, "ticker": args.ticker, "strategy": args.strategy, **res.to_dict(include_history=args.history)})

def cmd_backtest_recommend(args: argparse.Namespace) -> None:
    cfg = EngineConfig(db_path=args.db)
    prices = _load_prices(cfg, args.ticker)
    cache = RecommendationCache(cfg.db_path, cfg.precompute_batch_size)
    cache.load(args.ticker)
    res = run_recommend_backtest(
        args.ticker,
        prices,
        build_date_index(prices),
        BacktestRequest(args.start, args.end, args.capital),
        cfg=cfg,
        cache=cache,
    )
    _p({"ok": True, "ticker": args.ticker, **res.to_dict(include_history=args.history)})

def cmd_recommend(args: argparse.Namespace) -> None:
    cfg = EngineConfig(db_path=args.db)
    prices = _load_prices(cfg, args.ticker, args.date)
    date = args.date or prices[-1].date
    cache = RecommendationCache(cfg.db_path) if args.persist or args.force else None
    rec = get_recommendation(
        args.ticker, date, prices, build_date_index(prices),
        persist_to_cache=args.persist, force=args.force, cache=cache, cfg=cfg,
    )
    if cache is not None:
        cache.flush()
    _p({"ok": True, **rec.to_dict()})

def cmd_precompute(args: argparse.Namespace) -> None:
    cfg = EngineConfig(db_path=args.db)
    out = precompute_recommendations(cfg, args.ticker, workers=args.workers, limit=args.limit)
    _p({"ok": True, **out})

def cmd_create_account(args: argparse.Namespace) -> None:
    conn = db.connect(args.db)
    try:
        db.init_db(conn)
        account_id = open_account(conn, args.name, args.ticker, args.strategy, args.capital)
        _p({"ok": True, **account_state(conn, account_id)})
    finally:
        conn.close()

def cmd_orders(args: argparse.Namespace) -> None:
    conn = db.connect(args.db)
    try:
        orders = generate_daily_orders(conn, args.account, args.date, strategy=args.strategy)
        _p({"ok": True, "account_id": args.account, "date": args.date, "orders": [o.to_dict() for o in orders]})
    finally:
        conn.close()

def cmd_execute(args: argparse.Namespace) -> None:
    conn = db.connect(args.db)
    try:
        results = process_order_execution(conn, args.account, args.date)
        _p({"ok": True, "account_id": args.account, "date": args.date, "results": [r.to_dict() for r in results],
            "account": account_state(conn, args.account)})
    finally:
        conn.close()

def cmd_catch_up(args: argparse.Namespace) -> None:
    conn = db.connect(args.db)
    try:
        results = process_historical_orders(conn, args.account, args.start, args.end)
        _p({"ok": True, "account_id": args.account, "n_results": len(results),
            "filled": sum(1 for r in results if r.executed), "account": account_state(conn, args.account)})
    finally:
        conn.close()

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="split_trade_engine", description="Tiered split-buy/split-sell backtest, recommendation and order-sheet engine.")
    p.add_argument("--db", default=EngineConfig().db_path, help="SQLite DB path (default: STE_DB_PATH or data/split_trade.db)")

    sub = p.add_subparsers(dest="cmd", required=True)

    p_bt = sub.add_parser("backtest", help="Fixed-strategy backtest")
    p_bt.add_argument("--ticker", required=True)
    p_bt.add_argument("--strategy", default="Pro2", choices=("Pro1", "Pro2", "Pro3"))
    p_bt.add_argument("--start", required=True, help="YYYY-MM-DD")
    p_bt.add_argument("--end", required=True, help="YYYY-MM-DD")
    p_bt.add_argument("--capital", default="10000")
    p_bt.add_argument("--history", action="store_true", help="Include the daily snapshot log")
    p_bt.set_defaults(func=cmd_backtest)

    p_br = sub.add_parser("backtest-recommend", help="Backtest re-selecting the strategy at every cycle boundary")
    p_br.add_argument("--ticker", required=True)
    p_br.add_argument("--start", required=True)
    p_br.add_argument("--end", required=True)
    p_br.add_argument("--capital", default="10000")
    p_br.add_argument("--history", action="store_true")
    p_br.set_defaults(func=cmd_backtest_recommend)

    p_rec = sub.add_parser("recommend", help="Strategy recommendation for one date (default: latest)")
    p_rec.add_argument("--ticker", required=True)
    p_rec.add_argument("--date", default=None)
    p_rec.add_argument("--persist", action="store_true", help="Write the result to recommendation_cache")
    p_rec.add_argument("--force", action="store_true", help="Recompute even if cached")
    p_rec.set_defaults(func=cmd_recommend)

    p_pre = sub.add_parser("precompute", help="Fill recommendation_cache for every eligible stored date")
    p_pre.add_argument("--ticker", required=True)
    p_pre.add_argument("--workers", type=int, default=None)
    p_pre.add_argument("--limit", type=int, default=None, help="Stop after this many new dates")
    p_pre.set_defaults(func=cmd_precompute)

    p_acc = sub.add_parser("create-account", help="Open a live trading account")
    p_acc.add_argument("--name", default="")
    p_acc.add_argument("--ticker", required=True)
    p_acc.add_argument("--strategy", default="Pro2", choices=("Pro1", "Pro2", "Pro3"))
    p_acc.add_argument("--capital", required=True)
    p_acc.set_defaults(func=cmd_create_account)

    p_ord = sub.add_parser("orders", help="Generate the order sheet for a date (reconciles the previous day first)")
    p_ord.add_argument("--account", type=int, required=True)
    p_ord.add_argument("--date", required=True)
    p_ord.add_argument("--strategy", default=None, choices=("Pro1", "Pro2", "Pro3"))
    p_ord.set_defaults(func=cmd_orders)

    p_ex = sub.add_parser("execute", help="Reconcile a date's orders against its close")
    p_ex.add_argument("--account", type=int, required=True)
    p_ex.add_argument("--date", required=True)
    p_ex.set_defaults(func=cmd_execute)

    p_cu = sub.add_parser("catch-up", help="Generate and execute day by day over a stored date range")
    p_cu.add_argument("--account", type=int, required=True)
    p_cu.add_argument("--start", required=True)
    p_cu.add_argument("--end", required=True)
    p_cu.set_defaults(func=cmd_catch_up)

    return p

def main(argv=None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    p = build_parser()
    args = p.parse_args(argv)
    try:
        args.func(args)
    except EngineError as e:
        _p(e.to_dict())
        return 1
    return 0

if __name__ == "__main__":
    sys.exit(main())
