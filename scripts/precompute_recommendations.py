#!/usr/bin/env python
"""Fill recommendation_cache for every stored trading date with enough history.

Dates already cached are skipped, so rerunning after an interruption resumes
the sweep instead of starting over.
"""
from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from split_trade_engine import db
from split_trade_engine.config import EngineConfig
from split_trade_engine.precompute import precompute_recommendations
from src.utils.config import load_settings
from src.utils.notifier import job_summary, maybe_notify

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")


def tickers_with_history(cfg: EngineConfig) -> list:
    conn = db.connect(cfg.db_path)
    try:
        db.init_db(conn)
        return [t for t, _n in db.list_tickers(conn, min_rows=cfg.min_history_days)]
    finally:
        conn.close()


def main():
    ap = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    ap.add_argument("--ticker", action="append", help="repeatable; default: every ticker with 60+ stored days")
    ap.add_argument("--workers", type=int, default=None, help="thread pool size (default: STE_PRECOMPUTE_WORKERS)")
    ap.add_argument("--limit", type=int, default=None, help="max new dates per ticker in this run")
    ap.add_argument("--notify", action="store_true", help="post the summary to discord/telegram")
    args = ap.parse_args()

    settings = load_settings()
    cfg = EngineConfig(db_path=settings.get("database", {}).get("path", EngineConfig().db_path))

    tickers = args.ticker or tickers_with_history(cfg)
    if not tickers:
        logging.warning("no ticker has %s stored days; nothing to precompute", cfg.min_history_days)
        return

    t0 = time.time()
    summary = {}
    for t in tickers:
        out = precompute_recommendations(cfg, t, workers=args.workers, limit=args.limit)
        logging.info("precompute %s: %s", t, out)
        summary[t] = f"{out['written']} written/{out['remaining']} left/{out['failed']} failed"
    summary["elapsed"] = f"{time.time() - t0:.0f}s"

    if args.notify:
        maybe_notify(settings, job_summary("precompute", summary))


if __name__ == "__main__":
    main()
