from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, Optional

from . import db
from .cache import RecommendationCache
from .config import EngineConfig
from .errors import InsufficientHistoryError
from .recommender import StrategyRecommender, get_recommendation


def precompute_recommendations(
    cfg: EngineConfig,
    ticker: str,
    *,
    workers: Optional[int] = None,
    limit: Optional[int] = None,
    cache: Optional[RecommendationCache] = None,
) -> Dict[str, Any]:
    """Fill recommendation_cache for every stored date with enough history.

    Dates already in the table are skipped, so an interrupted sweep resumes where
    it stopped. Records are written in batches as workers finish.
    """
    conn = db.connect(cfg.db_path)
    try:
        db.init_db(conn)
        prices = db.get_price_range(conn, ticker)
        done = db.cached_dates(conn, ticker)
    finally:
        conn.close()

    eligible = [p.date for i, p in enumerate(prices) if i + 1 >= cfg.min_history_days]
    cached = len(done.intersection(eligible))
    todo = [d for d in eligible if d not in done]
    if limit is not None:
        todo = todo[: max(0, int(limit))]

    if cache is None:
        cache = RecommendationCache(cfg.db_path, cfg.precompute_batch_size)
    written = 0
    failed = 0
    if todo:
        recommender = StrategyRecommender(ticker, prices, cfg)
        recommender.series.snapshot_table()
        n_workers = max(1, int(workers or cfg.precompute_workers))
        logging.info("precompute %s: %s dates to compute with %s workers", ticker, len(todo), n_workers)
        try:
            with ThreadPoolExecutor(max_workers=n_workers) as ex:
                futures = {
                    ex.submit(
                        get_recommendation,
                        ticker,
                        d,
                        prices,
                        recommender.date_index,
                        persist_to_cache=True,
                        cache=cache,
                        recommender=recommender,
                    ): d
                    for d in todo
                }
                for fut in as_completed(futures):
                    try:
                        fut.result()
                    except InsufficientHistoryError as e:
                        failed += 1
                        logging.warning("precompute %s %s skipped: %s", ticker, futures[fut], e)
                    if cache.pending >= cache.batch_size:
                        written += cache.flush()
        finally:
            # records finished before an unexpected error still reach the table
            written += cache.flush()

    return {
        "ticker": ticker,
        "eligible": len(eligible),
        "already_cached": cached,
        "computed": len(todo) - failed,
        "written": written,
        "failed": failed,
        "remaining": max(0, len(eligible) - cached - written),
    }
