"""Daily price collection (yfinance) into daily_price."""
from __future__ import annotations

import argparse
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pandas as pd
import yfinance as yf
from yfinance.exceptions import YFRateLimitError

from split_trade_engine import db
from split_trade_engine.models import PricePoint
from src.utils.config import load_settings
from src.utils.notifier import job_summary, maybe_notify

COLUMNS = ["date", "open", "high", "low", "close", "adj_close", "volume"]
YF_COLUMNS = {
    "Open": "open",
    "High": "high",
    "Low": "low",
    "Close": "close",
    "Adj Close": "adj_close",
    "Volume": "volume",
}

# Listing dates; the first load starts here
TICKER_START = {
    "SOXL": "2010-03-11",
    "TQQQ": "2010-02-09",
}


def fetch_history(
    ticker: str,
    start: str,
    end: str,
    *,
    retries: int = 3,
    retry_delay_sec: float = 2.0,
) -> pd.DataFrame:
    """Unadjusted daily bars plus Adj Close for [start, end] (end inclusive).

    Rate-limit errors are retried, sleeping retry_delay_sec * attempt.
    """
    # yfinance treats `end` as exclusive
    end_yf = (datetime.strptime(end, "%Y-%m-%d") + timedelta(days=1)).strftime("%Y-%m-%d")
    for attempt in range(1, retries + 1):
        try:
            return yf.Ticker(ticker).history(start=start, end=end_yf, interval="1d", auto_adjust=False, actions=False)
        except YFRateLimitError:
            if attempt == retries:
                raise
            wait = retry_delay_sec * attempt
            logging.warning("yahoo rate limited (%s/%s). sleeping %.1fs", attempt, retries, wait)
            time.sleep(wait)
    return pd.DataFrame()


def normalize_history(hist: Optional[pd.DataFrame]) -> pd.DataFrame:
    """yfinance history -> DataFrame[date, open, high, low, close, adj_close, volume].

    Dates are taken in the exchange timezone of the index; rows without a close are dropped.
    """
    if hist is None or hist.empty:
        return pd.DataFrame(columns=COLUMNS)
    df = hist.rename(columns=YF_COLUMNS).reindex(columns=COLUMNS[1:])
    df.insert(0, "date", [ts.strftime("%Y-%m-%d") for ts in hist.index])
    df = df.reset_index(drop=True).dropna(subset=["close"])
    df["adj_close"] = df["adj_close"].fillna(df["close"])
    df["volume"] = df["volume"].fillna(0).astype("int64")
    for c in ("open", "high", "low"):
        df[c] = df[c].fillna(df["close"])
    return df.drop_duplicates(subset=["date"], keep="last").sort_values("date").reset_index(drop=True)


def to_price_points(df: pd.DataFrame) -> List[PricePoint]:
    return [
        PricePoint.of(r.date, r.close, adj_close=r.adj_close, open=r.open, high=r.high, low=r.low, volume=r.volume)
        for r in df.itertuples(index=False)
    ]


def load_ticker(conn, ticker: str, settings: dict, start: Optional[str] = None, end: Optional[str] = None) -> int:
    """Incremental load: from the day after the last stored date (or the listing date) to `end`/today."""
    if start is None:
        latest = db.get_latest_prices(conn, ticker, 1)
        if latest:
            start = (datetime.strptime(latest[0].date, "%Y-%m-%d") + timedelta(days=1)).strftime("%Y-%m-%d")
        else:
            start = TICKER_START.get(ticker, "2010-01-01")
    end = end or datetime.now().strftime("%Y-%m-%d")
    if start > end:
        logging.info("%s already up to date (%s)", ticker, end)
        return 0

    yc = settings.get("yahoo", {})
    hist = fetch_history(
        ticker,
        start,
        end,
        retries=int(yc.get("retries", 3)),
        retry_delay_sec=float(yc.get("retry_delay_sec", 2.0)),
    )
    df = normalize_history(hist)
    n = db.upsert_prices(conn, ticker, to_price_points(df))
    logging.info("%s: %s rows upserted (%s..%s)", ticker, n, start, end)
    return n


def main(argv=None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    parser = argparse.ArgumentParser(description="Load daily prices from Yahoo into daily_price")
    parser.add_argument("--ticker", action="append", help="repeatable; default: settings yahoo.tickers")
    parser.add_argument("--start", default=None, help="YYYY-MM-DD (default: day after last stored)")
    parser.add_argument("--end", default=None, help="YYYY-MM-DD (default: today)")
    parser.add_argument("--notify", action="store_true", help="send a summary notification")
    args = parser.parse_args(argv)

    settings = load_settings()
    tickers = args.ticker or settings.get("yahoo", {}).get("tickers") or list(TICKER_START)
    conn = db.connect(settings.get("database", {}).get("path", "data/split_trade.db"))
    totals: Dict[str, Any] = {}
    try:
        db.init_db(conn)
        for t in tickers:
            try:
                totals[t] = load_ticker(conn, t, settings, args.start, args.end)
            except Exception as e:
                # one failing ticker must not stop the rest of the batch
                logging.warning("price load failed for %s: %s", t, e)
                totals[t] = f"error: {e}"
    finally:
        conn.close()

    if args.notify:
        maybe_notify(settings, job_summary("prices", totals))
    return 1 if any(isinstance(v, str) for v in totals.values()) else 0


if __name__ == "__main__":
    raise SystemExit(main())
