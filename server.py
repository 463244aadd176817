from __future__ import annotations

import logging
import os
import sqlite3
from typing import Any, Dict

import numpy as np
import pandas as pd
from flask import Flask, jsonify, request
from flask_cors import CORS

from split_trade_engine import db
from split_trade_engine.backtester import run_backtest
from split_trade_engine.cache import RecommendationCache
from split_trade_engine.config import PRESETS, EngineConfig
from split_trade_engine.errors import EngineError, InconsistentStateError, InsufficientHistoryError, ValidationError
from split_trade_engine.orchestrator import BacktestRequest, resolve_window, run_recommend_backtest
from split_trade_engine.orders import (
    account_state,
    generate_daily_orders,
    open_account,
    process_order_execution,
)
from split_trade_engine.recommender import build_date_index, get_recommendation
from src.utils.config import load_settings

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

_settings = load_settings()

app = Flask(__name__)
CORS(app)
app.config["DB_PATH"] = _settings.get("database", {}).get("path", EngineConfig().db_path)


def get_conn() -> sqlite3.Connection:
    conn = db.connect(app.config["DB_PATH"])
    db.init_db(conn)
    return conn


def _status_for(e: EngineError) -> int:
    if isinstance(e, ValidationError):
        return 400
    if isinstance(e, InsufficientHistoryError):
        return 422
    if isinstance(e, InconsistentStateError):
        return 500
    return 500


@app.errorhandler(EngineError)
def _engine_error(e: EngineError):
    if isinstance(e, InconsistentStateError):
        logging.error("inconsistent state: %s", e)
    return jsonify(e.to_dict()), _status_for(e)


def _body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("body", "JSON object required")
    return payload


def _required(payload: Dict[str, Any], key: str) -> Any:
    v = payload.get(key)
    if v in (None, ""):
        raise ValidationError(key, "required")
    return v


def _prices(conn: sqlite3.Connection, ticker: str, end: str | None = None):
    prices = db.get_price_range(conn, ticker, None, end)
    if not prices:
        raise ValidationError("ticker", f"no stored prices for {ticker}")
    return prices


@app.get("/api/health")
def health():
    conn = get_conn()
    try:
        tickers = db.list_tickers(conn)
        cached = db.count_recommendations(conn)
    finally:
        conn.close()
    return jsonify({"status": "ok", "tickers": dict(tickers), "cached_recommendations": cached})


@app.get("/api/strategies")
def strategies():
    return jsonify([cfg.to_dict() for cfg in PRESETS.values()])


@app.get("/api/prices")
def prices():
    ticker = request.args.get("ticker")
    try:
        days = int(request.args.get("days", 180))
    except ValueError:
        raise ValidationError("days", "must be an integer") from None
    if days <= 0:
        raise ValidationError("days", "must be positive")
    if not ticker:
        return jsonify([])

    conn = get_conn()
    try:
        df = pd.read_sql_query(
            """
            SELECT date, open, high, low, close, adj_close, volume
            FROM daily_price
            WHERE ticker=?
            ORDER BY date DESC
            LIMIT ?
            """,
            conn,
            params=(ticker, days),
        )
    finally:
        conn.close()
    df = df.replace([np.inf, -np.inf], np.nan)
    df = df.astype(object).where(pd.notnull(df), None)
    return jsonify(df.to_dict(orient="records"))


@app.post("/api/backtest")
def backtest():
    payload = _body()
    ticker = _required(payload, "ticker")
    conn = get_conn()
    try:
        series = _prices(conn, ticker)
    finally:
        conn.close()
    start, end = resolve_window(series, _required(payload, "start_date"), _required(payload, "end_date"))
    res = run_backtest(payload.get("strategy", "Pro2"), series, start, _required(payload, "initial_capital"), end)
    return jsonify({"ok": True, "ticker": ticker, **res.to_dict()})


@app.post("/api/backtest-recommend")
def backtest_recommend():
    payload = _body()
    ticker = _required(payload, "ticker")
    conn = get_conn()
    try:
        series = _prices(conn, ticker)
    finally:
        conn.close()
    cache = RecommendationCache(app.config["DB_PATH"])
    cache.load(ticker)
    res = run_recommend_backtest(ticker, series, build_date_index(series), BacktestRequest.from_dict(payload), cache=cache)
    return jsonify({"ok": True, "ticker": ticker, **res.to_dict()})


@app.get("/api/recommend")
def recommend():
    ticker = request.args.get("ticker") or ""
    if not ticker:
        raise ValidationError("ticker", "required")
    date = request.args.get("date")
    conn = get_conn()
    try:
        series = _prices(conn, ticker, date)
        if date:
            cached = db.get_cached_recommendation(conn, ticker, date)
            if cached is not None and request.args.get("force") != "1":
                return jsonify({"ok": True, "cached": True, **cached.to_dict()})
    finally:
        conn.close()
    date = date or series[-1].date
    cache = RecommendationCache(app.config["DB_PATH"])
    rec = get_recommendation(
        ticker, date, series, build_date_index(series),
        persist_to_cache=True, force=request.args.get("force") == "1", cache=cache,
    )
    cache.flush()
    return jsonify({"ok": True, "cached": False, **rec.to_dict()})


@app.post("/api/trading/accounts")
def create_account():
    payload = _body()
    conn = get_conn()
    try:
        account_id = open_account(
            conn,
            str(payload.get("name") or ""),
            str(_required(payload, "ticker")),
            payload.get("strategy", "Pro2"),
            _required(payload, "seed_capital"),
        )
        return jsonify({"ok": True, **account_state(conn, account_id)}), 201
    finally:
        conn.close()


@app.get("/api/trading/accounts/<int:account_id>")
def get_account(account_id: int):
    conn = get_conn()
    try:
        return jsonify({"ok": True, **account_state(conn, account_id)})
    finally:
        conn.close()


@app.get("/api/trading/accounts/<int:account_id>/holdings")
def holdings(account_id: int):
    conn = get_conn()
    try:
        state = account_state(conn, account_id)
    finally:
        conn.close()
    return jsonify({"ok": True, "account_id": account_id, "holdings": state["holdings"]})


@app.get("/api/trading/accounts/<int:account_id>/orders")
def orders(account_id: int):
    date = request.args.get("date") or ""
    if not date:
        raise ValidationError("date", "required")
    conn = get_conn()
    try:
        sheet = generate_daily_orders(conn, account_id, date, strategy=request.args.get("strategy") or None)
    finally:
        conn.close()
    return jsonify({"ok": True, "account_id": account_id, "date": date, "orders": [o.to_dict() for o in sheet]})


@app.post("/api/trading/accounts/<int:account_id>/execute")
def execute(account_id: int):
    date = str(_required(_body(), "date"))
    conn = get_conn()
    try:
        results = process_order_execution(conn, account_id, date)
        state = account_state(conn, account_id)
    finally:
        conn.close()
    return jsonify({"ok": True, "account_id": account_id, "date": date, "results": [r.to_dict() for r in results], "account": state})


@app.get("/api/trading/accounts/<int:account_id>/profits")
def profits(account_id: int):
    conn = get_conn()
    try:
        account_state(conn, account_id)
        rows = db.load_profits(conn, account_id)
    finally:
        conn.close()
    return jsonify({"ok": True, "account_id": account_id, "profits": rows})


if __name__ == "__main__":
    host = os.getenv("STE_SERVER_HOST") or _settings.get("server", {}).get("host", "0.0.0.0")
    port = int(os.getenv("STE_SERVER_PORT") or _settings.get("server", {}).get("port", 5001))
    app.run(host=host, port=port)
