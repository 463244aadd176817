from __future__ import annotations

import math
from typing import List, Sequence

import pandas as pd
import pytest

from split_trade_engine import db
from split_trade_engine.models import PricePoint


def make_prices(closes: Sequence[float], start: str = "2024-01-01", adj: Sequence[float] = None) -> List[PricePoint]:
    """Business-day series; adj_close defaults to close."""
    dates = pd.bdate_range(start=start, periods=len(closes)).strftime("%Y-%m-%d")
    adj = adj if adj is not None else closes
    return [PricePoint.of(d, c, adj_close=a) for d, c, a in zip(dates, closes, adj)]


def wave(n: int, base: float = 100.0, amp: float = 20.0, period: float = 15.0, drift: float = 0.05) -> List[float]:
    """Oscillating series with a slow drift; day-over-day drops reach ~8%, enough to trigger every preset."""
    return [round(base + amp * math.sin(i / period * 2 * math.pi) + drift * i, 2) for i in range(n)]


@pytest.fixture
def wave_prices():
    return make_prices(wave(260))


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "split_trade.db")
    conn = db.connect(path)
    try:
        db.init_db(conn)
    finally:
        conn.close()
    return path


@pytest.fixture
def conn(db_path):
    c = db.connect(db_path)
    yield c
    c.close()
