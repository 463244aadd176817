import pytest

import server
from split_trade_engine import db

from .conftest import make_prices, wave


@pytest.fixture
def client(db_path, conn):
    prices = make_prices(wave(160))
    db.upsert_prices(conn, "SOXL", prices)
    server.app.config["DB_PATH"] = db_path
    server.app.config["TESTING"] = True
    with server.app.test_client() as c:
        c.prices = prices
        yield c


class TestReadEndpoints:
    def test_health(self, client):
        body = client.get("/api/health").get_json()
        assert body["status"] == "ok"
        assert body["tickers"] == {"SOXL": 160}

    def test_prices_latest_first(self, client):
        rows = client.get("/api/prices?ticker=SOXL&days=5").get_json()
        assert len(rows) == 5
        assert rows[0]["date"] == client.prices[-1].date

    @pytest.mark.parametrize("days", ["abc", "0", "-3"])
    def test_bad_days_is_400(self, client, days):
        resp = client.get(f"/api/prices?ticker=SOXL&days={days}")
        assert resp.status_code == 400
        assert resp.get_json()["field"] == "days"

    def test_strategies(self, client):
        names = [s["name"] for s in client.get("/api/strategies").get_json()]
        assert names == ["Pro1", "Pro2", "Pro3"]


class TestRecommend:
    def test_recommend_then_cached(self, client):
        date = client.prices[120].date
        first = client.get(f"/api/recommend?ticker=SOXL&date={date}")
        assert first.status_code == 200
        assert first.get_json()["cached"] is False

        second = client.get(f"/api/recommend?ticker=SOXL&date={date}").get_json()
        assert second["cached"] is True
        assert second["strategy"] == first.get_json()["strategy"]

    def test_short_history_is_422(self, client):
        resp = client.get(f"/api/recommend?ticker=SOXL&date={client.prices[5].date}")
        assert resp.status_code == 422
        assert resp.get_json()["required"] == 60

    def test_missing_ticker_is_400(self, client):
        resp = client.get("/api/recommend")
        assert resp.status_code == 400
        assert resp.get_json()["field"] == "ticker"


class TestBacktest:
    def test_fixed_strategy(self, client):
        resp = client.post("/api/backtest", json={
            "ticker": "SOXL", "strategy": "Pro2", "initial_capital": 10000,
            "start_date": client.prices[0].date, "end_date": client.prices[-1].date,
        })
        assert resp.status_code == 200
        body = resp.get_json()
        assert len(body["daily_history"]) == 160

    def test_bad_capital(self, client):
        resp = client.post("/api/backtest", json={
            "ticker": "SOXL", "initial_capital": -1,
            "start_date": client.prices[0].date, "end_date": client.prices[-1].date,
        })
        assert resp.status_code == 400
        assert resp.get_json()["field"] == "initial_capital"

    def test_not_json(self, client):
        resp = client.post("/api/backtest", data="x")
        assert resp.status_code == 400

    def test_recommend_driven(self, client):
        resp = client.post("/api/backtest-recommend", json={
            "ticker": "SOXL", "initial_capital": 10000,
            "start_date": client.prices[80].date, "end_date": client.prices[-1].date,
        })
        assert resp.status_code == 200
        assert "strategy_stats" in resp.get_json()


class TestTrading:
    def test_account_lifecycle(self, client):
        resp = client.post("/api/trading/accounts", json={"ticker": "SOXL", "seed_capital": 10000, "strategy": "Pro1"})
        assert resp.status_code == 201
        account_id = resp.get_json()["id"]

        date = client.prices[1].date
        orders = client.get(f"/api/trading/accounts/{account_id}/orders?date={date}").get_json()
        assert orders["orders"][0]["side"] == "BUY"

        executed = client.post(f"/api/trading/accounts/{account_id}/execute", json={"date": date}).get_json()
        assert len(executed["results"]) == len(orders["orders"])

        holdings = client.get(f"/api/trading/accounts/{account_id}/holdings").get_json()
        assert holdings["account_id"] == account_id
        profits = client.get(f"/api/trading/accounts/{account_id}/profits").get_json()
        assert profits["profits"] == []

    def test_unknown_account(self, client):
        resp = client.get("/api/trading/accounts/999/holdings")
        assert resp.status_code == 400

    def test_orders_need_date(self, client):
        resp = client.get("/api/trading/accounts/1/orders")
        assert resp.status_code == 400
