import json

import pytest

from split_trade_engine import db
from split_trade_engine.cli import main

from .conftest import make_prices, wave


@pytest.fixture
def loaded(db_path, conn):
    prices = make_prices(wave(160))
    db.upsert_prices(conn, "SOXL", prices)
    return db_path, prices


def run(capsys, argv):
    code = main(argv)
    return code, json.loads(capsys.readouterr().out)


class TestCli:
    def test_backtest(self, capsys, loaded):
        path, prices = loaded
        code, out = run(capsys, ["--db", path, "backtest", "--ticker", "SOXL", "--strategy", "Pro1",
                                 "--start", prices[0].date, "--end", prices[-1].date])
        assert code == 0
        assert out["ok"] is True
        assert "daily_history" not in out

    def test_recommend_persists(self, capsys, loaded, conn):
        path, prices = loaded
        code, out = run(capsys, ["--db", path, "recommend", "--ticker", "SOXL", "--date", prices[100].date, "--persist"])
        assert code == 0
        assert out["strategy"] in ("Pro1", "Pro2", "Pro3")
        assert db.get_cached_recommendation(conn, "SOXL", prices[100].date) is not None

    def test_insufficient_history_is_reported(self, capsys, loaded):
        path, prices = loaded
        code, out = run(capsys, ["--db", path, "recommend", "--ticker", "SOXL", "--date", prices[10].date])
        assert code == 1
        assert out["error"] == "insufficient_history"

    def test_unknown_ticker(self, capsys, loaded):
        path, _ = loaded
        code, out = run(capsys, ["--db", path, "recommend", "--ticker", "NOPE"])
        assert code == 1
        assert out["field"] == "ticker"

    def test_account_flow(self, capsys, loaded):
        path, prices = loaded
        code, out = run(capsys, ["--db", path, "create-account", "--ticker", "SOXL", "--capital", "10000"])
        assert code == 0
        account = str(out["id"])

        code, out = run(capsys, ["--db", path, "catch-up", "--account", account,
                                 "--start", prices[1].date, "--end", prices[40].date])
        assert code == 0
        assert out["n_results"] > 0
