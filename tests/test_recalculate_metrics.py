from contextlib import contextmanager

import pytest

from tradelens.app.maintenance import recalculate_metrics
from tradelens.app.maintenance.recalculate_metrics import find_mismatches, run
from tradelens.app.trades.service import create_trade


def closed_row(**kwargs):
    row = {
        "id": "t1",
        "user_id": "user-1",
        "instrument": "AAPL",
        "action": "buy",
        "entry_price": 100.0,
        "exit_price": 110.0,
        "quantity": 10,
    }
    row.update(kwargs)
    return row


def test_matching_metrics_are_not_reported():
    metrics = {"t1": {"gross_pnl": 100.0, "net_pnl": 100.004, "percent_gain": 10.0,
                      "r_multiple": None, "trade_result": "win"}}
    assert find_mismatches([closed_row()], metrics) == []


def test_stale_and_missing_metrics():
    metrics = {"t1": {"gross_pnl": 90.0, "net_pnl": 90.0, "percent_gain": 9.0,
                      "r_multiple": None, "trade_result": "win"}}
    rows = [closed_row(), closed_row(id="t2")]

    mismatches = find_mismatches(rows, metrics)
    assert mismatches[0]["trade_id"] == "t1"
    assert set(mismatches[0]["diffs"]) == {"gross_pnl", "net_pnl", "percent_gain"}
    assert mismatches[0]["diffs"]["net_pnl"] == {"stored": 90.0, "expected": pytest.approx(100.0)}
    assert mismatches[1] == {"trade_id": "t2", "missing": True}


@pytest.fixture
def patched_session(db, monkeypatch):
    @contextmanager
    def session():
        yield db

    monkeypatch.setattr(recalculate_metrics, "get_db_session", session)
    return db


def test_run_fix_rewrites_stale_rows(patched_session):
    db = patched_session
    db.seed("strategies", {"id": "s1", "user_id": "user-1"})
    trade = create_trade(
        db,
        "user-1",
        {"instrument": "AAPL", "entry_price": 100.0, "exit_price": 110.0, "quantity": 10,
         "strategy_id": "s1"},
    )
    db.rows("trade_metrics")[0]["net_pnl"] = -1.0

    assert len(run("verify")) == 1
    assert db.rows("trade_metrics")[0]["net_pnl"] == -1.0

    assert len(run("fix", user_id="user-1")) == 1
    assert db.rows("trade_metrics")[0]["net_pnl"] == pytest.approx(100.0)
    assert db.rows("strategies")[0]["total_pnl"] == pytest.approx(100.0)
    assert run("verify") == []
    assert trade["id"] == db.rows("trade_metrics")[0]["trade_id"]
