import io
import json
from datetime import datetime

import pandas as pd
import pytest

from shared.schemas import ExecutionRow, PartialExit, TradeAction
from tradelens.app.trades.service import (
    TradeNotFoundError,
    add_exit,
    create_trade,
    delete_trade,
    export_trades_csv,
    fetch_trade,
    fetch_trades,
    normalize_trade_payload,
    remove_exit,
    resolve_default_fees,
    to_utc_iso,
    update_trade,
)

USER = "user-1"


def base_trade(**kwargs):
    data = {
        "instrument": "AAPL",
        "action": "buy",
        "market_type": "Stocks",
        "entry_price": 100.0,
        "quantity": 10,
        "entry_time": "2024-03-04T09:30:00+00:00",
    }
    data.update(kwargs)
    return data


def test_to_utc_iso_applies_local_timezone():
    assert to_utc_iso("2024-01-15T09:30:00", "Asia/Kolkata") == "2024-01-15T04:00:00+00:00"
    assert to_utc_iso("2024-01-15T09:30:00Z") == "2024-01-15T09:30:00+00:00"
    assert to_utc_iso(None) is None


def test_normalize_payload():
    payload = normalize_trade_payload(
        {
            "action": "SHORT",
            "market_type": "Futures",
            "commission": -2.5,
            "fees": -1,
            "contract_multiplier": None,
            "strategy_id": "none",
            "entry_time": "2024-01-15T09:30:00Z",
        }
    )
    assert payload["action"] == "sell"
    assert payload["market_type"] == "futures"
    assert payload["commission"] == 2.5
    assert payload["fees"] == 1.0
    assert payload["contract_multiplier"] == 1
    assert payload["strategy_id"] is None
    assert payload["trade_date"] == "2024-01-15"


def test_normalize_rejects_unknown_action():
    with pytest.raises(ValueError):
        normalize_trade_payload({"action": "hold"})


def test_create_closed_trade_persists_metrics(db):
    trade = create_trade(db, USER, base_trade(exit_price=110.0, commission=1.0, fees=1.0))

    assert trade["status"] == "closed"
    assert trade["remaining_quantity"] == 0
    assert trade["net_pnl"] == pytest.approx(98.0)
    assert trade["trade_result"] == "win"

    metrics = db.rows("trade_metrics")
    assert len(metrics) == 1
    assert metrics[0]["trade_id"] == trade["id"]
    assert metrics[0]["gross_pnl"] == pytest.approx(100.0)


def test_create_trade_validation(db):
    with pytest.raises(ValueError):
        create_trade(db, USER, base_trade(quantity=0))
    with pytest.raises(ValueError):
        create_trade(db, USER, base_trade(instrument=""))
    assert db.rows("trades") == []


def test_create_from_executions(db):
    rows = [
        ExecutionRow(TradeAction.BUY, 100, 150.0, datetime(2024, 3, 4, 9, 30)),
        ExecutionRow(TradeAction.SELL, 30, 152.0, datetime(2024, 3, 4, 10, 0)),
        ExecutionRow(TradeAction.SELL, 40, 154.0, datetime(2024, 3, 4, 11, 0)),
    ]
    trade = create_trade(db, USER, {"instrument": "AAPL"}, executions=rows)

    assert trade["status"] == "partially_closed"
    assert trade["remaining_quantity"] == 30
    assert trade["exit_price"] == pytest.approx(153.142857, rel=1e-6)
    assert trade["gross_pnl"] == pytest.approx(220.0)
    assert len(trade["partial_exits"]) == 2

    stored = db.rows("trades")[0]
    assert isinstance(stored["partial_exits"], str)
    assert len(json.loads(stored["partial_exits"])) == 2


def test_default_fees_from_commission_schedule(db):
    db.seed(
        "commissions",
        {"account_id": None, "market_type": "stocks", "total_fees": 4.0},
        {"account_id": "acc-1", "market_type": "stocks", "total_fees": 1.5},
    )
    assert resolve_default_fees(db, "acc-1", "stocks") == 1.5
    assert resolve_default_fees(db, "acc-2", "stocks") == 4.0
    assert resolve_default_fees(db, None, "crypto") == 0.0

    trade = create_trade(db, USER, base_trade(exit_price=110.0, account_id="acc-1"))
    assert trade["fees"] == 1.5
    assert trade["net_pnl"] == pytest.approx(98.5)


def test_fetch_trades_attaches_metrics_and_tag_names(db):
    db.seed("tags", {"tag_id": "t1", "tag_name": "breakout"})
    create_trade(db, USER, base_trade(exit_price=105.0, tags=["t1", "t-missing"]))
    create_trade(db, USER, base_trade(entry_time="2024-03-05T09:30:00+00:00"))
    create_trade(db, "someone-else", base_trade(exit_price=90.0))

    trades = fetch_trades(db, USER)
    assert len(trades) == 2
    # newest entry first
    assert trades[0]["entry_time"].startswith("2024-03-05")
    assert trades[0]["net_pnl"] is None
    assert trades[1]["tags"] == ["breakout", "t-missing"]
    assert trades[1]["net_pnl"] == pytest.approx(50.0)


def test_fetch_trades_tolerates_bad_json(db):
    db.seed(
        "trades",
        {
            "id": "legacy",
            "user_id": USER,
            "instrument": "MSFT",
            "action": "BUY",
            "entry_price": 10,
            "quantity": 1,
            "entry_time": "2024-01-01T00:00:00+00:00",
            "partial_exits": "{not json",
            "tags": "not a list",
        },
    )
    trade = fetch_trade(db, USER, "legacy")
    assert trade["action"] == "buy"
    assert trade["partial_exits"] is None
    assert trade["tags"] == []


def test_update_recomputes_lifecycle_and_metrics(db):
    trade = create_trade(db, USER, base_trade())
    assert trade["status"] == "open"

    updated = update_trade(db, USER, trade["id"], {"exit_price": 120.0})
    assert updated["status"] == "closed"
    assert updated["net_pnl"] == pytest.approx(200.0)
    assert db.rows("trade_metrics")[0]["net_pnl"] == pytest.approx(200.0)


def test_update_other_users_trade_not_found(db):
    trade = create_trade(db, USER, base_trade())
    with pytest.raises(TradeNotFoundError):
        update_trade(db, "intruder", trade["id"], {"notes": "mine now"})


def test_add_and_remove_exit(db):
    trade = create_trade(db, USER, base_trade(quantity=100, entry_price=150.0))

    after = add_exit(
        db, USER, trade["id"], PartialExit(TradeAction.SELL, datetime(2024, 3, 4, 12), 30, 152.0)
    )
    assert after["status"] == "partially_closed"
    assert after["net_pnl"] == pytest.approx(60.0)

    with pytest.raises(ValueError):
        add_exit(
            db, USER, trade["id"], PartialExit(TradeAction.SELL, datetime(2024, 3, 4, 13), 71, 152.0)
        )

    reverted = remove_exit(db, USER, trade["id"], 0)
    assert reverted["status"] == "open"
    assert reverted["net_pnl"] is None


def test_strategy_stats_refreshed(db):
    db.seed("strategies", {"id": "s1", "user_id": USER, "name": "ORB"})
    create_trade(db, USER, base_trade(exit_price=110.0, strategy_id="s1"))
    loser = create_trade(db, USER, base_trade(exit_price=95.0, strategy_id="s1"))
    create_trade(db, USER, base_trade(strategy_id="s1"))

    strategy = db.rows("strategies")[0]
    assert strategy["total_trades"] == 2
    assert strategy["winning_trades"] == 1
    assert strategy["losing_trades"] == 1
    assert strategy["win_rate"] == 50.0
    assert strategy["total_pnl"] == pytest.approx(50.0)

    delete_trade(db, USER, loser["id"])
    strategy = db.rows("strategies")[0]
    assert strategy["total_trades"] == 1
    assert strategy["total_pnl"] == pytest.approx(100.0)


def test_delete_removes_metrics(db):
    trade = create_trade(db, USER, base_trade(exit_price=110.0))
    delete_trade(db, USER, trade["id"])
    assert db.rows("trades") == []
    assert db.rows("trade_metrics") == []
    with pytest.raises(TradeNotFoundError):
        fetch_trade(db, USER, trade["id"])


def test_export_csv(db):
    create_trade(db, USER, base_trade(exit_price=110.0, notes="clean breakout"))
    csv_text = export_trades_csv(fetch_trades(db, USER))

    header = csv_text.splitlines()[0].split(",")
    assert header[:3] == ["trade_date", "instrument", "market_type"]
    assert "clean breakout" in csv_text


def test_export_csv_empty():
    csv_text = export_trades_csv([])
    assert csv_text.strip().startswith("trade_date,instrument")
    assert len(pd.read_csv(io.StringIO(csv_text))) == 0


def partially_closed_trade(db):
    rows = [
        ExecutionRow(TradeAction.BUY, 100, 150.0, datetime(2024, 3, 4, 9, 30)),
        ExecutionRow(TradeAction.SELL, 70, 152.0, datetime(2024, 3, 4, 10, 0)),
    ]
    return create_trade(db, USER, {"instrument": "AAPL"}, executions=rows)


def test_update_cannot_shrink_below_exited_quantity(db):
    trade = partially_closed_trade(db)

    with pytest.raises(ValueError, match="exceeds trade quantity"):
        update_trade(db, USER, trade["id"], {"quantity": 10})

    stored = db.rows("trades")[0]
    assert stored["quantity"] == 100
    assert stored["status"] == "partially_closed"

    resized = update_trade(db, USER, trade["id"], {"quantity": 80})
    assert resized["remaining_quantity"] == 10
    assert resized["status"] == "partially_closed"


def test_update_rejects_flipping_side_with_exits(db):
    trade = partially_closed_trade(db)
    with pytest.raises(ValueError, match="Exit action must be buy"):
        update_trade(db, USER, trade["id"], {"action": "sell"})
    assert db.rows("trades")[0]["action"] == "buy"


@pytest.mark.parametrize(
    "changes",
    [{"quantity": -3}, {"quantity": 0}, {"entry_price": -5}, {"exit_price": 0}],
)
def test_update_rejects_non_positive_values(db, changes):
    trade = create_trade(db, USER, base_trade())
    with pytest.raises(ValueError, match="must be positive"):
        update_trade(db, USER, trade["id"], changes)
    assert db.rows("trades")[0]["entry_price"] == 100.0


def test_add_exit_reads_naive_time_in_given_timezone(db):
    trade = create_trade(db, USER, base_trade(quantity=4))
    after = add_exit(
        db,
        USER,
        trade["id"],
        PartialExit(TradeAction.SELL, datetime(2024, 3, 4, 10, 0), 1, 101.0),
        timezone_name="America/New_York",
    )
    assert after["partial_exits"][0]["datetime"] == "2024-03-04T15:00:00+00:00"
    # 09:30 UTC entry to 15:00 UTC exit
    assert after["trade_duration_minutes"] == 330


def test_fetch_trades_carries_total_fees(db):
    create_trade(db, USER, base_trade(exit_price=110.0, commission=3.0, fees=2.0))
    [trade] = fetch_trades(db, USER)
    assert trade["total_fees"] == pytest.approx(5.0)
    assert trade["net_pnl"] == pytest.approx(95.0)
