from datetime import datetime, timedelta

import pytest

from shared.schemas import PartialExit, Trade, TradeAction, TradeOutcome
from tradelens.app.trades.metrics import (
    calculate_trade_metrics,
    closed_quantity,
    duration_minutes,
    gross_pnl,
    net_pnl,
    percent_gain,
    r_multiple,
    reward_to_risk,
    trade_outcome,
)

T0 = datetime(2024, 3, 4, 9, 30)


def make_trade(**kwargs):
    defaults = dict(
        instrument="AAPL",
        action=TradeAction.BUY,
        entry_price=100.0,
        quantity=10,
        exit_price=110.0,
    )
    defaults.update(kwargs)
    return Trade(**defaults)


def test_long_gross_and_net():
    trade = make_trade(commission=2.0, fees=3.0)
    assert gross_pnl(trade) == pytest.approx(100.0)
    assert net_pnl(trade) == pytest.approx(95.0)


def test_short_mirrors_long():
    long_trade = make_trade()
    short_trade = make_trade(action=TradeAction.SELL)
    assert gross_pnl(short_trade) == pytest.approx(-gross_pnl(long_trade))


def test_short_profit_when_price_falls():
    trade = make_trade(action=TradeAction.SELL, entry_price=50.0, exit_price=45.0, quantity=4)
    assert gross_pnl(trade) == pytest.approx(20.0)


def test_contract_multiplier_scales_linearly():
    base = gross_pnl(make_trade(instrument="ES", entry_price=4000, exit_price=4010, quantity=2))
    scaled = gross_pnl(
        make_trade(
            instrument="ES", entry_price=4000, exit_price=4010, quantity=2, contract_multiplier=50
        )
    )
    assert scaled == pytest.approx(base * 50)
    assert scaled == pytest.approx(1000.0)


def test_negative_fees_are_treated_as_costs():
    trade = make_trade(commission=-2.0, fees=-3.0)
    assert net_pnl(trade) == pytest.approx(95.0)


def test_open_trade_has_no_pnl():
    trade = make_trade(exit_price=None)
    assert closed_quantity(trade) == 0
    assert gross_pnl(trade) is None
    assert net_pnl(trade) is None
    assert percent_gain(trade) is None
    assert r_multiple(trade) is None


def test_percent_gain_uses_cost_basis():
    trade = make_trade(fees=10.0)
    # (100 - 10) / (100 * 10) * 100
    assert percent_gain(trade) == pytest.approx(9.0)


def test_r_multiple_long_and_short():
    long_trade = make_trade(sl=95.0)
    assert r_multiple(long_trade) == pytest.approx(2.0)

    short_trade = make_trade(action=TradeAction.SELL, exit_price=90.0, sl=105.0)
    assert r_multiple(short_trade) == pytest.approx(2.0)


def test_r_multiple_none_when_stop_on_wrong_side():
    trade = make_trade(sl=101.0)
    assert r_multiple(trade) is None


def test_r_multiple_includes_multiplier_on_both_sides():
    trade = make_trade(sl=95.0, contract_multiplier=20)
    assert r_multiple(trade) == pytest.approx(2.0)


def test_reward_to_risk():
    assert reward_to_risk(make_trade(sl=95.0, target=115.0)) == pytest.approx(3.0)
    assert reward_to_risk(make_trade(sl=None, target=115.0)) is None
    assert reward_to_risk(make_trade(sl=100.0, target=115.0)) is None


def test_duration_in_whole_minutes():
    trade = make_trade(entry_time=T0, exit_time=T0 + timedelta(minutes=90, seconds=59))
    assert duration_minutes(trade) == 90
    assert duration_minutes(make_trade(entry_time=T0)) is None


def test_outcome():
    assert trade_outcome(5.0) is TradeOutcome.WIN
    assert trade_outcome(-0.01) is TradeOutcome.LOSS
    assert trade_outcome(0.0) is TradeOutcome.BREAKEVEN
    assert trade_outcome(None) is None


def test_partial_exits_realize_only_closed_quantity():
    trade = make_trade(
        entry_price=150.0,
        quantity=100,
        exit_price=None,
        partial_exits=[
            PartialExit(TradeAction.SELL, T0, 30, 152.0),
            PartialExit(TradeAction.SELL, T0 + timedelta(hours=1), 40, 154.0),
        ],
    )
    # weighted exit price as the stored trade would carry it
    trade.exit_price = (30 * 152.0 + 40 * 154.0) / 70

    assert closed_quantity(trade) == 70
    assert trade.exit_price == pytest.approx(153.142857, rel=1e-6)
    assert gross_pnl(trade) == pytest.approx(220.0)


def test_calculate_trade_metrics_bundle():
    trade = make_trade(
        commission=1.0,
        fees=1.0,
        sl=95.0,
        target=120.0,
        entry_time=T0,
        exit_time=T0 + timedelta(minutes=45),
    )
    metrics = calculate_trade_metrics(trade).to_dict()

    assert metrics["gross_pnl"] == pytest.approx(100.0)
    assert metrics["net_pnl"] == pytest.approx(98.0)
    assert metrics["total_fees"] == pytest.approx(2.0)
    assert metrics["r_multiple"] == pytest.approx(1.96)
    assert metrics["r2r"] == pytest.approx(4.0)
    assert metrics["trade_result"] == "win"
    assert metrics["trade_duration_minutes"] == 45
