"""
Per-trade metrics.

Gross P&L = (Exit - Entry) x Closed quantity x Multiplier   (mirrored for shorts)
Net P&L   = Gross P&L - Commission - Fees
% Gain    = Net P&L / (Entry x Closed quantity) x 100
R-Multiple = Net P&L / Risk, Risk = |Entry - Stop| x Closed quantity x Multiplier

P&L is realized only on the quantity that has been exited. For a trade
with partial exits that is the sum of exit quantities, and the exit price
is the quantity-weighted average of the exits.
"""

from typing import Optional

from shared.schemas import Trade, TradeMetrics, TradeOutcome


def closed_quantity(trade: Trade) -> float:
    """Quantity the P&L is realized on."""
    if trade.partial_exits:
        return sum(e.quantity for e in trade.partial_exits)
    if trade.exit_price is None:
        return 0.0
    return trade.quantity


def gross_pnl(trade: Trade) -> Optional[float]:
    if trade.exit_price is None:
        return None

    qty = closed_quantity(trade)
    if trade.is_long:
        pnl = (trade.exit_price - trade.entry_price) * qty
    else:
        pnl = (trade.entry_price - trade.exit_price) * qty

    return pnl * trade.contract_multiplier


def total_fees(trade: Trade) -> float:
    return abs(trade.commission or 0.0) + abs(trade.fees or 0.0)


def net_pnl(trade: Trade) -> Optional[float]:
    gross = gross_pnl(trade)
    if gross is None:
        return None
    return gross - total_fees(trade)


def percent_gain(trade: Trade) -> Optional[float]:
    net = net_pnl(trade)
    if net is None:
        return None

    cost_basis = trade.entry_price * closed_quantity(trade)
    if cost_basis == 0:
        return None
    return net / cost_basis * 100


def risk_amount(trade: Trade) -> Optional[float]:
    """Money at risk to the stop loss on the closed quantity."""
    if trade.sl is None:
        return None

    qty = closed_quantity(trade)
    if trade.is_long:
        risk = (trade.entry_price - trade.sl) * qty
    else:
        risk = (trade.sl - trade.entry_price) * qty
    return risk * trade.contract_multiplier


def r_multiple(trade: Trade) -> Optional[float]:
    net = net_pnl(trade)
    risk = risk_amount(trade)
    if net is None or risk is None or risk <= 0:
        return None
    return net / risk


def reward_to_risk(trade: Trade) -> Optional[float]:
    """Planned reward:risk from target and stop levels."""
    if trade.sl is None or trade.target is None:
        return None

    risk = abs(trade.entry_price - trade.sl)
    if risk == 0:
        return None
    return abs(trade.target - trade.entry_price) / risk


def duration_minutes(trade: Trade) -> Optional[int]:
    if trade.entry_time is None or trade.exit_time is None:
        return None
    return int((trade.exit_time - trade.entry_time).total_seconds() // 60)


def trade_outcome(net: Optional[float]) -> Optional[TradeOutcome]:
    if net is None:
        return None
    if net > 0:
        return TradeOutcome.WIN
    if net < 0:
        return TradeOutcome.LOSS
    return TradeOutcome.BREAKEVEN


def _round(value: Optional[float], digits: int) -> Optional[float]:
    return None if value is None else round(value, digits)


def calculate_trade_metrics(trade: Trade) -> TradeMetrics:
    """All metrics for one trade, rounded for storage."""
    net = net_pnl(trade)
    return TradeMetrics(
        gross_pnl=_round(gross_pnl(trade), 4),
        net_pnl=_round(net, 4),
        total_fees=round(total_fees(trade), 4),
        percent_gain=_round(percent_gain(trade), 4),
        r_multiple=_round(r_multiple(trade), 4),
        r2r=_round(reward_to_risk(trade), 4),
        trade_result=trade_outcome(_round(net, 4)),
        trade_duration_minutes=duration_minutes(trade),
    )
