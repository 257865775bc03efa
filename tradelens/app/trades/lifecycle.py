"""
Partial-exit lifecycle.

A position is entered by one or more fills in the main direction and
closed by fills in the opposite direction. The first fill fixes the main
direction. Entry and exit prices are quantity-weighted averages; status
moves open -> partially_closed -> closed as exits accumulate.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from shared.schemas import (
    ExecutionRow,
    PartialExit,
    Trade,
    TradeAction,
    TradeStatus,
)

logger = logging.getLogger(__name__)

# Float tolerance for quantity comparisons
QTY_EPSILON = 1e-9


@dataclass
class Position:
    """Aggregate of execution rows, ready to be stored as a trade."""
    action: TradeAction
    quantity: float
    entry_price: float
    entry_time: datetime
    exit_price: Optional[float]
    exit_time: Optional[datetime]
    total_exit_quantity: float
    remaining_quantity: float
    status: TradeStatus
    fees: float
    partial_exits: List[PartialExit] = field(default_factory=list)

    def to_trade_fields(self) -> dict:
        return {
            "action": self.action.value,
            "quantity": self.quantity,
            "entry_price": self.entry_price,
            "entry_time": self.entry_time.isoformat(),
            "exit_price": self.exit_price,
            "exit_time": self.exit_time.isoformat() if self.exit_time else None,
            "total_exit_quantity": self.total_exit_quantity,
            "remaining_quantity": self.remaining_quantity,
            "status": self.status.value,
            "fees": self.fees,
            "partial_exits": [e.to_dict() for e in self.partial_exits] or None,
        }


def weighted_average_price(fills) -> Optional[float]:
    total_qty = sum(f.quantity for f in fills)
    if total_qty <= 0:
        return None
    return sum(f.quantity * f.price for f in fills) / total_qty


def status_for(total_quantity: float, exit_quantity: float) -> TradeStatus:
    if exit_quantity <= 0:
        return TradeStatus.OPEN
    if exit_quantity + QTY_EPSILON >= total_quantity:
        return TradeStatus.CLOSED
    return TradeStatus.PARTIALLY_CLOSED


def _validate_fill(quantity: float, price: float) -> None:
    if quantity <= 0:
        raise ValueError("Quantity must be positive")
    if price <= 0:
        raise ValueError("Price must be positive")


def build_position(rows: List[ExecutionRow]) -> Position:
    """Aggregate form rows into a single trade with its exit timeline."""
    if not rows:
        raise ValueError("At least one trade row is required")

    for row in rows:
        _validate_fill(row.quantity, row.price)

    main_action = rows[0].action
    entries = [r for r in rows if r.action is main_action]
    exits = [r for r in rows if r.action is main_action.opposite]

    total_quantity = sum(r.quantity for r in entries)
    total_exit = sum(r.quantity for r in exits)

    if total_exit > total_quantity + QTY_EPSILON:
        raise ValueError(
            f"Exit quantity {total_exit} exceeds position quantity {total_quantity}"
        )

    partial_exits = [
        PartialExit(
            action=r.action,
            datetime=r.datetime,
            quantity=r.quantity,
            price=r.price,
            fee=r.fee or 0.0,
        )
        for r in exits
    ]

    return Position(
        action=main_action,
        quantity=total_quantity,
        entry_price=weighted_average_price(entries),
        entry_time=rows[0].datetime,
        exit_price=weighted_average_price(exits),
        exit_time=exits[-1].datetime if exits else None,
        total_exit_quantity=total_exit,
        remaining_quantity=max(0.0, total_quantity - total_exit),
        status=status_for(total_quantity, total_exit),
        fees=sum(r.fee or 0.0 for r in rows),
        partial_exits=partial_exits,
    )


def recalculate_position(trade: Trade) -> Trade:
    """Derive exit price, totals and status from the exit timeline.

    A trade without partial exits is closed in full when it has an exit
    price and open otherwise.
    """
    exits = trade.partial_exits
    if exits:
        total_exit = sum(e.quantity for e in exits)
        trade.exit_price = weighted_average_price(exits)
        trade.exit_time = max(e.datetime for e in exits)
    else:
        total_exit = trade.quantity if trade.exit_price is not None else 0.0

    trade.total_exit_quantity = total_exit
    trade.remaining_quantity = max(0.0, trade.quantity - total_exit)
    trade.status = status_for(trade.quantity, total_exit)
    return trade


def apply_partial_exit(trade: Trade, fill: PartialExit) -> Trade:
    """Record a partial close on an open trade and recompute its totals."""
    _validate_fill(fill.quantity, fill.price)

    if fill.action is not trade.action.opposite:
        raise ValueError(
            f"Exit action must be {trade.action.opposite.value} for a "
            f"{trade.action.value} trade"
        )

    if trade.exit_price is not None and not trade.partial_exits:
        raise ValueError("Trade is already closed with a single exit")

    already_exited = sum(e.quantity for e in trade.partial_exits)
    if already_exited + fill.quantity > trade.quantity + QTY_EPSILON:
        remaining = trade.quantity - already_exited
        raise ValueError(
            f"Exit quantity {fill.quantity} exceeds remaining quantity {remaining}"
        )

    trade.partial_exits.append(fill)
    trade.fees = (trade.fees or 0.0) + (fill.fee or 0.0)
    recalculate_position(trade)

    logger.info(
        f"Partial exit on {trade.instrument}: {fill.quantity} @ {fill.price} "
        f"-> {trade.status.value}, remaining {trade.remaining_quantity}"
    )
    return trade


def validate_partial_exits(trade: Trade) -> None:
    """Recorded exits must close the trade's side and never exceed its size."""
    if not trade.partial_exits:
        return

    for fill in trade.partial_exits:
        if fill.action is not trade.action.opposite:
            raise ValueError(
                f"Exit action must be {trade.action.opposite.value} for a "
                f"{trade.action.value} trade"
            )

    total_exit = sum(e.quantity for e in trade.partial_exits)
    if total_exit > trade.quantity + QTY_EPSILON:
        raise ValueError(
            f"Exited quantity {total_exit} exceeds trade quantity {trade.quantity}"
        )


def remove_partial_exit(trade: Trade, index: int) -> Trade:
    """Undo a recorded partial exit."""
    if index < 0 or index >= len(trade.partial_exits):
        raise ValueError(f"No partial exit at index {index}")

    removed = trade.partial_exits.pop(index)
    trade.fees = max(0.0, (trade.fees or 0.0) - (removed.fee or 0.0))
    if not trade.partial_exits:
        trade.exit_price = None
        trade.exit_time = None
    return recalculate_position(trade)


def suggest_next_action(rows: List[ExecutionRow]) -> TradeAction:
    """Action for the next form row: exit while quantity remains, else add."""
    if not rows:
        return TradeAction.BUY

    main_action = rows[0].action
    entered = sum(r.quantity for r in rows if r.action is main_action)
    exited = sum(r.quantity for r in rows if r.action is main_action.opposite)

    if entered - exited > QTY_EPSILON:
        return main_action.opposite
    return main_action
