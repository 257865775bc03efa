"""
Shared schemas and data contracts between the API, trade service and analytics.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class TradeAction(Enum):
    BUY = "buy"
    SELL = "sell"

    @classmethod
    def parse(cls, value: Optional[str]) -> "TradeAction":
        """Accept buy/sell as well as long/short, any case."""
        normalized = (value or "buy").strip().lower()
        if normalized in ("buy", "long"):
            return cls.BUY
        if normalized in ("sell", "short"):
            return cls.SELL
        raise ValueError(f"Invalid trade action: {value!r}")

    @property
    def opposite(self) -> "TradeAction":
        return TradeAction.SELL if self is TradeAction.BUY else TradeAction.BUY


class TradeStatus(Enum):
    OPEN = "open"
    PARTIALLY_CLOSED = "partially_closed"
    CLOSED = "closed"


class TradeOutcome(Enum):
    WIN = "win"
    LOSS = "loss"
    BREAKEVEN = "breakeven"


class BillingCycle(Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"
    LIFETIME = "lifetime"


class PaymentStatus(Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SubscriptionStatus(Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class EmailStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp (Postgres or JS style) into a datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def load_json_list(value: Any) -> Optional[List[Any]]:
    """Lenient decoding of JSON list columns: bad or non-list data becomes None."""
    if not value:
        return None
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except ValueError:
            return None
        return decoded if isinstance(decoded, list) else None
    return None


def dump_json_list(value: Optional[List[Any]]) -> Optional[str]:
    return json.dumps(value) if value else None


@dataclass
class ExecutionRow:
    """One fill entered on the trade form: an entry or an exit."""
    action: TradeAction
    quantity: float
    price: float
    datetime: datetime
    fee: float = 0.0


@dataclass
class PartialExit:
    """A recorded partial close of an open trade."""
    action: TradeAction
    datetime: datetime
    quantity: float
    price: float
    fee: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "datetime": self.datetime.isoformat(),
            "quantity": self.quantity,
            "price": self.price,
            "fee": self.fee,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PartialExit":
        return cls(
            action=TradeAction.parse(data.get("action")),
            datetime=parse_timestamp(data.get("datetime")),
            quantity=float(data.get("quantity", 0)),
            price=float(data.get("price", 0)),
            fee=float(data.get("fee") or 0),
        )


@dataclass
class Trade:
    """A journal trade as stored in the trades table."""
    instrument: str
    action: TradeAction
    entry_price: float
    quantity: float
    market_type: str = "stocks"
    exit_price: Optional[float] = None
    entry_time: Optional[datetime] = None
    exit_time: Optional[datetime] = None
    sl: Optional[float] = None
    target: Optional[float] = None
    commission: float = 0.0
    fees: float = 0.0
    contract_multiplier: float = 1.0
    status: TradeStatus = TradeStatus.OPEN
    remaining_quantity: Optional[float] = None
    total_exit_quantity: Optional[float] = None
    partial_exits: List[PartialExit] = field(default_factory=list)
    id: Optional[str] = None
    user_id: Optional[str] = None
    account_id: Optional[str] = None
    strategy_id: Optional[str] = None

    @property
    def is_long(self) -> bool:
        return self.action is TradeAction.BUY

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Trade":
        exits = load_json_list(row.get("partial_exits")) or []
        return cls(
            id=row.get("id"),
            user_id=row.get("user_id"),
            account_id=row.get("account_id"),
            strategy_id=row.get("strategy_id"),
            instrument=row.get("instrument", ""),
            action=TradeAction.parse(row.get("action")),
            market_type=(row.get("market_type") or "stocks").lower(),
            entry_price=float(row.get("entry_price") or 0),
            exit_price=_optional_float(row.get("exit_price")),
            quantity=float(row.get("quantity") or 0),
            entry_time=parse_timestamp(row.get("entry_time")),
            exit_time=parse_timestamp(row.get("exit_time")),
            sl=_optional_float(row.get("sl")),
            target=_optional_float(row.get("target")),
            commission=abs(float(row.get("commission") or 0)),
            fees=abs(float(row.get("fees") or 0)),
            contract_multiplier=float(row.get("contract_multiplier") or 1),
            status=TradeStatus(row.get("status") or "open"),
            remaining_quantity=_optional_float(row.get("remaining_quantity")),
            total_exit_quantity=_optional_float(row.get("total_exit_quantity")),
            partial_exits=[PartialExit.from_dict(e) for e in exits],
        )


@dataclass
class TradeMetrics:
    """Computed per-trade metrics (trade_metrics table)."""
    gross_pnl: Optional[float]
    net_pnl: Optional[float]
    total_fees: float
    percent_gain: Optional[float]
    r_multiple: Optional[float]
    r2r: Optional[float]
    trade_result: Optional[TradeOutcome]
    trade_duration_minutes: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gross_pnl": self.gross_pnl,
            "net_pnl": self.net_pnl,
            "total_fees": self.total_fees,
            "percent_gain": self.percent_gain,
            "r_multiple": self.r_multiple,
            "r2r": self.r2r,
            "trade_result": self.trade_result.value if self.trade_result else None,
            "trade_duration_minutes": self.trade_duration_minutes,
        }


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)
