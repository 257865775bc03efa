"""
Trade repository on top of Supabase.

Every write recomputes the trade's metrics row and the aggregate stats of
the strategy it belongs to.
"""

import io
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

import pandas as pd

from shared.schemas import (
    ExecutionRow,
    PartialExit,
    Trade,
    TradeAction,
    dump_json_list,
    load_json_list,
    parse_timestamp,
)
from tradelens.app.common.db import first_row, rows_of
from tradelens.app.trades.lifecycle import (
    apply_partial_exit,
    build_position,
    recalculate_position,
    remove_partial_exit,
    validate_partial_exits,
)
from tradelens.app.trades.metrics import calculate_trade_metrics

logger = logging.getLogger(__name__)

TRADES_TABLE = "trades"
METRICS_TABLE = "trade_metrics"

JSON_LIST_FIELDS = ("partial_exits", "tags", "additional_images")

# Fields whose change alters the position and its status columns
POSITION_FIELDS = (
    "action",
    "quantity",
    "entry_price",
    "exit_price",
    "exit_time",
    "partial_exits",
)

EXPORT_COLUMNS = [
    "trade_date",
    "instrument",
    "market_type",
    "action",
    "quantity",
    "entry_price",
    "exit_price",
    "entry_time",
    "exit_time",
    "status",
    "remaining_quantity",
    "commission",
    "fees",
    "gross_pnl",
    "net_pnl",
    "percent_gain",
    "r_multiple",
    "trade_result",
    "notes",
]


class TradeNotFoundError(LookupError):
    pass


def to_utc_iso(value: Any, timezone_name: str = "UTC") -> Optional[str]:
    """Interpret naive local times in ``timezone_name`` and return UTC ISO."""
    ts = parse_timestamp(value)
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=ZoneInfo(timezone_name))
    return ts.astimezone(timezone.utc).isoformat()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_trade_payload(data: Dict[str, Any], timezone_name: str = "UTC") -> Dict[str, Any]:
    """Clean user input into column values. Only keys present are touched."""
    payload = dict(data)

    if "action" in payload:
        payload["action"] = TradeAction.parse(payload["action"]).value
    if payload.get("market_type"):
        payload["market_type"] = payload["market_type"].lower()
    for key in ("commission", "fees"):
        if key in payload:
            payload[key] = abs(float(payload[key] or 0))
    if "contract_multiplier" in payload:
        payload["contract_multiplier"] = payload["contract_multiplier"] or 1
    if payload.get("strategy_id") == "none":
        payload["strategy_id"] = None

    for key in ("entry_time", "exit_time"):
        if payload.get(key):
            payload[key] = to_utc_iso(payload[key], timezone_name)

    if payload.get("entry_time") and not payload.get("trade_date"):
        payload["trade_date"] = payload["entry_time"][:10]

    if "partial_exits" in payload:
        exits = load_json_list(payload["partial_exits"]) or []
        normalized = []
        for e in exits:
            fill = PartialExit.from_dict(e) if isinstance(e, dict) else e
            fill.datetime = parse_timestamp(to_utc_iso(fill.datetime, timezone_name))
            normalized.append(fill.to_dict())
        payload["partial_exits"] = normalized

    return payload


def _serialize(payload: Dict[str, Any]) -> Dict[str, Any]:
    row = dict(payload)
    for key in JSON_LIST_FIELDS:
        if key in row:
            row[key] = dump_json_list(row[key])
    return row


def _position_columns(trade: Trade) -> Dict[str, Any]:
    recalculate_position(trade)
    return {
        "exit_price": trade.exit_price,
        "exit_time": trade.exit_time.isoformat() if trade.exit_time else None,
        "status": trade.status.value,
        "remaining_quantity": trade.remaining_quantity,
        "total_exit_quantity": trade.total_exit_quantity,
        "fees": trade.fees,
        "partial_exits": [e.to_dict() for e in trade.partial_exits] or None,
    }


def _validate_new_trade(payload: Dict[str, Any]) -> None:
    if not payload.get("instrument"):
        raise ValueError("Instrument required")
    if float(payload.get("quantity") or 0) <= 0:
        raise ValueError("Quantity must be positive")
    if float(payload.get("entry_price") or 0) <= 0:
        raise ValueError("Entry price must be positive")
    exit_price = payload.get("exit_price")
    if exit_price is not None and float(exit_price) <= 0:
        raise ValueError("Exit price must be positive")


def resolve_default_fees(db, account_id: Optional[str], market_type: Optional[str]) -> float:
    """Commission schedule lookup: account + market first, then market-wide."""
    if not market_type:
        return 0.0

    rows = rows_of(
        db.table("commissions")
        .select("account_id, market_type, total_fees")
        .eq("market_type", market_type)
        .execute()
    )

    if account_id:
        for row in rows:
            if row.get("account_id") == account_id:
                return abs(float(row.get("total_fees") or 0))

    for row in rows:
        if not row.get("account_id"):
            return abs(float(row.get("total_fees") or 0))

    return 0.0


def persist_metrics(db, row: Dict[str, Any]) -> Dict[str, Any]:
    """Compute and upsert the trade_metrics row for a stored trade."""
    metrics = calculate_trade_metrics(Trade.from_row(row))
    record = {
        "trade_id": row["id"],
        "user_id": row.get("user_id"),
        **metrics.to_dict(),
        "updated_at": _now_iso(),
    }
    db.table(METRICS_TABLE).upsert(record, on_conflict="trade_id").execute()
    return record


def refresh_strategy_stats(db, user_id: str, strategy_id: Optional[str]) -> Optional[Dict[str, Any]]:
    """Recount a strategy's closed trades, wins, losses and P&L."""
    if not strategy_id:
        return None

    trade_ids = [
        r["id"]
        for r in rows_of(
            db.table(TRADES_TABLE)
            .select("id")
            .eq("user_id", user_id)
            .eq("strategy_id", strategy_id)
            .execute()
        )
    ]

    nets: List[float] = []
    if trade_ids:
        metrics_rows = rows_of(
            db.table(METRICS_TABLE)
            .select("trade_id, net_pnl")
            .in_("trade_id", trade_ids)
            .execute()
        )
        nets = [float(m["net_pnl"]) for m in metrics_rows if m.get("net_pnl") is not None]

    wins = sum(1 for n in nets if n > 0)
    losses = sum(1 for n in nets if n < 0)
    stats = {
        "total_trades": len(nets),
        "winning_trades": wins,
        "losing_trades": losses,
        "win_rate": round(wins / len(nets) * 100, 2) if nets else 0.0,
        "total_pnl": round(sum(nets), 4),
    }

    db.table("strategies").update(stats).eq("id", strategy_id).eq("user_id", user_id).execute()
    return stats


def _fetch_metrics(db, trade_ids: List[str]) -> Dict[str, Dict[str, Any]]:
    if not trade_ids:
        return {}
    rows = rows_of(db.table(METRICS_TABLE).select("*").in_("trade_id", trade_ids).execute())
    return {r["trade_id"]: r for r in rows}


def _resolve_tag_names(db, tag_ids: Iterable[str]) -> Dict[str, str]:
    tag_ids = list(tag_ids)
    if not tag_ids:
        return {}
    try:
        rows = rows_of(
            db.table("tags").select("tag_id, tag_name").in_("tag_id", tag_ids).execute()
        )
    except Exception as e:
        logger.error(f"Error fetching tag names: {e}")
        return {}
    return {r["tag_id"]: r["tag_name"] for r in rows}


def hydrate_trade(
    row: Dict[str, Any],
    metrics: Optional[Dict[str, Any]],
    tag_names: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Flatten a trade row with its metrics for API responses."""
    metrics = metrics or {}
    tag_names = tag_names or {}
    tag_ids = load_json_list(row.get("tags")) or []

    trade = dict(row)
    trade.update(
        {
            "action": (row.get("action") or "buy").lower(),
            "commission": abs(float(row.get("commission") or 0)),
            "fees": abs(float(row.get("fees") or 0)),
            "contract_multiplier": row.get("contract_multiplier") or 1,
            "partial_exits": load_json_list(row.get("partial_exits")),
            "tags": [tag_names.get(t, t) for t in tag_ids],
            "additional_images": load_json_list(row.get("additional_images")),
            "gross_pnl": metrics.get("gross_pnl"),
            "net_pnl": metrics.get("net_pnl"),
            "percent_gain": metrics.get("percent_gain"),
            "r_multiple": metrics.get("r_multiple"),
            "r2r": metrics.get("r2r"),
            "trade_result": metrics.get("trade_result"),
            "trade_duration_minutes": metrics.get("trade_duration_minutes"),
            "total_fees": metrics.get("total_fees"),
        }
    )
    return trade


def _get_row(db, user_id: str, trade_id: str) -> Dict[str, Any]:
    row = first_row(
        db.table(TRADES_TABLE)
        .select("*")
        .eq("id", trade_id)
        .eq("user_id", user_id)
        .limit(1)
        .execute()
    )
    if row is None:
        raise TradeNotFoundError(f"Trade {trade_id} not found")
    return row


def _hydrate_one(db, row: Dict[str, Any]) -> Dict[str, Any]:
    metrics = _fetch_metrics(db, [row["id"]]).get(row["id"])
    tag_names = _resolve_tag_names(db, load_json_list(row.get("tags")) or [])
    return hydrate_trade(row, metrics, tag_names)


def fetch_trades(
    db,
    user_id: str,
    from_date: Optional[str] = None,
    to_date: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """All trades of a user, newest entry first, with metrics attached."""
    query = db.table(TRADES_TABLE).select("*").eq("user_id", user_id)
    if from_date:
        query = query.gte("trade_date", from_date)
    if to_date:
        query = query.lte("trade_date", to_date)
    rows = rows_of(query.order("entry_time", desc=True).execute())

    metrics = _fetch_metrics(db, [r["id"] for r in rows])
    all_tags = {t for r in rows for t in (load_json_list(r.get("tags")) or [])}
    tag_names = _resolve_tag_names(db, all_tags)

    return [hydrate_trade(r, metrics.get(r["id"]), tag_names) for r in rows]


def fetch_trade(db, user_id: str, trade_id: str) -> Dict[str, Any]:
    return _hydrate_one(db, _get_row(db, user_id, trade_id))


def create_trade(
    db,
    user_id: str,
    data: Dict[str, Any],
    executions: Optional[List[ExecutionRow]] = None,
    timezone_name: str = "UTC",
) -> Dict[str, Any]:
    """
    Insert a trade.

    With ``executions`` the entry/exit rows of the trade form are folded
    into one position (weighted prices, partial exits, status). Without,
    ``data`` describes the trade directly.
    """
    payload = dict(data)
    if executions:
        payload.update(build_position(executions).to_trade_fields())

    payload = normalize_trade_payload(payload, timezone_name)
    payload.setdefault("action", TradeAction.BUY.value)
    payload.setdefault("contract_multiplier", 1)
    _validate_new_trade(payload)

    if not payload.get("fees") and not payload.get("commission"):
        payload["fees"] = resolve_default_fees(
            db, payload.get("account_id"), payload.get("market_type")
        )

    trade = Trade.from_row({**payload, "partial_exits": payload.get("partial_exits")})
    payload.update(_position_columns(trade))
    payload["user_id"] = user_id

    row = first_row(db.table(TRADES_TABLE).insert(_serialize(payload)).execute())
    if row is None:
        raise RuntimeError("Trade insert returned no row")

    persist_metrics(db, row)
    refresh_strategy_stats(db, user_id, row.get("strategy_id"))

    logger.info(f"Created trade {row['id']} ({row.get('instrument')}) for user {user_id}")
    return _hydrate_one(db, row)


def update_trade(
    db,
    user_id: str,
    trade_id: str,
    changes: Dict[str, Any],
    timezone_name: str = "UTC",
) -> Dict[str, Any]:
    existing = _get_row(db, user_id, trade_id)
    payload = normalize_trade_payload(changes, timezone_name)
    payload.pop("id", None)
    payload.pop("user_id", None)

    if any(key in payload for key in POSITION_FIELDS):
        merged = {**existing, **payload}
        _validate_new_trade(merged)
        trade = Trade.from_row(merged)
        validate_partial_exits(trade)
        payload.update(_position_columns(trade))

    row = first_row(
        db.table(TRADES_TABLE)
        .update(_serialize(payload))
        .eq("id", trade_id)
        .eq("user_id", user_id)
        .execute()
    )
    if row is None:
        raise TradeNotFoundError(f"Trade {trade_id} not found")

    persist_metrics(db, row)
    refresh_strategy_stats(db, user_id, row.get("strategy_id"))
    if existing.get("strategy_id") != row.get("strategy_id"):
        refresh_strategy_stats(db, user_id, existing.get("strategy_id"))

    return _hydrate_one(db, row)


def delete_trade(db, user_id: str, trade_id: str) -> None:
    existing = _get_row(db, user_id, trade_id)
    db.table(METRICS_TABLE).delete().eq("trade_id", trade_id).execute()
    db.table(TRADES_TABLE).delete().eq("id", trade_id).eq("user_id", user_id).execute()
    refresh_strategy_stats(db, user_id, existing.get("strategy_id"))
    logger.info(f"Deleted trade {trade_id} for user {user_id}")


def _store_position(db, user_id: str, trade_id: str, trade: Trade) -> Dict[str, Any]:
    payload = _position_columns(trade)
    row = first_row(
        db.table(TRADES_TABLE)
        .update(_serialize(payload))
        .eq("id", trade_id)
        .eq("user_id", user_id)
        .execute()
    )
    persist_metrics(db, row)
    refresh_strategy_stats(db, user_id, row.get("strategy_id"))
    return _hydrate_one(db, row)


def add_exit(
    db,
    user_id: str,
    trade_id: str,
    fill: PartialExit,
    timezone_name: str = "UTC",
) -> Dict[str, Any]:
    """Record a partial exit on a stored trade."""
    fill.datetime = parse_timestamp(to_utc_iso(fill.datetime, timezone_name))
    trade = Trade.from_row(_get_row(db, user_id, trade_id))
    apply_partial_exit(trade, fill)
    return _store_position(db, user_id, trade_id, trade)


def remove_exit(db, user_id: str, trade_id: str, index: int) -> Dict[str, Any]:
    trade = Trade.from_row(_get_row(db, user_id, trade_id))
    remove_partial_exit(trade, index)
    return _store_position(db, user_id, trade_id, trade)


def export_trades_csv(trades: List[Dict[str, Any]]) -> str:
    """CSV export of hydrated trades."""
    df = pd.DataFrame(trades)
    if df.empty:
        df = pd.DataFrame(columns=EXPORT_COLUMNS)
    for column in EXPORT_COLUMNS:
        if column not in df.columns:
            df[column] = None

    buffer = io.StringIO()
    df[EXPORT_COLUMNS].to_csv(buffer, index=False)
    return buffer.getvalue()
