import math
from typing import Any, Dict, List

import numpy as np
import pandas as pd

# Profit factor reported when there are profits and no losses
PROFIT_FACTOR_CAP = 999.0

WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

EMPTY_SUMMARY = {
    "total_trades": 0,
    "closed_trades": 0,
    "open_trades": 0,
    "winning_trades": 0,
    "losing_trades": 0,
    "breakeven_trades": 0,
    "win_rate": 0.0,
    "net_pnl": 0.0,
    "gross_profit": 0.0,
    "gross_loss": 0.0,
    "profit_factor": 0.0,
    "avg_win": 0.0,
    "avg_loss": 0.0,
    "avg_win_loss": 0.0,
    "expectancy": 0.0,
    "max_drawdown": 0.0,
    "sharpe_ratio": 0.0,
    "total_fees": 0.0,
}


def load_trades_dataframe(trades: List[Dict[str, Any]]) -> pd.DataFrame:
    """
    Build the analytics frame from hydrated trades
    (trade rows with their trade_metrics fields flattened in).
    """
    if not trades:
        return pd.DataFrame()

    df = pd.DataFrame(trades)

    for column in ("net_pnl", "gross_pnl", "total_fees", "r_multiple"):
        if column not in df.columns:
            df[column] = np.nan
        df[column] = pd.to_numeric(df[column], errors="coerce")

    for column in ("strategy_id", "instrument"):
        if column not in df.columns:
            df[column] = None

    # trade_date first, entry_time as fallback
    dates = None
    for column in ("trade_date", "entry_time"):
        if column in df.columns:
            parsed = pd.to_datetime(df[column], errors="coerce", utc=True, format="ISO8601")
            dates = parsed if dates is None else dates.fillna(parsed)
    df["date"] = dates if dates is not None else pd.NaT

    return df


def _closed(df: pd.DataFrame) -> pd.DataFrame:
    return df[df["net_pnl"].notna()]


def compute_max_drawdown(pnl: pd.Series) -> float:
    """Largest peak-to-trough drop of the cumulative P&L curve."""
    if pnl.empty:
        return 0.0
    equity = pnl.cumsum()
    drawdown = equity.cummax() - equity
    return float(drawdown.max())


def compute_sharpe(pnl: pd.Series) -> float:
    """Per-trade Sharpe: mean / sample standard deviation."""
    if len(pnl) < 2:
        return 0.0
    std = pnl.std(ddof=1)
    if not std or math.isnan(std):
        return 0.0
    return float(pnl.mean() / std)


def compute_summary(df: pd.DataFrame) -> dict:
    if df.empty:
        return dict(EMPTY_SUMMARY)

    closed = _closed(df).sort_values("date", kind="stable")
    pnl = closed["net_pnl"]

    wins = pnl[pnl > 0]
    losses = pnl[pnl < 0]
    n_closed = len(closed)

    gross_profit = float(wins.sum())
    gross_loss = float(abs(losses.sum()))

    if gross_loss > 0:
        profit_factor = gross_profit / gross_loss
    elif gross_profit > 0:
        profit_factor = PROFIT_FACTOR_CAP
    else:
        profit_factor = 0.0

    avg_win = gross_profit / len(wins) if len(wins) else 0.0
    avg_loss = gross_loss / len(losses) if len(losses) else 0.0

    if n_closed:
        win_prob = len(wins) / n_closed
        loss_prob = len(losses) / n_closed
        expectancy = win_prob * avg_win - loss_prob * avg_loss
    else:
        win_prob = 0.0
        expectancy = 0.0

    return {
        "total_trades": int(len(df)),
        "closed_trades": int(n_closed),
        "open_trades": int(len(df) - n_closed),
        "winning_trades": int(len(wins)),
        "losing_trades": int(len(losses)),
        "breakeven_trades": int((pnl == 0).sum()),
        "win_rate": float(win_prob * 100),
        "net_pnl": float(pnl.sum()),
        "gross_profit": gross_profit,
        "gross_loss": gross_loss,
        "profit_factor": float(profit_factor),
        "avg_win": float(avg_win),
        "avg_loss": float(avg_loss),
        "avg_win_loss": float(avg_win / avg_loss) if avg_loss > 0 else 0.0,
        "expectancy": float(expectancy),
        "max_drawdown": compute_max_drawdown(pnl),
        "sharpe_ratio": compute_sharpe(pnl),
        "total_fees": float(closed["total_fees"].fillna(0).sum()),
    }


def _group_stats(closed: pd.DataFrame, key: str) -> List[dict]:
    grouped = closed.groupby(key, observed=True)["net_pnl"]
    stats = pd.DataFrame(
        {
            "trades": grouped.size(),
            "net_pnl": grouped.sum(),
            "wins": grouped.apply(lambda s: int((s > 0).sum())),
        }
    )
    stats["win_rate"] = stats["wins"] / stats["trades"] * 100

    return [
        {
            key: label,
            "trades": int(row["trades"]),
            "net_pnl": round(float(row["net_pnl"]), 4),
            "win_rate": round(float(row["win_rate"]), 2),
        }
        for label, row in stats.iterrows()
    ]


def compute_breakdowns(df: pd.DataFrame) -> dict:
    """P&L grouped by weekday, month, instrument and strategy, plus the equity curve."""
    empty = {
        "by_weekday": [],
        "by_month": [],
        "by_instrument": [],
        "by_strategy": [],
        "cumulative_pnl": [],
    }
    if df.empty:
        return empty

    closed = _closed(df)
    closed = closed[closed["date"].notna()].copy()
    if closed.empty:
        return empty

    closed["weekday"] = pd.Categorical(
        closed["date"].dt.day_name(), categories=WEEKDAYS, ordered=True
    )
    closed["month"] = closed["date"].dt.strftime("%Y-%m")
    closed["day"] = closed["date"].dt.strftime("%Y-%m-%d")
    closed["strategy"] = closed["strategy_id"].fillna("none")

    daily = closed.groupby("day")["net_pnl"].sum().sort_index()
    curve = daily.cumsum()

    return {
        "by_weekday": _group_stats(closed, "weekday"),
        "by_month": _group_stats(closed, "month"),
        "by_instrument": _group_stats(closed, "instrument"),
        "by_strategy": _group_stats(closed, "strategy"),
        "cumulative_pnl": [
            {"date": day, "net_pnl": round(float(daily[day]), 4), "cumulative": round(float(value), 4)}
            for day, value in curve.items()
        ],
    }


def compute_strategy_stats(df: pd.DataFrame) -> Dict[str, dict]:
    """Per-strategy totals keyed by strategy id."""
    if df.empty:
        return {}

    closed = _closed(df)
    closed = closed[closed["strategy_id"].notna()]

    stats = {}
    for strategy_id, group in closed.groupby("strategy_id"):
        pnl = group["net_pnl"]
        wins = int((pnl > 0).sum())
        stats[strategy_id] = {
            "total_trades": int(len(group)),
            "winning_trades": wins,
            "losing_trades": int((pnl < 0).sum()),
            "win_rate": round(wins / len(group) * 100, 2),
            "total_pnl": round(float(pnl.sum()), 4),
        }
    return stats
