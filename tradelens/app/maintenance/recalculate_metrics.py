"""
Trade metrics maintenance.

Recomputes trade_metrics from the stored trades and reports rows whose
stored values disagree with a fresh calculation. In fix mode the rows are
rewritten and strategy stats refreshed.

Usage:
    python -m tradelens.app.maintenance.recalculate_metrics --mode verify
    python -m tradelens.app.maintenance.recalculate_metrics --mode fix --user <id>
"""

import argparse
import logging
from typing import Any, Dict, List, Optional

from shared.schemas import Trade
from tradelens.app.common.db import get_db_session, rows_of
from tradelens.app.trades.metrics import calculate_trade_metrics
from tradelens.app.trades.service import persist_metrics, refresh_strategy_stats

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

COMPARED_FIELDS = ("gross_pnl", "net_pnl", "percent_gain", "r_multiple", "trade_result")

# Stored values may have been rounded differently
TOLERANCE = 0.01


def _differs(stored: Any, fresh: Any) -> bool:
    if stored is None or fresh is None:
        return stored != fresh
    if isinstance(fresh, str):
        return stored != fresh
    return abs(float(stored) - float(fresh)) > TOLERANCE


def find_mismatches(trades: List[Dict[str, Any]], metrics: Dict[str, Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Trades whose stored metrics differ from a fresh calculation."""
    mismatches = []
    for row in trades:
        fresh = calculate_trade_metrics(Trade.from_row(row)).to_dict()
        stored = metrics.get(row["id"])

        if stored is None:
            mismatches.append({"trade_id": row["id"], "missing": True})
            continue

        diffs = {
            field: {"stored": stored.get(field), "expected": fresh[field]}
            for field in COMPARED_FIELDS
            if _differs(stored.get(field), fresh[field])
        }
        if diffs:
            mismatches.append({"trade_id": row["id"], "diffs": diffs})
    return mismatches


def run(mode: str, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
    with get_db_session() as db:
        query = db.table("trades").select("*")
        if user_id:
            query = query.eq("user_id", user_id)
        trades = rows_of(query.execute())
        logger.info(f"Loaded {len(trades)} trades")

        ids = [t["id"] for t in trades]
        metrics = {}
        if ids:
            metrics = {
                m["trade_id"]: m
                for m in rows_of(db.table("trade_metrics").select("*").in_("trade_id", ids).execute())
            }

        mismatches = find_mismatches(trades, metrics)
        for m in mismatches:
            logger.warning(f"Trade {m['trade_id']}: {m.get('diffs') or 'metrics missing'}")
        logger.info(f"{len(mismatches)} of {len(trades)} trades have stale metrics")

        if mode == "fix" and mismatches:
            by_id = {t["id"]: t for t in trades}
            touched = set()
            for m in mismatches:
                row = by_id[m["trade_id"]]
                persist_metrics(db, row)
                touched.add((row.get("user_id"), row.get("strategy_id")))

            for owner, strategy_id in touched:
                refresh_strategy_stats(db, owner, strategy_id)
            logger.info(f"Rewrote metrics for {len(mismatches)} trades")

        return mismatches


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Verify or rebuild stored trade metrics")
    parser.add_argument(
        "--mode",
        choices=["verify", "fix"],
        default="verify",
        help="verify: report stale rows; fix: rewrite them",
    )
    parser.add_argument(
        "--user",
        type=str,
        default=None,
        help="Only process trades of this user id",
    )

    args = parser.parse_args()
    run(args.mode, args.user)


if __name__ == "__main__":
    main()
