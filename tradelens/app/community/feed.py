"""
Read side of the community: the shared-trade feed and the trader leaderboard.

Both are built from the base tables (trades with is_shared, trade_metrics,
trade_likes, trade_comments, community_follows, app_users) and ranked in
Python, so the ordering rules live next to the stats they sort on.
"""

import logging
from collections import Counter
from typing import Any, Dict, List, Optional

from tradelens.app.common.db import rows_of
from tradelens.app.dashboard.metrics import compute_summary, load_trades_dataframe
from tradelens.app.subscriptions.access import get_user_plan
from tradelens.app.trades.service import hydrate_trade

logger = logging.getLogger(__name__)

FEED_SORTS = ("recent", "popular", "top_performers")
TRADER_SORTS = ("followers", "win_rate", "pnl")

PROFILE_FIELDS = ("username", "first_name", "last_name", "avatar_url", "bio")

BADGES = {"Pro Plan": "Pro", "Starter Plan": "Starter"}


def _rows_in(db, table: str, column: str, values: List[str]) -> List[Dict[str, Any]]:
    if not values:
        return []
    return rows_of(db.table(table).select("*").in_(column, values).execute())


def _shared_trades(db, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
    query = db.table("trades").select("*").eq("is_shared", True)
    if user_id:
        query = query.eq("user_id", user_id)
    rows = rows_of(query.execute())

    metrics = {
        m["trade_id"]: m
        for m in _rows_in(db, "trade_metrics", "trade_id", [r["id"] for r in rows])
    }
    return [hydrate_trade(r, metrics.get(r["id"])) for r in rows]


def _profiles(db, user_ids: List[str]) -> Dict[str, Dict[str, Any]]:
    return {p["user_id"]: p for p in _rows_in(db, "app_users", "user_id", sorted(set(user_ids)))}


def _matches(query: str, *values: Optional[str]) -> bool:
    needle = query.lower()
    return any(needle in (v or "").lower() for v in values)


def _descending(items: List[Dict[str, Any]], key: str) -> List[Dict[str, Any]]:
    """Sort high to low with missing values last."""
    present = [i for i in items if i.get(key) is not None]
    missing = [i for i in items if i.get(key) is None]
    return sorted(present, key=lambda i: i[key], reverse=True) + missing


def _page(items: List[Dict[str, Any]], limit: int, offset: int) -> List[Dict[str, Any]]:
    return items[offset : offset + limit]


def get_feed(
    db,
    viewer_id: Optional[str] = None,
    sort_by: str = "recent",
    search: str = "",
    user_id: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    """
    Shared trades with author, like and comment counts.

    sort_by: recent (shared_at, falling back to created_at), popular
    (likes) or top_performers (percent gain). Unknown values use recent.
    """
    trades = _shared_trades(db, user_id)
    trade_ids = [t["id"] for t in trades]
    profiles = _profiles(db, [t["user_id"] for t in trades])

    likes = _rows_in(db, "trade_likes", "trade_id", trade_ids)
    comments = _rows_in(db, "trade_comments", "trade_id", trade_ids)
    like_counts = Counter(like["trade_id"] for like in likes)
    comment_counts = Counter(c["trade_id"] for c in comments)
    liked = {like["trade_id"] for like in likes if viewer_id and like.get("user_id") == viewer_id}

    feed = []
    for trade in trades:
        profile = profiles.get(trade["user_id"]) or {}
        if search and not _matches(
            search, trade.get("instrument"), trade.get("notes"), profile.get("username")
        ):
            continue
        feed.append(
            {
                **trade,
                "shared_at": trade.get("shared_at") or trade.get("created_at"),
                "likes_count": like_counts[trade["id"]],
                "comments_count": comment_counts[trade["id"]],
                "is_liked_by_user": trade["id"] in liked,
                "app_users": {
                    "username": profile.get("username"),
                    "avatar_url": profile.get("avatar_url"),
                    "bio": profile.get("bio"),
                },
            }
        )

    if sort_by == "popular":
        feed = _descending(feed, "likes_count")
    elif sort_by == "top_performers":
        feed = _descending(feed, "percent_gain")
    else:
        feed = _descending(feed, "shared_at")

    return _page(feed, limit, offset)


def trader_stats(trades: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Win rate, P&L and profit factor over a trader's shared trades."""
    summary = compute_summary(load_trades_dataframe(trades))
    return {
        "trades_count": len(trades),
        "win_rate": summary["win_rate"],
        "total_pnl": summary["net_pnl"],
        "profit_factor": summary["profit_factor"],
    }


def get_traders(
    db,
    viewer_id: Optional[str] = None,
    sort_by: str = "followers",
    search: str = "",
    limit: int = 20,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    """
    Leaderboard of traders who share at least one trade.

    sort_by: followers, win_rate or pnl. Unknown values use followers.
    """
    by_user: Dict[str, List[Dict[str, Any]]] = {}
    for trade in _shared_trades(db):
        by_user.setdefault(trade["user_id"], []).append(trade)

    user_ids = sorted(by_user)
    profiles = _profiles(db, user_ids)
    follows = _rows_in(db, "community_follows", "following_id", user_ids)
    follower_counts = Counter(f["following_id"] for f in follows)
    followed = {f["following_id"] for f in follows if viewer_id and f.get("follower_id") == viewer_id}

    traders = []
    for uid in user_ids:
        profile = profiles.get(uid) or {}
        if search and not _matches(
            search, profile.get("username"), profile.get("first_name"), profile.get("last_name")
        ):
            continue
        traders.append(
            {
                "user_id": uid,
                **{field: profile.get(field) for field in PROFILE_FIELDS},
                **trader_stats(by_user[uid]),
                "followers_count": follower_counts[uid],
                "is_followed_by_user": uid in followed,
                "badge": BADGES.get(get_user_plan(db, uid)),
            }
        )

    key = {"win_rate": "win_rate", "pnl": "total_pnl"}.get(sort_by, "followers_count")
    traders = _descending(traders, key)

    logger.debug(f"Leaderboard built for {len(traders)} traders sorted by {key}")
    return _page(traders, limit, offset)
