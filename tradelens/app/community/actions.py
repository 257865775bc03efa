import logging
from typing import Any, Callable, Dict, Optional

from tradelens.app.common.db import first_row
from tradelens.app.notifications.notify import create_notification

logger = logging.getLogger(__name__)

MAX_COMMENT_LENGTH = 2000


def _exists(db, table: str, **filters) -> bool:
    query = db.table(table).select("*")
    for column, value in filters.items():
        query = query.eq(column, value)
    return first_row(query.limit(1).execute()) is not None


def _trade_owner(db, trade_id: str) -> Optional[str]:
    trade = first_row(db.table("trades").select("user_id").eq("id", trade_id).limit(1).execute())
    return trade.get("user_id") if trade else None


def _require(value: Optional[str], message: str) -> str:
    if not value:
        raise ValueError(message)
    return value


def _notify_owner(db, actor_id: str, trade_id: str, title: str, message: str, kind: str) -> None:
    owner = _trade_owner(db, trade_id)
    if owner and owner != actor_id:
        create_notification(
            db, owner, title, message, type=kind, data={"trade_id": trade_id, "actor_id": actor_id}
        )


def like(db, user_id: str, trade_id: Optional[str] = None, **_) -> Dict[str, Any]:
    trade_id = _require(trade_id, "Trade ID required for like action")
    if _exists(db, "trade_likes", user_id=user_id, trade_id=trade_id):
        return {"success": True, "action": "already_liked"}

    db.table("trade_likes").insert({"user_id": user_id, "trade_id": trade_id}).execute()
    _notify_owner(db, user_id, trade_id, "New like", "Someone liked your trade", "like")
    return {"success": True, "action": "liked"}


def unlike(db, user_id: str, trade_id: Optional[str] = None, **_) -> Dict[str, Any]:
    trade_id = _require(trade_id, "Trade ID required for unlike action")
    db.table("trade_likes").delete().eq("user_id", user_id).eq("trade_id", trade_id).execute()
    return {"success": True, "action": "unliked"}


def follow(db, user_id: str, target_user_id: Optional[str] = None, **_) -> Dict[str, Any]:
    target_user_id = _require(target_user_id, "User ID required for follow action")
    if target_user_id == user_id:
        raise ValueError("You cannot follow yourself")
    if _exists(db, "community_follows", follower_id=user_id, following_id=target_user_id):
        return {"success": True, "action": "already_followed"}

    db.table("community_follows").insert(
        {"follower_id": user_id, "following_id": target_user_id}
    ).execute()
    return {"success": True, "action": "followed"}


def unfollow(db, user_id: str, target_user_id: Optional[str] = None, **_) -> Dict[str, Any]:
    target_user_id = _require(target_user_id, "User ID required for unfollow action")
    db.table("community_follows").delete().eq("follower_id", user_id).eq(
        "following_id", target_user_id
    ).execute()
    return {"success": True, "action": "unfollowed"}


def comment(
    db,
    user_id: str,
    trade_id: Optional[str] = None,
    comment_text: Optional[str] = None,
    **_,
) -> Dict[str, Any]:
    if not trade_id or not (comment_text or "").strip():
        raise ValueError("Trade ID and comment text required")
    if len(comment_text) > MAX_COMMENT_LENGTH:
        raise ValueError(f"Comment exceeds {MAX_COMMENT_LENGTH} characters")

    row = first_row(
        db.table("trade_comments")
        .insert({"trade_id": trade_id, "user_id": user_id, "content": comment_text.strip()})
        .execute()
    )
    _notify_owner(db, user_id, trade_id, "New comment", "Someone commented on your trade", "comment")
    return {"success": True, "action": "commented", "comment": row}


def pin(db, user_id: str, trade_id: Optional[str] = None, **_) -> Dict[str, Any]:
    trade_id = _require(trade_id, "Trade ID required for pin action")
    if _trade_owner(db, trade_id) != user_id:
        raise PermissionError("Can only pin your own trades")
    if _exists(db, "pinned_trades", user_id=user_id, trade_id=trade_id):
        return {"success": True, "action": "already_pinned"}

    db.table("pinned_trades").insert({"user_id": user_id, "trade_id": trade_id}).execute()
    return {"success": True, "action": "pinned"}


def unpin(db, user_id: str, trade_id: Optional[str] = None, **_) -> Dict[str, Any]:
    trade_id = _require(trade_id, "Trade ID required for unpin action")
    db.table("pinned_trades").delete().eq("user_id", user_id).eq("trade_id", trade_id).execute()
    return {"success": True, "action": "unpinned"}


ACTIONS: Dict[str, Callable[..., Dict[str, Any]]] = {
    "like": like,
    "unlike": unlike,
    "follow": follow,
    "unfollow": unfollow,
    "comment": comment,
    "pin": pin,
    "unpin": unpin,
}


def perform_action(
    db,
    user_id: str,
    action: str,
    trade_id: Optional[str] = None,
    target_user_id: Optional[str] = None,
    comment_text: Optional[str] = None,
) -> Dict[str, Any]:
    handler = ACTIONS.get(action)
    if handler is None:
        raise ValueError("Invalid action")

    if not _exists(db, "app_users", user_id=user_id):
        raise LookupError("User profile not found. Please complete onboarding.")

    result = handler(
        db,
        user_id,
        trade_id=trade_id,
        target_user_id=target_user_id,
        comment_text=comment_text,
    )
    logger.info(f"Community action {action} by {user_id}: {result['action']}")
    return result
