"""
Plan feature limits and access checks.

-1 means unlimited. Users without an active or trialing subscription fall
back to the Free Trial limits.
"""

import math
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from shared.schemas import SubscriptionStatus, parse_timestamp
from tradelens.app.common.db import first_row, rows_of

UNLIMITED = -1

DEFAULT_PLAN = "Free Trial"

FEATURE_LIMITS: Dict[str, Dict[str, Any]] = {
    "Free Trial": {
        "maxTrades": 50,
        "maxStrategies": 3,
        "maxAccounts": 2,
        "maxJournalEntries": 20,
        "aiAnalysis": True,
        "advancedAnalytics": False,
        "communityFeatures": True,
        "csvImport": True,
        "apiAccess": False,
        "prioritySupport": False,
        "customReports": False,
    },
    "Starter Plan": {
        "maxTrades": 500,
        "maxStrategies": 10,
        "maxAccounts": 5,
        "maxJournalEntries": 100,
        "aiAnalysis": True,
        "advancedAnalytics": True,
        "communityFeatures": True,
        "csvImport": True,
        "apiAccess": False,
        "prioritySupport": False,
        "customReports": False,
    },
    "Pro Plan": {
        "maxTrades": UNLIMITED,
        "maxStrategies": UNLIMITED,
        "maxAccounts": UNLIMITED,
        "maxJournalEntries": UNLIMITED,
        "aiAnalysis": True,
        "advancedAnalytics": True,
        "communityFeatures": True,
        "csvImport": True,
        "apiAccess": True,
        "prioritySupport": True,
        "customReports": True,
    },
}

PLAN_HIERARCHY = {"Free Trial": 0, "Starter Plan": 1, "Pro Plan": 2}

LIMIT_TABLES = {
    "maxTrades": "trades",
    "maxStrategies": "strategies",
    "maxAccounts": "accounts",
}


def get_feature_limits(plan_name: Optional[str]) -> Dict[str, Any]:
    return FEATURE_LIMITS.get(plan_name or "", FEATURE_LIMITS[DEFAULT_PLAN])


def has_feature_access(plan_name: Optional[str], feature: str) -> bool:
    value = get_feature_limits(plan_name).get(feature)
    return value is True or value == UNLIMITED


def is_within_limit(plan_name: Optional[str], limit_type: str, current_count: int) -> bool:
    limit = get_feature_limits(plan_name)[limit_type]
    if limit == UNLIMITED:
        return True
    return current_count < limit


def remaining_count(plan_name: Optional[str], limit_type: str, current_count: int) -> Optional[int]:
    """Remaining allowance, None when unlimited."""
    limit = get_feature_limits(plan_name)[limit_type]
    if limit == UNLIMITED:
        return None
    return max(0, limit - current_count)


def needs_upgrade(current_plan: Optional[str], required_plan: str) -> bool:
    return PLAN_HIERARCHY.get(current_plan or "", 0) < PLAN_HIERARCHY[required_plan]


def is_subscription_active(status: Optional[str]) -> bool:
    return status in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value)


def _aware(value: Any) -> Optional[datetime]:
    ts = parse_timestamp(value)
    if ts is not None and ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def is_trial_expired(trial_end: Any, now: Optional[datetime] = None) -> bool:
    end = _aware(trial_end)
    if end is None:
        return False
    return end < (now or datetime.now(timezone.utc))


def days_remaining_in_trial(trial_end: Any, now: Optional[datetime] = None) -> int:
    end = _aware(trial_end)
    if end is None:
        return 0
    diff = (end - (now or datetime.now(timezone.utc))).total_seconds()
    return max(0, math.ceil(diff / 86400))


def get_user_subscription(db, user_id: str) -> Optional[Dict[str, Any]]:
    subscription = first_row(
        db.table("user_subscriptions").select("*").eq("user_id", user_id).limit(1).execute()
    )
    if subscription is None:
        return None

    plan = first_row(
        db.table("subscription_plans")
        .select("id, name")
        .eq("id", subscription.get("plan_id"))
        .limit(1)
        .execute()
    )
    subscription["plan_name"] = plan.get("name") if plan else None
    return subscription


def get_user_plan(db, user_id: str) -> str:
    subscription = get_user_subscription(db, user_id)
    if subscription is None or not is_subscription_active(subscription.get("status")):
        return DEFAULT_PLAN
    return subscription.get("plan_name") or DEFAULT_PLAN


def _count(db, table: str, user_id: str) -> int:
    return len(rows_of(db.table(table).select("id").eq("user_id", user_id).execute()))


def check_trade_limit(db, user_id: str) -> None:
    """Raise PermissionError when the user's plan allows no more trades."""
    plan = get_user_plan(db, user_id)
    count = _count(db, "trades", user_id)
    if not is_within_limit(plan, "maxTrades", count):
        limit = get_feature_limits(plan)["maxTrades"]
        raise PermissionError(f"{plan} allows {limit} trades. Upgrade to add more.")


def access_summary(db, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Plan, limits, usage and remaining allowance for the access endpoint."""
    subscription = get_user_subscription(db, user_id) or {}
    status = subscription.get("status")
    plan = subscription.get("plan_name") if is_subscription_active(status) else None
    plan = plan or DEFAULT_PLAN

    usage = {limit: _count(db, table, user_id) for limit, table in LIMIT_TABLES.items()}
    trial_end = subscription.get("trial_end")
    if status == SubscriptionStatus.TRIALING.value and not trial_end:
        trial_end = subscription.get("current_period_end")

    return {
        "plan": plan,
        "status": status,
        "is_active": is_subscription_active(status),
        "limits": get_feature_limits(plan),
        "usage": usage,
        "remaining": {
            limit: remaining_count(plan, limit, count) for limit, count in usage.items()
        },
        "trial_days_remaining": days_remaining_in_trial(trial_end, now),
        "trial_expired": is_trial_expired(trial_end, now),
        "current_period_end": subscription.get("current_period_end"),
    }
