"""
Scheduled subscription jobs: expiry of lapsed subscriptions and trials,
and trial-ending reminders.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from shared.schemas import SubscriptionStatus
from tradelens.app.common.db import first_row, rows_of
from tradelens.app.notifications.notify import create_notification, enqueue_email

logger = logging.getLogger(__name__)

# (days before end, title, message, notification type, email type)
TRIAL_REMINDERS = [
    (
        3,
        "Trial Ending Soon",
        "Your free trial ends in 3 days. Upgrade to keep full access.",
        "info",
        "trial_ending",
    ),
    (
        1,
        "Trial Ending Tomorrow",
        "Your free trial ends tomorrow. Upgrade now to avoid losing access.",
        "warning",
        None,
    ),
]

# Half-width of the window around each reminder point
REMINDER_WINDOW = timedelta(hours=12)

# A reminder is not repeated within this period
REMINDER_DEDUP = timedelta(days=7)


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def _user_email(db, user_id: str) -> Optional[str]:
    user = first_row(db.table("app_users").select("email").eq("user_id", user_id).limit(1).execute())
    return user.get("email") if user else None


def expire_subscriptions(db, now: Optional[datetime] = None) -> Dict[str, int]:
    """Mark active subscriptions past their period end as expired."""
    now_iso = _now(now).isoformat()

    expired = rows_of(
        db.table("user_subscriptions")
        .select("*")
        .eq("status", SubscriptionStatus.ACTIVE.value)
        .lt("current_period_end", now_iso)
        .execute()
    )

    for sub in expired:
        db.table("user_subscriptions").update(
            {"status": SubscriptionStatus.EXPIRED.value, "updated_at": now_iso}
        ).eq("id", sub["id"]).execute()

        create_notification(
            db,
            sub["user_id"],
            "Subscription Expired",
            "Your subscription has expired. Please renew to continue using premium features.",
            type="warning",
            data={"url": "/pricing"},
        )

    if expired:
        logger.info(f"Updated {len(expired)} subscriptions to expired status")
    return {"expired_count": len(expired)}


def expire_trials(db, now: Optional[datetime] = None) -> Dict[str, int]:
    """Expire trialing subscriptions past their end and queue the trial_expired email."""
    now_iso = _now(now).isoformat()

    trials = rows_of(
        db.table("user_subscriptions")
        .select("*")
        .eq("status", SubscriptionStatus.TRIALING.value)
        .lt("current_period_end", now_iso)
        .execute()
    )

    for sub in trials:
        db.table("user_subscriptions").update(
            {"status": SubscriptionStatus.EXPIRED.value, "updated_at": now_iso}
        ).eq("id", sub["id"]).execute()

        email = _user_email(db, sub["user_id"])
        if email:
            enqueue_email(
                db, sub["user_id"], email, "trial_expired", "Your TradeLens Trial Has Expired"
            )
        logger.info(f"Expired trial {sub['id']} for user {sub['user_id']}")

    return {"expired_trials": len(trials)}


def _already_reminded(db, user_id: str, title: str, since: datetime) -> bool:
    return (
        first_row(
            db.table("notifications")
            .select("id")
            .eq("user_id", user_id)
            .eq("title", title)
            .gt("created_at", since.isoformat())
            .limit(1)
            .execute()
        )
        is not None
    )


def send_trial_reminders(db, now: Optional[datetime] = None) -> Dict[str, int]:
    """Notify trialing users whose trial ends in about 3 days or about 1 day."""
    now = _now(now)
    sent = 0
    checked = 0

    for days, title, message, kind, email_type in TRIAL_REMINDERS:
        target = now + timedelta(days=days)
        trials = rows_of(
            db.table("user_subscriptions")
            .select("id, user_id, current_period_end")
            .eq("status", SubscriptionStatus.TRIALING.value)
            .gte("current_period_end", (target - REMINDER_WINDOW).isoformat())
            .lte("current_period_end", (target + REMINDER_WINDOW).isoformat())
            .execute()
        )
        checked += len(trials)

        for sub in trials:
            user_id = sub["user_id"]
            if _already_reminded(db, user_id, title, now - REMINDER_DEDUP):
                logger.info(f"Trial reminder '{title}' already sent to {user_id}, skipping")
                continue

            create_notification(
                db,
                user_id,
                title,
                message,
                type=kind,
                data={"url": "/pricing", "days_left": days},
            )

            if email_type:
                email = _user_email(db, user_id)
                if email:
                    enqueue_email(
                        db,
                        user_id,
                        email,
                        email_type,
                        f"Your TradeLens Trial Ends in {days} Days",
                        {"days_left": days, "end_date": sub.get("current_period_end")},
                    )
            sent += 1

    logger.info(f"Trial reminders: {sent} sent, {checked} trials checked")
    return {"checked": checked, "reminders_sent": sent}
