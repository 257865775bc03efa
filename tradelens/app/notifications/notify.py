import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from tradelens.app.common.db import first_row

logger = logging.getLogger(__name__)


def create_notification(
    db,
    user_id: str,
    title: str,
    message: str,
    type: str = "info",
    data: Optional[Dict[str, Any]] = None,
) -> Optional[Dict[str, Any]]:
    """Insert an in-app notification. Failures are logged, not raised."""
    try:
        resp = (
            db.table("notifications")
            .insert(
                {
                    "user_id": user_id,
                    "title": title,
                    "message": message,
                    "type": type,
                    "data": data or {},
                    "is_read": False,
                    "created_at": datetime.now(timezone.utc).isoformat(),
                }
            )
            .execute()
        )
    except Exception as e:
        logger.error(f"Error creating notification for {user_id}: {e}")
        return None
    return first_row(resp)


def enqueue_email(
    db,
    user_id: Optional[str],
    recipient_email: str,
    email_type: str,
    subject: str,
    email_data: Optional[Dict[str, Any]] = None,
) -> Optional[Dict[str, Any]]:
    """Queue a transactional email for the queue processor."""
    resp = (
        db.table("email_queue")
        .insert(
            {
                "user_id": user_id,
                "recipient_email": recipient_email,
                "email_type": email_type,
                "subject": subject,
                "email_data": email_data or {},
                "status": "pending",
                "retry_count": 0,
                "created_at": datetime.now(timezone.utc).isoformat(),
            }
        )
        .execute()
    )
    logger.info(f"Queued {email_type} email for {recipient_email}")
    return first_row(resp)
