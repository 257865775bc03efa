"""
Email queue processor.

Drains pending rows of ``email_queue`` through the Brevo transactional
API. Each attempt is written to ``email_logs``; failed sends are retried
on later runs until the retry cap marks them ``failed``.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

from shared.schemas import EmailStatus
from tradelens.app.common.config import get_config
from tradelens.app.common.db import rows_of

logger = logging.getLogger(__name__)

BREVO_API_URL = "https://api.brevo.com/v3/smtp/email"

TEMPLATE_IDS = {
    "welcome": 5,
    "trial_started": 11,
    "trial_midpoint": 12,
    "trial_ending": 6,
    "trial_expired": 14,
    "first_trade": 15,
    "milestone_10": 16,
    "milestone_50": 17,
    "milestone_100": 18,
    "inactivity_7d": 19,
    "inactivity_14d": 20,
    "inactivity_30d": 21,
    "winback": 22,
    "subscription_activated": 23,
    "payment_success": 24,
    "payment_failed": 25,
    "subscription_cancelled": 26,
}


class EmailDeliveryError(RuntimeError):
    pass


def get_template_id(email_type: str) -> Optional[int]:
    return TEMPLATE_IDS.get(email_type)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_brevo_payload(email: Dict[str, Any]) -> Dict[str, Any]:
    config = get_config()
    params = email.get("email_data") or {}

    payload = {
        "sender": {"name": config.brevo_sender_name, "email": config.brevo_sender_email},
        "to": [{"email": email["recipient_email"]}],
        "subject": email.get("subject"),
        "params": params,
    }

    template_id = get_template_id(email.get("email_type", ""))
    if template_id is not None:
        payload["templateId"] = template_id
    elif params.get("html_content"):
        payload["htmlContent"] = params["html_content"]
    else:
        raise EmailDeliveryError(
            f"No template ID found for email type: {email.get('email_type')}"
        )
    return payload


def send_via_brevo(email: Dict[str, Any]) -> Optional[str]:
    """Send one queued email, returning Brevo's message id."""
    config = get_config()
    response = requests.post(
        BREVO_API_URL,
        json=build_brevo_payload(email),
        headers={
            "accept": "application/json",
            "api-key": config.brevo_api_key,
            "content-type": "application/json",
        },
        timeout=config.http_timeout_sec,
    )

    if not response.ok:
        raise EmailDeliveryError(
            f"Brevo API error [{response.status_code}]: {response.text}"
        )

    try:
        return response.json().get("messageId")
    except ValueError:
        return None


def _log_email(
    db,
    email: Dict[str, Any],
    status: str,
    error_message: Optional[str] = None,
    message_id: Optional[str] = None,
) -> None:
    template_id = get_template_id(email.get("email_type", ""))
    try:
        db.table("email_logs").insert(
            {
                "user_id": email.get("user_id"),
                "recipient_email": email.get("recipient_email"),
                "email_type": email.get("email_type"),
                "template_id": str(template_id) if template_id is not None else None,
                "status": status,
                "provider": "brevo",
                "provider_message_id": message_id,
                "error_message": error_message,
                "subject": email.get("subject"),
                "template_data": email.get("email_data"),
            }
        ).execute()
    except Exception as e:
        logger.error(f"Error logging email {email.get('id')}: {e}")


def process_email_queue(db) -> Dict[str, int]:
    """Send one batch of pending emails. Returns processed/sent/failed counts."""
    config = get_config()
    if not config.brevo_api_key:
        raise RuntimeError("BREVO_API_KEY environment variable is required")

    pending = rows_of(
        db.table("email_queue")
        .select("*")
        .eq("status", EmailStatus.PENDING.value)
        .lt("retry_count", config.email_max_retries)
        .order("created_at")
        .limit(config.email_batch_size)
        .execute()
    )

    if not pending:
        return {"processed": 0, "sent": 0, "failed": 0}

    logger.info(f"Processing {len(pending)} queued emails")

    sent = 0
    failed = 0
    for email in pending:
        db.table("email_queue").update(
            {"status": EmailStatus.PROCESSING.value, "updated_at": _now_iso()}
        ).eq("id", email["id"]).execute()

        try:
            message_id = send_via_brevo(email)
        except (EmailDeliveryError, requests.RequestException) as e:
            retries = (email.get("retry_count") or 0) + 1
            status = (
                EmailStatus.FAILED if retries >= config.email_max_retries else EmailStatus.PENDING
            )
            db.table("email_queue").update(
                {
                    "status": status.value,
                    "retry_count": retries,
                    "error_message": str(e),
                    "updated_at": _now_iso(),
                }
            ).eq("id", email["id"]).execute()
            _log_email(db, email, "failed", error_message=str(e))
            logger.error(f"Failed to send email {email['id']}: {e}")
            failed += 1
            continue

        db.table("email_queue").update(
            {
                "status": EmailStatus.SENT.value,
                "sent_at": _now_iso(),
                "updated_at": _now_iso(),
            }
        ).eq("id", email["id"]).execute()
        _log_email(db, email, "sent", message_id=message_id)
        sent += 1

    logger.info(f"Email processing complete: {sent} sent, {failed} failed")
    return {"processed": len(pending), "sent": sent, "failed": failed}
