"""
Cron-triggered jobs. Guarded by a bearer CRON_SECRET when one is configured.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException

from tradelens.app.api.deps import verify_cron_secret
from tradelens.app.common.db import get_db
from tradelens.app.notifications.email_queue import process_email_queue
from tradelens.app.subscriptions.lifecycle import (
    expire_subscriptions,
    expire_trials,
    send_trial_reminders,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(verify_cron_secret)])


@router.post("/check-subscriptions")
def check_subscriptions(db=Depends(get_db)):
    now = datetime.now(timezone.utc)
    logger.info(f"Running subscription expiration check at {now.isoformat()}")
    result = expire_subscriptions(db, now)
    result.update(expire_trials(db, now))
    return {"success": True, "checked_at": now.isoformat(), **result}


@router.post("/trial-reminders")
def trial_reminders(db=Depends(get_db)):
    return {"success": True, **send_trial_reminders(db)}


@router.post("/process-email-queue")
def email_queue(db=Depends(get_db)):
    try:
        result = process_email_queue(db)
    except RuntimeError as e:
        logger.error(f"Email queue processing failed: {e}")
        raise HTTPException(status_code=503, detail=str(e))
    return {"success": True, **result}
