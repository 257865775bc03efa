from fastapi import APIRouter, Depends

from tradelens.app.api.deps import get_current_user_id
from tradelens.app.common.db import get_db
from tradelens.app.subscriptions.access import access_summary

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.get("/access")
def access(user_id: str = Depends(get_current_user_id), db=Depends(get_db)):
    """Current plan, its limits, and how much of each the user has used."""
    return access_summary(db, user_id)
