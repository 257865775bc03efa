from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from tradelens.app.api.deps import get_optional_user_id, rate_limited
from tradelens.app.common.db import get_db
from tradelens.app.community.actions import perform_action
from tradelens.app.community.feed import FEED_SORTS, TRADER_SORTS, get_feed, get_traders

router = APIRouter(prefix="/community", tags=["community"])


class CommunityActionRequest(BaseModel):
    action: str
    trade_id: Optional[str] = None
    user_id: Optional[str] = None
    comment_text: Optional[str] = None


@router.post("/actions")
def community_action(
    body: CommunityActionRequest,
    user_id: str = Depends(rate_limited("community")),
    db=Depends(get_db),
):
    try:
        return perform_action(
            db,
            user_id,
            body.action,
            trade_id=body.trade_id,
            target_user_id=body.user_id,
            comment_text=body.comment_text,
        )
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/feed")
def community_feed(
    sort: str = Query("recent"),
    q: str = Query(""),
    user_id: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    viewer_id: Optional[str] = Depends(get_optional_user_id),
    db=Depends(get_db),
):
    if sort not in FEED_SORTS:
        raise HTTPException(status_code=400, detail=f"Invalid sort: {sort}")
    return {
        "data": get_feed(
            db, viewer_id, sort_by=sort, search=q, user_id=user_id, limit=limit, offset=offset
        )
    }


@router.get("/traders")
def community_traders(
    sort: str = Query("followers"),
    q: str = Query(""),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    viewer_id: Optional[str] = Depends(get_optional_user_id),
    db=Depends(get_db),
):
    if sort not in TRADER_SORTS:
        raise HTTPException(status_code=400, detail=f"Invalid sort: {sort}")
    return {"data": get_traders(db, viewer_id, sort_by=sort, search=q, limit=limit, offset=offset)}
