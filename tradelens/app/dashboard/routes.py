from typing import Optional

from fastapi import APIRouter, Depends, Query

from tradelens.app.api.deps import get_current_user_id
from tradelens.app.common.db import get_db
from tradelens.app.dashboard.metrics import (
    compute_breakdowns,
    compute_summary,
    load_trades_dataframe,
)
from tradelens.app.trades.service import fetch_trades

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get("/summary")
def summary(
    from_date: Optional[str] = Query(None, alias="from"),
    to_date: Optional[str] = Query(None, alias="to"),
    user_id: str = Depends(get_current_user_id),
    db=Depends(get_db),
):
    trades = fetch_trades(db, user_id, from_date, to_date)
    return compute_summary(load_trades_dataframe(trades))


@router.get("/breakdowns")
def breakdowns(
    from_date: Optional[str] = Query(None, alias="from"),
    to_date: Optional[str] = Query(None, alias="to"),
    user_id: str = Depends(get_current_user_id),
    db=Depends(get_db),
):
    trades = fetch_trades(db, user_id, from_date, to_date)
    return compute_breakdowns(load_trades_dataframe(trades))


@router.get("/profile/{profile_user_id}")
def profile_analytics(
    profile_user_id: str,
    from_date: Optional[str] = Query(None, alias="from"),
    to_date: Optional[str] = Query(None, alias="to"),
    db=Depends(get_db),
):
    """
    Public trader-profile statistics.
    Only closed trades count, so open positions never leak into a profile.
    """
    trades = fetch_trades(db, profile_user_id, from_date, to_date)
    return compute_summary(load_trades_dataframe(trades))
