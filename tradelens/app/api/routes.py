"""
FastAPI routes for the journal API.
Endpoints: /health, /trades
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, Field

from shared.schemas import ExecutionRow, PartialExit, TradeAction
from tradelens.app.api.deps import get_current_user_id
from tradelens.app.common.db import get_db
from tradelens.app.subscriptions.access import check_trade_limit
from tradelens.app.trades.service import (
    TradeNotFoundError,
    add_exit,
    create_trade,
    delete_trade,
    export_trades_csv,
    fetch_trade,
    fetch_trades,
    remove_exit,
    update_trade,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# =======================
# Request / Response Models
# =======================

class HealthResponse(BaseModel):
    status: str
    timestamp: str


class ExecutionModel(BaseModel):
    action: str
    quantity: float
    price: float
    datetime: datetime
    fee: float = 0.0

    def to_row(self) -> ExecutionRow:
        return ExecutionRow(
            action=TradeAction.parse(self.action),
            quantity=self.quantity,
            price=self.price,
            datetime=self.datetime,
            fee=abs(self.fee),
        )


class TradeFields(BaseModel):
    instrument: Optional[str] = None
    action: Optional[str] = None
    market_type: Optional[str] = None
    entry_price: Optional[float] = None
    exit_price: Optional[float] = None
    quantity: Optional[float] = None
    entry_time: Optional[str] = None
    exit_time: Optional[str] = None
    trade_date: Optional[str] = None
    sl: Optional[float] = None
    target: Optional[float] = None
    commission: Optional[float] = None
    fees: Optional[float] = None
    contract_multiplier: Optional[float] = None
    tick_size: Optional[float] = None
    tick_value: Optional[float] = None
    account_id: Optional[str] = None
    strategy_id: Optional[str] = None
    tags: Optional[List[str]] = None
    main_image: Optional[str] = None
    additional_images: Optional[List[str]] = None
    notes: Optional[str] = None
    rating: Optional[int] = None
    trade_rating: Optional[float] = None
    chart_link: Optional[str] = None
    is_shared: Optional[bool] = None


class TradeCreateRequest(TradeFields):
    executions: Optional[List[ExecutionModel]] = None
    timezone: str = "UTC"


class TradeUpdateRequest(TradeFields):
    timezone: str = "UTC"


class ExitRequest(BaseModel):
    action: str
    quantity: float = Field(gt=0)
    price: float = Field(gt=0)
    datetime: datetime
    fee: float = 0.0
    timezone: str = "UTC"


def _fields(body: TradeFields) -> Dict[str, Any]:
    return body.model_dump(exclude_unset=True, exclude={"executions", "timezone"})


# =======================
# Routes
# =======================

@router.get("/health", response_model=HealthResponse)
def health_check():
    return HealthResponse(status="healthy", timestamp=datetime.now(timezone.utc).isoformat())


@router.get("/trades")
def list_trades(
    user_id: str = Depends(get_current_user_id),
    db=Depends(get_db),
):
    return fetch_trades(db, user_id)


@router.get("/trades/export")
def export_trades(
    user_id: str = Depends(get_current_user_id),
    db=Depends(get_db),
):
    csv_text = export_trades_csv(fetch_trades(db, user_id))
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=trades.csv"},
    )


@router.post("/trades", status_code=201)
def add_trade(
    body: TradeCreateRequest,
    user_id: str = Depends(get_current_user_id),
    db=Depends(get_db),
):
    try:
        check_trade_limit(db, user_id)
    except PermissionError as e:
        logger.warning(f"Trade limit reached for user {user_id}")
        raise HTTPException(status_code=403, detail=str(e))

    try:
        executions = [e.to_row() for e in body.executions] if body.executions else None
        return create_trade(db, user_id, _fields(body), executions, body.timezone)
    except ValueError as e:
        logger.warning(f"Rejected trade for user {user_id}: {e}")
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/trades/{trade_id}")
def get_trade(
    trade_id: str,
    user_id: str = Depends(get_current_user_id),
    db=Depends(get_db),
):
    try:
        return fetch_trade(db, user_id, trade_id)
    except TradeNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.patch("/trades/{trade_id}")
def edit_trade(
    trade_id: str,
    body: TradeUpdateRequest,
    user_id: str = Depends(get_current_user_id),
    db=Depends(get_db),
):
    try:
        return update_trade(db, user_id, trade_id, _fields(body), body.timezone)
    except TradeNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/trades/{trade_id}", status_code=204)
def remove_trade(
    trade_id: str,
    user_id: str = Depends(get_current_user_id),
    db=Depends(get_db),
):
    try:
        delete_trade(db, user_id, trade_id)
    except TradeNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return Response(status_code=204)


@router.post("/trades/{trade_id}/exits")
def add_trade_exit(
    trade_id: str,
    body: ExitRequest,
    user_id: str = Depends(get_current_user_id),
    db=Depends(get_db),
):
    try:
        fill = PartialExit(
            action=TradeAction.parse(body.action),
            datetime=body.datetime,
            quantity=body.quantity,
            price=body.price,
            fee=abs(body.fee),
        )
        return add_exit(db, user_id, trade_id, fill, body.timezone)
    except TradeNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/trades/{trade_id}/exits/{index}")
def delete_trade_exit(
    trade_id: str,
    index: int,
    user_id: str = Depends(get_current_user_id),
    db=Depends(get_db),
):
    try:
        return remove_exit(db, user_id, trade_id, index)
    except TradeNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
