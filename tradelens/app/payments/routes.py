"""
Checkout and payment webhook endpoints.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from tradelens.app.api.deps import get_current_user_id, rate_limited
from tradelens.app.common.config import get_config
from tradelens.app.common.db import get_db
from tradelens.app.payments import cashfree, nowpayments
from tradelens.app.payments.base import PaymentProviderError
from tradelens.app.payments.coupons import validate_coupon
from tradelens.app.payments.paypal import get_paypal_client
from tradelens.app.payments.service import (
    capture_paypal_payment,
    create_payment,
    handle_cashfree_event,
    handle_nowpayments_ipn,
    handle_paypal_event,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


# =======================
# Request Models
# =======================

class CreatePaymentRequest(BaseModel):
    provider: str
    plan_id: str
    billing_cycle: str = "monthly"
    coupon_code: Optional[str] = None


class CaptureRequest(BaseModel):
    order_id: str


class CouponRequest(BaseModel):
    coupon_code: str
    plan_id: str
    plan_price: float
    currency: str = "USD"


# =======================
# Checkout
# =======================

@router.post("/create")
def create(
    body: CreatePaymentRequest,
    request: Request,
    user_id: str = Depends(rate_limited("payment")),
    db=Depends(get_db),
):
    ipn_url = str(request.url_for("nowpayments_webhook"))
    try:
        return create_payment(
            db,
            body.provider,
            user_id,
            body.plan_id,
            body.billing_cycle,
            coupon_code=body.coupon_code,
            ipn_callback_url=ipn_url,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PaymentProviderError as e:
        logger.error(f"Payment creation failed for {user_id}: {e}")
        raise HTTPException(status_code=502, detail="Payment provider error")


@router.post("/paypal/capture")
def paypal_capture(
    body: CaptureRequest,
    user_id: str = Depends(rate_limited("payment")),
    db=Depends(get_db),
):
    try:
        return capture_paypal_payment(db, user_id, body.order_id)
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PaymentProviderError as e:
        logger.error(f"PayPal capture failed for order {body.order_id}: {e}")
        raise HTTPException(status_code=502, detail="Payment provider error")


@router.post("/coupons/validate")
def coupon_validate(
    body: CouponRequest,
    user_id: str = Depends(get_current_user_id),
    db=Depends(get_db),
):
    if body.plan_price <= 0:
        raise HTTPException(status_code=400, detail="Plan price must be positive")
    result = validate_coupon(
        db, body.coupon_code, user_id, body.plan_id, body.plan_price, body.currency
    )
    return result.to_dict()


# =======================
# Webhooks
# =======================

def _parse_json(raw_body: bytes) -> dict:
    try:
        return json.loads(raw_body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")


@webhook_router.post("/paypal")
async def paypal_webhook(request: Request, db=Depends(get_db)):
    event = _parse_json(await request.body())

    webhook_id = get_config().paypal_webhook_id
    if webhook_id:
        verified = await run_in_threadpool(
            get_paypal_client().verify_webhook, dict(request.headers), event, webhook_id
        )
        if not verified:
            logger.error("Invalid PayPal webhook signature")
            raise HTTPException(status_code=401, detail="Invalid signature")
    else:
        logger.warning("PayPal webhook verification skipped: PAYPAL_WEBHOOK_ID not set")

    logger.info(f"PayPal webhook event: {event.get('event_type')}")
    return await run_in_threadpool(handle_paypal_event, db, event)


@webhook_router.post("/cashfree")
async def cashfree_webhook(request: Request, db=Depends(get_db)):
    raw_body = (await request.body()).decode()
    timestamp = request.headers.get("x-webhook-timestamp", "")
    signature = request.headers.get("x-webhook-signature", "")

    if not cashfree.verify_webhook_signature(timestamp, raw_body, signature):
        logger.error("Invalid Cashfree webhook signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    payload = _parse_json(raw_body.encode())
    try:
        return await run_in_threadpool(handle_cashfree_event, db, payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@webhook_router.post("/nowpayments", name="nowpayments_webhook")
async def nowpayments_webhook(request: Request, db=Depends(get_db)):
    raw_body = (await request.body()).decode()
    signature = request.headers.get("x-nowpayments-sig")

    if not signature:
        logger.error("Missing NOWPayments signature")
        raise HTTPException(status_code=401, detail="Missing signature")
    if not nowpayments.verify_ipn_signature(signature, raw_body):
        logger.error("Invalid NOWPayments signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    payload = _parse_json(raw_body.encode())
    logger.info(f"NOWPayments IPN: {payload.get('payment_status')} for invoice {payload.get('invoice_id')}")
    return await run_in_threadpool(handle_nowpayments_ipn, db, payload)
