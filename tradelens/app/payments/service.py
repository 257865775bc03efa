"""
Checkout and payment-success processing.

Every provider path ends in ``process_payment_success``, which records the
payment and activates or extends the user's subscription exactly once per
transaction.
"""

import calendar
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from shared.schemas import BillingCycle, PaymentStatus, SubscriptionStatus, parse_timestamp
from tradelens.app.common.config import get_config
from tradelens.app.common.db import first_row
from tradelens.app.notifications.notify import enqueue_email
from tradelens.app.payments import cashfree, nowpayments
from tradelens.app.payments.coupons import record_coupon_usage, validate_coupon
from tradelens.app.payments.paypal import (
    COMPLETED_EVENTS,
    approval_url,
    captured_amount,
    completed_capture,
    get_paypal_client,
    parse_custom_id,
)

logger = logging.getLogger(__name__)

PROVIDERS = ("paypal", "cashfree", "nowpayments")

# Tolerance when comparing captured and expected amounts
AMOUNT_TOLERANCE = 0.01


def add_months(start: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping to the last day of short months."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def period_end(start: datetime, billing_cycle: BillingCycle) -> Optional[datetime]:
    if billing_cycle is BillingCycle.LIFETIME:
        return None
    if billing_cycle is BillingCycle.YEARLY:
        return add_months(start, 12)
    return add_months(start, 1)


def get_plan(db, plan_id: str) -> Dict[str, Any]:
    plan = first_row(
        db.table("subscription_plans").select("*").eq("id", plan_id).limit(1).execute()
    )
    if plan is None:
        raise ValueError(f"Plan not found: {plan_id}")
    return plan


def plan_price(plan: Dict[str, Any], billing_cycle: BillingCycle) -> float:
    if billing_cycle is BillingCycle.YEARLY:
        price = plan.get("price_yearly")
    elif billing_cycle is BillingCycle.LIFETIME:
        price = plan.get("price_lifetime")
    else:
        price = plan.get("price_monthly")
    if price is None:
        raise ValueError(f"Plan {plan.get('id')} has no {billing_cycle.value} price")
    return float(price)


def _record_pending_payment(
    db,
    user_id: str,
    provider: str,
    gateway_order_id: str,
    amount: float,
    currency: str,
    plan_id: str,
    billing_cycle: BillingCycle,
    coupon_id: Optional[str],
) -> None:
    db.table("payment_history").insert(
        {
            "user_id": user_id,
            "amount": amount,
            "currency": currency,
            "status": PaymentStatus.PENDING.value,
            "payment_method": provider,
            "gateway_order_id": gateway_order_id,
            "billing_cycle": billing_cycle.value,
            "metadata": {
                "plan_id": plan_id,
                "billing_cycle": billing_cycle.value,
                "coupon_id": coupon_id,
            },
        }
    ).execute()


def create_payment(
    db,
    provider: str,
    user_id: str,
    plan_id: str,
    billing_cycle: str = "monthly",
    coupon_code: Optional[str] = None,
    ipn_callback_url: Optional[str] = None,
) -> Dict[str, Any]:
    """Open a checkout with the chosen provider for a plan price."""
    if provider not in PROVIDERS:
        raise ValueError(f"Unsupported provider: {provider}")

    cycle = BillingCycle(billing_cycle)
    plan = get_plan(db, plan_id)
    amount = plan_price(plan, cycle)

    coupon_id = None
    if coupon_code:
        result = validate_coupon(db, coupon_code, user_id, plan_id, amount)
        if not result.valid:
            raise ValueError(result.error)
        coupon_id = result.coupon["id"]
        amount = result.final_amount

    logger.info(f"Processing {provider} payment for user {user_id}, plan {plan_id}, amount {amount}")

    if amount <= 0:
        # Fully discounted, nothing to charge
        activation = process_payment_success(
            db,
            user_id=user_id,
            plan_id=plan_id,
            billing_cycle=cycle.value,
            amount=0.0,
            payment_method="coupon",
            transaction_id=f"coupon_{uuid.uuid4().hex}",
            coupon_id=coupon_id,
        )
        return {"provider": "coupon", "amount": 0.0, **activation}

    config = get_config()

    if provider == "paypal":
        order = get_paypal_client().create_order(
            amount,
            user_id,
            plan_id,
            cycle.value,
            return_url=f"{config.app_url}/payment/success",
            cancel_url=f"{config.app_url}/payment/cancel",
        )
        order_id, currency = order["id"], "USD"
        result = {"order_id": order_id, "approval_url": approval_url(order)}

    elif provider == "cashfree":
        order_id = f"order_{user_id}_{int(time.time() * 1000)}"
        currency = "INR"
        order = cashfree.create_order(order_id, amount, user_id, plan_id, cycle.value, currency)
        result = {
            "order_id": order.get("order_id", order_id),
            "payment_session_id": order.get("payment_session_id"),
        }

    else:
        invoice = nowpayments.create_invoice(
            amount, user_id, plan_id, cycle.value, ipn_callback_url=ipn_callback_url
        )
        order_id, currency = str(invoice["id"]), "USD"
        result = {"order_id": order_id, "approval_url": invoice.get("invoice_url")}

    _record_pending_payment(
        db, user_id, provider, order_id, amount, currency, plan_id, cycle, coupon_id
    )
    return {"provider": provider, "amount": amount, "currency": currency, **result}


def _find_succeeded_payment(
    db, transaction_id: str, provider_ref: Optional[str]
) -> Optional[Dict[str, Any]]:
    existing = first_row(
        db.table("payment_history")
        .select("*")
        .eq("transaction_id", transaction_id)
        .eq("status", PaymentStatus.SUCCEEDED.value)
        .limit(1)
        .execute()
    )
    if existing is None and provider_ref:
        existing = first_row(
            db.table("payment_history")
            .select("*")
            .eq("gateway_order_id", provider_ref)
            .eq("status", PaymentStatus.SUCCEEDED.value)
            .limit(1)
            .execute()
        )
    return existing


def _user_email(db, user_id: str) -> Optional[str]:
    user = first_row(
        db.table("app_users").select("email").eq("user_id", user_id).limit(1).execute()
    )
    return user.get("email") if user else None


def process_payment_success(
    db,
    user_id: str,
    plan_id: str,
    billing_cycle: str,
    amount: float,
    payment_method: str,
    transaction_id: str,
    provider_ref: Optional[str] = None,
    currency: str = "USD",
    coupon_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Record a successful payment and activate or extend the subscription.

    Repeated deliveries of the same transaction are acknowledged without
    touching the subscription again.
    """
    if not all((user_id, plan_id, billing_cycle, transaction_id)):
        raise ValueError("Missing required fields: user_id, plan_id, billing_cycle, transaction_id")

    cycle = BillingCycle(billing_cycle)
    now = now or datetime.now(timezone.utc)

    if _find_succeeded_payment(db, transaction_id, provider_ref):
        logger.info(f"Payment {transaction_id} already processed, skipping subscription update")
        return {"success": True, "already_processed": True, "subscription_active": True}

    record = {
        "user_id": user_id,
        "amount": amount,
        "currency": currency,
        "status": PaymentStatus.SUCCEEDED.value,
        "payment_method": payment_method,
        "transaction_id": transaction_id,
        "gateway_order_id": provider_ref,
        "billing_cycle": cycle.value,
        "paid_at": now.isoformat(),
    }

    pending = None
    if provider_ref:
        pending = first_row(
            db.table("payment_history")
            .select("*")
            .eq("gateway_order_id", provider_ref)
            .limit(1)
            .execute()
        )

    if pending is not None:
        metadata = dict(pending.get("metadata") or {})
        coupon_id = coupon_id or metadata.get("coupon_id")
        record["metadata"] = {**metadata, "plan_id": plan_id, "billing_cycle": cycle.value}
        db.table("payment_history").update(record).eq("id", pending["id"]).execute()
    else:
        record["metadata"] = {"plan_id": plan_id, "billing_cycle": cycle.value}
        db.table("payment_history").upsert(record, on_conflict="transaction_id").execute()

    current = first_row(
        db.table("user_subscriptions").select("*").eq("user_id", user_id).limit(1).execute()
    )

    start = now
    if current and current.get("status") == SubscriptionStatus.ACTIVE.value:
        current_end = parse_timestamp(current.get("current_period_end"))
        if current_end is not None and current_end > now:
            start = current_end
    end = period_end(start, cycle)

    try:
        db.table("user_subscriptions").upsert(
            {
                "user_id": user_id,
                "plan_id": plan_id,
                "status": SubscriptionStatus.ACTIVE.value,
                "billing_cycle": cycle.value,
                "current_period_start": start.isoformat(),
                "current_period_end": end.isoformat() if end else None,
                "payment_provider": payment_method,
                "transaction_id": transaction_id,
                "updated_at": now.isoformat(),
            },
            on_conflict="user_id",
        ).execute()
    except Exception as e:
        logger.critical(
            f"Payment {transaction_id} succeeded but subscription update failed for {user_id}: {e}"
        )
        raise

    if coupon_id:
        record_coupon_usage(db, coupon_id, user_id)

    email = _user_email(db, user_id)
    if email:
        enqueue_email(
            db,
            user_id,
            email,
            "payment_success",
            "Payment received",
            {"plan_name": plan_id, "amount": amount, "date": now.date().isoformat()},
        )
    else:
        logger.warning(f"No email on file for user {user_id}, payment email not queued")

    logger.info(f"Subscription for user {user_id} active until {end.isoformat() if end else 'lifetime'}")
    return {
        "success": True,
        "subscription_active": True,
        "period_end": end.isoformat() if end else None,
    }


def _amount_matches(captured: Optional[float], expected: float) -> bool:
    return captured is not None and abs(captured - expected) <= AMOUNT_TOLERANCE


def capture_paypal_payment(db, user_id: str, order_id: str) -> Dict[str, Any]:
    """Capture an approved PayPal order for the current user and activate it."""
    client = get_paypal_client()
    capture = client.capture_order(order_id)
    if capture.get("status") != "COMPLETED":
        raise ValueError("Payment not completed")

    order = client.get_order(order_id)
    units = order.get("purchase_units") or [{}]
    parsed = parse_custom_id(units[0].get("custom_id"))
    if parsed is None:
        raise ValueError("Order is missing plan details")

    order_user, plan_id, billing_cycle = parsed
    if order_user != user_id:
        raise PermissionError("Order belongs to another user")

    pending = first_row(
        db.table("payment_history").select("*").eq("gateway_order_id", order_id).limit(1).execute()
    )
    if pending is not None:
        expected = float(pending["amount"])
    else:
        expected = plan_price(get_plan(db, plan_id), BillingCycle(billing_cycle))

    amount = captured_amount(capture)
    if not _amount_matches(amount, expected):
        logger.error(f"PayPal order {order_id} amount mismatch: {amount} != {expected}")
        raise ValueError("Payment amount mismatch")

    capture_id = capture["purchase_units"][0]["payments"]["captures"][0]["id"]
    return process_payment_success(
        db,
        user_id=user_id,
        plan_id=plan_id,
        billing_cycle=billing_cycle,
        amount=amount,
        payment_method="paypal",
        transaction_id=capture_id,
        provider_ref=order_id,
    )


def handle_paypal_event(db, event: Dict[str, Any]) -> Dict[str, Any]:
    event_type = event.get("event_type")
    if event_type not in COMPLETED_EVENTS:
        return {"status": "ignored", "event_type": event_type}

    resource = event.get("resource") or {}
    related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
    order_id = related.get("order_id") or resource.get("id")

    order = get_paypal_client().get_order(order_id)
    capture = completed_capture(order)
    if order.get("status") != "COMPLETED" or capture is None:
        logger.warning(f"PayPal order {order_id} not completed ({order.get('status')}), skipping")
        return {"status": "ignored", "reason": "order not completed"}

    unit = (order.get("purchase_units") or [{}])[0]
    parsed = parse_custom_id(unit.get("custom_id") or unit.get("reference_id"))
    if parsed is None:
        logger.warning(f"PayPal order {order_id} has no plan details, skipping")
        return {"status": "ignored", "reason": "missing custom_id"}

    user_id, plan_id, billing_cycle = parsed
    result = process_payment_success(
        db,
        user_id=user_id,
        plan_id=plan_id,
        billing_cycle=billing_cycle,
        amount=float((capture.get("amount") or {}).get("value") or 0),
        payment_method="paypal",
        transaction_id=capture.get("id") or resource.get("id"),
        provider_ref=order_id,
    )
    return {"status": "processed", **result}


def handle_cashfree_event(db, payload: Dict[str, Any]) -> Dict[str, Any]:
    if payload.get("type") != cashfree.SUCCESS_EVENT:
        return {"status": "ignored", "event_type": payload.get("type")}

    data = payload.get("data") or {}
    order_id = (data.get("order") or {}).get("order_id")
    if not order_id:
        raise ValueError("No order ID in webhook")

    order = cashfree.get_order_status(order_id)
    paid = order.get("order_status") == "PAID"
    transaction_id = str(
        order.get("cf_order_id") or (data.get("payment") or {}).get("cf_payment_id") or order_id
    )

    if not paid:
        db.table("payment_history").update(
            {"status": PaymentStatus.FAILED.value, "transaction_id": transaction_id}
        ).eq("gateway_order_id", order_id).execute()
        return {"status": "failed", "order_id": order_id}

    tags = order.get("order_tags") or {}
    plan_id, billing_cycle = tags.get("planId"), tags.get("billingCycle")
    if not plan_id or not billing_cycle:
        logger.warning(f"Cashfree order {order_id} missing plan tags, skipping activation")
        return {"status": "ignored", "reason": "missing order_tags"}

    result = process_payment_success(
        db,
        user_id=(order.get("customer_details") or {}).get("customer_id"),
        plan_id=plan_id,
        billing_cycle=billing_cycle,
        amount=float(order.get("order_amount") or 0),
        payment_method="cashfree",
        transaction_id=transaction_id,
        provider_ref=order_id,
        currency=order.get("order_currency") or "INR",
    )
    return {"status": "processed", **result}


def handle_nowpayments_ipn(db, payload: Dict[str, Any]) -> Dict[str, Any]:
    status = nowpayments.map_payment_status(payload.get("payment_status"))
    invoice_id = payload.get("invoice_id")
    order_id = payload.get("order_id")

    payment = None
    if invoice_id is not None:
        payment = first_row(
            db.table("payment_history")
            .select("*")
            .eq("gateway_order_id", str(invoice_id))
            .limit(1)
            .execute()
        )
    if payment is None and order_id:
        payment = first_row(
            db.table("payment_history").select("*").eq("transaction_id", order_id).limit(1).execute()
        )

    if payment is None:
        logger.warning(f"Payment not found for invoice {invoice_id} or order {order_id}")
        return {"status": "ignored", "reason": "payment not found"}

    if status is not PaymentStatus.SUCCEEDED:
        db.table("payment_history").update(
            {
                "status": status.value,
                "metadata": {**(payment.get("metadata") or {}), "nowpayments": payload},
            }
        ).eq("id", payment["id"]).execute()
        return {"status": status.value}

    metadata = payment.get("metadata") or {}
    plan_id, billing_cycle = metadata.get("plan_id"), metadata.get("billing_cycle")
    if not plan_id or not billing_cycle:
        logger.error(f"Payment {payment['id']} missing plan details, cannot activate subscription")
        return {"status": "ignored", "reason": "missing plan details"}

    payment_id = payload.get("payment_id")
    result = process_payment_success(
        db,
        user_id=payment["user_id"],
        plan_id=plan_id,
        billing_cycle=billing_cycle,
        amount=float(payment.get("amount") or 0),
        payment_method="crypto",
        transaction_id=str(payment_id or invoice_id),
        provider_ref=str(invoice_id) if invoice_id is not None else payment.get("gateway_order_id"),
    )
    return {"status": "processed", **result}
