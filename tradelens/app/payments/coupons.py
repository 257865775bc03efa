import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from shared.schemas import parse_timestamp
from tradelens.app.common.db import first_row, rows_of

logger = logging.getLogger(__name__)


@dataclass
class CouponResult:
    valid: bool
    error: Optional[str] = None
    coupon: Optional[Dict[str, Any]] = None
    discount_amount: float = 0.0
    final_amount: float = 0.0
    currency: str = "USD"

    def to_dict(self) -> Dict[str, Any]:
        if not self.valid:
            return {"valid": False, "error": self.error}
        return {
            "valid": True,
            "coupon": self.coupon,
            "discount_amount": self.discount_amount,
            "final_amount": self.final_amount,
            "currency": self.currency,
        }


def calculate_discount(coupon: Dict[str, Any], price: float) -> float:
    """Discount for a plan price, never more than the price itself."""
    value = float(coupon.get("discount_value") or 0)
    discount_type = coupon.get("discount_type")

    if discount_type == "percentage":
        discount = price * value / 100
        cap = coupon.get("max_discount_amount")
        if cap and discount > float(cap):
            discount = float(cap)
    elif discount_type == "fixed":
        discount = value
    else:
        discount = 0.0

    return min(discount, price)


def check_coupon(
    db,
    coupon: Dict[str, Any],
    user_id: str,
    plan_id: str,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """Reason the coupon cannot be used, or None if it can."""
    now = now or datetime.now(timezone.utc)

    if not coupon.get("is_active", True):
        return "Invalid or expired coupon code"

    valid_until = parse_timestamp(coupon.get("valid_until"))
    if valid_until is not None:
        if valid_until.tzinfo is None:
            valid_until = valid_until.replace(tzinfo=timezone.utc)
        if valid_until < now:
            return "This coupon has expired"

    max_uses = coupon.get("max_uses")
    if max_uses and (coupon.get("times_used") or 0) >= max_uses:
        return "This coupon has reached its usage limit"

    per_user = coupon.get("max_uses_per_user")
    if per_user:
        usage = rows_of(
            db.table("coupon_usage")
            .select("id")
            .eq("coupon_id", coupon["id"])
            .eq("user_id", user_id)
            .execute()
        )
        if len(usage) >= per_user:
            return "You have already used this coupon"

    plans = coupon.get("applicable_plans") or []
    if plans and plan_id not in plans:
        return "This coupon is not valid for the selected plan"

    return None


def validate_coupon(
    db,
    code: str,
    user_id: str,
    plan_id: str,
    plan_price: float,
    currency: str = "USD",
    now: Optional[datetime] = None,
) -> CouponResult:
    coupon = first_row(
        db.table("coupons")
        .select("*")
        .eq("code", code.strip().upper())
        .eq("is_active", True)
        .limit(1)
        .execute()
    )
    if coupon is None:
        return CouponResult(valid=False, error="Invalid or expired coupon code")

    reason = check_coupon(db, coupon, user_id, plan_id, now)
    if reason:
        logger.info(f"Coupon {code} rejected for user {user_id}: {reason}")
        return CouponResult(valid=False, error=reason)

    discount = calculate_discount(coupon, plan_price)
    return CouponResult(
        valid=True,
        coupon={
            "id": coupon["id"],
            "code": coupon["code"],
            "description": coupon.get("description"),
            "discount_type": coupon.get("discount_type"),
            "discount_value": coupon.get("discount_value"),
        },
        discount_amount=round(discount, 2),
        final_amount=round(max(0.0, plan_price - discount), 2),
        currency=currency,
    )


def record_coupon_usage(db, coupon_id: str, user_id: str, payment_id: Optional[str] = None) -> None:
    db.table("coupon_usage").insert(
        {
            "coupon_id": coupon_id,
            "user_id": user_id,
            "payment_id": payment_id,
            "used_at": datetime.now(timezone.utc).isoformat(),
        }
    ).execute()

    coupon = first_row(db.table("coupons").select("times_used").eq("id", coupon_id).limit(1).execute())
    if coupon is not None:
        db.table("coupons").update(
            {"times_used": (coupon.get("times_used") or 0) + 1}
        ).eq("id", coupon_id).execute()
