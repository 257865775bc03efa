"""
NOWPayments (crypto) invoices and IPN verification.
"""

import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Optional

import requests

from shared.schemas import PaymentStatus
from tradelens.app.common.config import get_config
from tradelens.app.payments.base import PaymentProviderError, check_response

logger = logging.getLogger(__name__)

API_URL = "https://api.nowpayments.io/v1"

PENDING_STATUSES = ("waiting", "confirming", "sending")


def create_invoice(
    amount: float,
    user_id: str,
    plan_id: str,
    billing_cycle: str,
    ipn_callback_url: Optional[str] = None,
) -> Dict[str, Any]:
    config = get_config()
    if not config.nowpayments_api_key:
        raise PaymentProviderError("NOWPayments API key missing")

    body = {
        "price_amount": round(float(amount), 2),
        "price_currency": "usd",
        "order_id": f"{user_id}-{int(time.time() * 1000)}",
        "order_description": f"Subscription: {plan_id} ({billing_cycle})",
        "success_url": f"{config.app_url}/payment/success",
        "cancel_url": f"{config.app_url}/payment/cancel",
    }
    if ipn_callback_url:
        body["ipn_callback_url"] = ipn_callback_url

    response = requests.post(
        f"{API_URL}/invoice",
        json=body,
        headers={"x-api-key": config.nowpayments_api_key, "Content-Type": "application/json"},
        timeout=config.http_timeout_sec,
    )
    invoice = check_response(response, "NOWPayments")
    logger.info(f"Created NOWPayments invoice {invoice.get('id')} for user {user_id}")
    return invoice


def compute_signature(payload: Dict[str, Any], secret: str) -> str:
    message = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hmac.new(secret.encode(), message.encode(), hashlib.sha512).hexdigest()


def verify_ipn_signature(signature: str, raw_body: str, secret: Optional[str] = None) -> bool:
    """Check x-nowpayments-sig: HMAC-SHA512 of the body re-serialized with sorted keys."""
    secret = secret if secret is not None else get_config().nowpayments_ipn_secret
    if not secret or not signature:
        return False
    try:
        payload = json.loads(raw_body)
    except ValueError:
        return False
    return hmac.compare_digest(compute_signature(payload, secret), signature.lower())


def map_payment_status(status: Optional[str]) -> PaymentStatus:
    if status == "finished":
        return PaymentStatus.SUCCEEDED
    if status in PENDING_STATUSES:
        return PaymentStatus.PENDING
    return PaymentStatus.FAILED
