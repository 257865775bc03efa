"""
Cashfree PG client and webhook verification.
"""

import base64
import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

import requests

from tradelens.app.common.config import get_config
from tradelens.app.payments.base import PaymentProviderError, check_response

logger = logging.getLogger(__name__)

API_VERSION = "2023-08-01"
SUCCESS_EVENT = "PAYMENT_SUCCESS_WEBHOOK"


def _headers() -> Dict[str, str]:
    config = get_config()
    if not config.cashfree_app_id or not config.cashfree_secret_key:
        raise PaymentProviderError("Cashfree credentials missing")
    return {
        "Content-Type": "application/json",
        "x-api-version": API_VERSION,
        "x-client-id": config.cashfree_app_id,
        "x-client-secret": config.cashfree_secret_key,
    }


def create_order(
    order_id: str,
    amount: float,
    user_id: str,
    plan_id: str,
    billing_cycle: str,
    currency: str = "INR",
    customer_email: Optional[str] = None,
    customer_phone: str = "9999999999",
) -> Dict[str, Any]:
    config = get_config()
    customer = {"customer_id": user_id, "customer_phone": customer_phone}
    if customer_email:
        customer["customer_email"] = customer_email

    body = {
        "order_id": order_id,
        "order_amount": round(float(amount), 2),
        "order_currency": currency,
        "customer_details": customer,
        "order_meta": {
            "return_url": f"{config.app_url}/payment/success?order_id={{order_id}}",
        },
        "order_tags": {"planId": plan_id, "billingCycle": billing_cycle},
    }

    response = requests.post(
        f"{config.cashfree_base_url}/orders",
        json=body,
        headers=_headers(),
        timeout=config.http_timeout_sec,
    )
    order = check_response(response, "Cashfree")
    logger.info(f"Created Cashfree order {order_id} for user {user_id}")
    return order


def get_order_status(order_id: str) -> Dict[str, Any]:
    config = get_config()
    response = requests.get(
        f"{config.cashfree_base_url}/orders/{order_id}",
        headers=_headers(),
        timeout=config.http_timeout_sec,
    )
    return check_response(response, "Cashfree")


def compute_signature(timestamp: str, raw_body: str, secret: str) -> str:
    digest = hmac.new(
        secret.encode(), f"{timestamp}{raw_body}".encode(), hashlib.sha256
    ).digest()
    return base64.b64encode(digest).decode()


def verify_webhook_signature(
    timestamp: str, raw_body: str, signature: str, secret: Optional[str] = None
) -> bool:
    secret = secret if secret is not None else get_config().cashfree_secret_key
    if not secret or not signature:
        return False
    return hmac.compare_digest(compute_signature(timestamp, raw_body, secret), signature)
