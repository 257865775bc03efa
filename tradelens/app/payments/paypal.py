"""
PayPal Orders v2 client.
"""

import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

import requests

from tradelens.app.common.config import get_config
from tradelens.app.payments.base import PaymentProviderError, check_response

logger = logging.getLogger(__name__)

# Refresh the token this many seconds before PayPal expires it
TOKEN_REFRESH_MARGIN_SEC = 60

COMPLETED_EVENTS = ("PAYMENT.CAPTURE.COMPLETED", "CHECKOUT.ORDER.COMPLETED")


def encode_custom_id(user_id: str, plan_id: str, billing_cycle: str) -> str:
    return f"{user_id}_{plan_id}_{billing_cycle}"


def parse_custom_id(custom_id: Optional[str]) -> Optional[Tuple[str, str, str]]:
    """(user_id, plan_id, billing_cycle) from an order's custom_id.

    Accepts the underscore form and the older JSON form.
    """
    if not custom_id:
        return None

    if custom_id.startswith("{"):
        try:
            data = json.loads(custom_id)
        except ValueError:
            return None
        parts = (data.get("userId"), data.get("planId"), data.get("billingCycle"))
    else:
        parts = tuple(custom_id.split("_"))

    if len(parts) != 3 or not all(parts):
        return None
    return parts


class PayPalClient:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str,
        timeout: float = 10,
        clock: Callable[[], float] = time.time,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url
        self.timeout = timeout
        self._clock = clock
        self._token: Optional[str] = None
        self._token_expiry = 0.0
        self._lock = threading.Lock()

    def get_access_token(self) -> str:
        """Client-credentials token, cached until shortly before expiry."""
        with self._lock:
            if self._token and self._clock() < self._token_expiry:
                return self._token

            if not self.client_id or not self.client_secret:
                raise PaymentProviderError("PayPal credentials missing")

            response = requests.post(
                f"{self.base_url}/v1/oauth2/token",
                auth=(self.client_id, self.client_secret),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                data={"grant_type": "client_credentials"},
                timeout=self.timeout,
            )
            if not response.ok:
                raise PaymentProviderError(
                    f"Failed to get PayPal access token [{response.status_code}]: {response.text}"
                )

            data = response.json()
            self._token = data["access_token"]
            self._token_expiry = (
                self._clock() + float(data.get("expires_in", 0)) - TOKEN_REFRESH_MARGIN_SEC
            )
            return self._token

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.get_access_token()}",
            "Content-Type": "application/json",
        }

    def create_order(
        self,
        amount: float,
        user_id: str,
        plan_id: str,
        billing_cycle: str,
        currency: str = "USD",
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "amount": {"currency_code": currency, "value": f"{amount:.2f}"},
                    "custom_id": encode_custom_id(user_id, plan_id, billing_cycle),
                }
            ],
        }
        if return_url and cancel_url:
            body["application_context"] = {"return_url": return_url, "cancel_url": cancel_url}

        response = requests.post(
            f"{self.base_url}/v2/checkout/orders",
            json=body,
            headers=self._headers(),
            timeout=self.timeout,
        )
        order = check_response(response, "PayPal")
        logger.info(f"Created PayPal order {order.get('id')} for user {user_id}")
        return order

    def capture_order(self, order_id: str) -> Dict[str, Any]:
        response = requests.post(
            f"{self.base_url}/v2/checkout/orders/{order_id}/capture",
            headers=self._headers(),
            timeout=self.timeout,
        )
        return check_response(response, "PayPal capture")

    def get_order(self, order_id: str) -> Dict[str, Any]:
        response = requests.get(
            f"{self.base_url}/v2/checkout/orders/{order_id}",
            headers=self._headers(),
            timeout=self.timeout,
        )
        return check_response(response, "PayPal")

    def verify_webhook(
        self, headers: Dict[str, str], event: Dict[str, Any], webhook_id: str
    ) -> bool:
        """Ask PayPal to verify a webhook delivery's transmission signature."""
        lowered = {k.lower(): v for k, v in headers.items()}
        body = {
            "auth_algo": lowered.get("paypal-auth-algo"),
            "cert_url": lowered.get("paypal-cert-url"),
            "transmission_id": lowered.get("paypal-transmission-id"),
            "transmission_sig": lowered.get("paypal-transmission-sig"),
            "transmission_time": lowered.get("paypal-transmission-time"),
            "webhook_id": webhook_id,
            "webhook_event": event,
        }
        response = requests.post(
            f"{self.base_url}/v1/notifications/verify-webhook-signature",
            json=body,
            headers=self._headers(),
            timeout=self.timeout,
        )
        result = check_response(response, "PayPal webhook verification")
        return result.get("verification_status") == "SUCCESS"


def approval_url(order: Dict[str, Any]) -> Optional[str]:
    for link in order.get("links") or []:
        if link.get("rel") in ("approve", "payer-action"):
            return link.get("href")
    return None


def captured_amount(capture: Dict[str, Any]) -> Optional[float]:
    try:
        unit = capture["purchase_units"][0]
        return float(unit["payments"]["captures"][0]["amount"]["value"])
    except (KeyError, IndexError, TypeError, ValueError):
        return None


def completed_capture(order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """First COMPLETED capture recorded on an order, if any."""
    for unit in order.get("purchase_units") or []:
        for capture in (unit.get("payments") or {}).get("captures") or []:
            if capture.get("status") == "COMPLETED":
                return capture
    return None


_client: Optional[PayPalClient] = None


def get_paypal_client() -> PayPalClient:
    global _client
    if _client is None:
        config = get_config()
        _client = PayPalClient(
            config.paypal_client_id,
            config.paypal_client_secret,
            config.paypal_base_url,
            timeout=config.http_timeout_sec,
        )
    return _client


def reset_paypal_client() -> None:
    global _client
    _client = None
