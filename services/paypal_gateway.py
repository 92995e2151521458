"""
PayPal payment gateway (REST v1 payments API).

Flow:
1. create_checkout creates a `sale` payment and returns the approval URL the
   buyer is redirected to. The order id is sent as `invoice_number` for
   reconciliation in the PayPal dashboard only; it is never read back.
2. After approval PayPal redirects the buyer to FRONTEND_URL with a PayerID;
   execute_payment executes the payment with it.
3. PayPal also delivers PAYMENT.SALE.* webhooks. Each one is authenticated
   through PayPal's verify-webhook-signature endpoint before it is trusted.
   There is no bypass for sandbox mode.

Every call uses the configured timeout; timeouts, transport errors and 5xx
responses raise GatewayUnavailable.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Dict, Mapping, Optional

import httpx

from domain.errors import GatewayUnavailable, InvalidSignature, PaymentRejected
from domain.money import parse_amount, quantize
from domain.order import Order, PaymentMethod
from domain.payment_event import GatewayNotice, PaymentOutcome
from services.config import PaymentSettings, require_setting
from services.payment_gateway import CheckoutSession, item_display_name, lower_headers

logger = logging.getLogger(__name__)

_TRANSMISSION_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}

_WEBHOOK_OUTCOMES = {
    "PAYMENT.SALE.COMPLETED": PaymentOutcome.SUCCEEDED,
    "PAYMENT.SALE.DENIED": PaymentOutcome.FAILED,
}


class PayPalGateway:
    """PaymentGateway implementation for PayPal."""

    method = PaymentMethod.PAYPAL

    # Refresh the OAuth token this many seconds before PayPal expires it
    TOKEN_REFRESH_MARGIN_SECONDS = 60

    def __init__(self, settings: PaymentSettings, *, http_client: Optional[httpx.Client] = None):
        self._client_id = require_setting(settings.paypal_client_id, "PAYPAL_CLIENT_ID", "your PayPal REST app client id")
        self._client_secret = require_setting(
            settings.paypal_client_secret, "PAYPAL_CLIENT_SECRET", "your PayPal REST app secret"
        )
        self._webhook_id = require_setting(
            settings.paypal_webhook_id, "PAYPAL_WEBHOOK_ID", "the id of the webhook registered with PayPal"
        )
        self._frontend_url = settings.frontend_url
        self._client = http_client or httpx.Client(
            base_url=settings.paypal_base_url,
            timeout=settings.gateway_timeout_seconds,
        )

        self._token: Optional[str] = None
        self._token_expires_at: float = 0.0
        self._token_lock = threading.Lock()

    # ---------------------------------------------------------
    # Low-level request handling
    # ---------------------------------------------------------
    def _access_token(self) -> str:
        with self._token_lock:
            if self._token is not None and time.monotonic() < self._token_expires_at:
                return self._token

            try:
                response = self._client.post(
                    "/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self._client_id, self._client_secret),
                    headers={"Accept": "application/json"},
                )
            except httpx.TimeoutException as e:
                raise GatewayUnavailable("PayPal authentication timed out") from e
            except httpx.HTTPError as e:
                raise GatewayUnavailable(f"PayPal authentication failed: {e}") from e

            if response.status_code != 200:
                raise GatewayUnavailable(f"PayPal authentication failed with HTTP {response.status_code}")

            payload = self._json_body(response, "authentication")
            if not payload.get("access_token"):
                raise GatewayUnavailable("PayPal authentication response has no access_token")
            self._token = str(payload["access_token"])
            try:
                expires_in = int(payload.get("expires_in", 0))
            except (TypeError, ValueError):
                expires_in = 0
            self._token_expires_at = time.monotonic() + max(expires_in - self.TOKEN_REFRESH_MARGIN_SECONDS, 0)
            return self._token

    def _request(self, method: str, path: str, *, body: Optional[Dict[str, Any]] = None) -> httpx.Response:
        """
        Perform an authenticated API call.

        Returns the response for 2xx and 4xx statuses; callers interpret 4xx.
        """

        token = self._access_token()
        try:
            response = self._client.request(
                method,
                path,
                json=body,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            )
        except httpx.TimeoutException as e:
            raise GatewayUnavailable(f"PayPal request timed out: {method} {path}") from e
        except httpx.HTTPError as e:
            raise GatewayUnavailable(f"PayPal request failed: {method} {path}: {e}") from e

        if response.status_code == 401:
            # Token revoked early; force a refresh on the next call
            with self._token_lock:
                self._token = None
            raise GatewayUnavailable(f"PayPal rejected credentials: {method} {path}")
        if response.status_code == 429 or response.status_code >= 500:
            raise GatewayUnavailable(f"PayPal returned HTTP {response.status_code}: {method} {path}")
        return response

    @staticmethod
    def _json_body(response: httpx.Response, context: str) -> Mapping[str, Any]:
        """Decode a 2xx response body; anything but a JSON object is a provider fault."""

        try:
            payload = response.json()
        except ValueError as e:
            raise GatewayUnavailable(f"PayPal returned a malformed {context} response") from e
        if not isinstance(payload, Mapping):
            raise GatewayUnavailable(f"PayPal returned a malformed {context} response")
        return payload

    @staticmethod
    def _error_name(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return "UNKNOWN_ERROR"
        if not isinstance(payload, Mapping):
            return "UNKNOWN_ERROR"
        return str(payload.get("name") or "UNKNOWN_ERROR")

    # ---------------------------------------------------------
    # PaymentGateway operations
    # ---------------------------------------------------------
    def create_checkout(self, order: Order) -> CheckoutSession:
        body = {
            "intent": "sale",
            "payer": {"payment_method": "paypal"},
            "redirect_urls": {
                "return_url": f"{self._frontend_url}/payment/success?orderId={order.order_id}",
                "cancel_url": f"{self._frontend_url}/payment/cancel",
            },
            "transactions": [
                {
                    "item_list": {
                        "items": [
                            {
                                "name": item_display_name(item),
                                "sku": str(item.ref_id),
                                "price": str(quantize(item.unit_price, order.currency)),
                                "currency": order.currency,
                                "quantity": item.quantity,
                            }
                            for item in order.items
                        ]
                    },
                    "amount": {"currency": order.currency, "total": str(order.total_amount)},
                    "description": f"Mod marketplace order {order.order_id}",
                    "invoice_number": str(order.order_id),
                }
            ],
        }

        response = self._request("POST", "/v1/payments/payment", body=body)
        if response.status_code >= 400:
            raise GatewayUnavailable(
                f"PayPal refused to create payment for order {order.order_id}: {self._error_name(response)}"
            )

        payment = self._json_body(response, "create payment")
        approval_url = next(
            (link.get("href") for link in payment.get("links", []) if link.get("rel") == "approval_url"),
            None,
        )
        if not payment.get("id") or not approval_url:
            raise GatewayUnavailable(f"PayPal response for order {order.order_id} is missing id or approval_url")

        return CheckoutSession(external_payment_ref=str(payment["id"]), approval_handle=str(approval_url))

    def execute_payment(self, external_payment_ref: str, approver_handle: str) -> GatewayNotice:
        """
        Execute an approved payment. `approver_handle` is the PayerID PayPal
        appended to the return URL.
        """

        response = self._request(
            "POST",
            f"/v1/payments/payment/{external_payment_ref}/execute",
            body={"payer_id": approver_handle},
        )

        if response.status_code >= 400 and self._error_name(response) == "PAYMENT_ALREADY_DONE":
            # Duplicate execute (double submit or retry); report the real state
            logger.info("PayPal payment %s already executed; fetching its state", external_payment_ref)
            response = self._request("GET", f"/v1/payments/payment/{external_payment_ref}")

        if response.status_code >= 400:
            raise PaymentRejected(f"PayPal declined payment {external_payment_ref}: {self._error_name(response)}")

        return self._notice_from_payment(self._json_body(response, "execute payment"))

    def _notice_from_payment(self, payment: Mapping[str, Any]) -> GatewayNotice:
        payment_id = str(payment.get("id"))
        transactions = payment.get("transactions") or []
        if not transactions:
            raise GatewayUnavailable(f"PayPal payment {payment_id} has no transactions")

        transaction = transactions[0]
        amount = transaction.get("amount") or {}
        sale: Mapping[str, Any] = next(
            (resource["sale"] for resource in transaction.get("related_resources") or [] if "sale" in resource),
            {},
        )
        sale_state = sale.get("state")

        if payment.get("state") == "failed" or sale_state in ("denied", "failed"):
            raise PaymentRejected(f"PayPal payment {payment_id} failed (sale state: {sale_state})")
        if payment.get("state") != "approved" or sale_state != "completed":
            # e.g. eCheck sales stay pending; the SALE.COMPLETED webhook settles them
            raise GatewayUnavailable(
                f"PayPal payment {payment_id} not settled yet (payment state: {payment.get('state')}, sale state: {sale_state})"
            )

        return GatewayNotice(
            external_payment_ref=payment_id,
            outcome=PaymentOutcome.SUCCEEDED,
            amount=parse_amount(amount.get("total", "0")),
            currency=str(amount.get("currency", "USD")),
            raw_provider_id=sale.get("id"),
            event_type="payment.execute",
        )

    def verify_and_parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> Optional[GatewayNotice]:
        header_map = lower_headers(headers)
        missing = [name for name in _TRANSMISSION_HEADERS.values() if not header_map.get(name)]
        if missing:
            raise InvalidSignature(f"PayPal webhook is missing headers: {', '.join(missing)}")

        try:
            event = json.loads(raw_body)
        except ValueError as e:
            raise InvalidSignature("PayPal webhook body is not valid JSON") from e
        if not isinstance(event, dict):
            raise InvalidSignature("PayPal webhook body is not a JSON object")

        verification = {field: header_map[name] for field, name in _TRANSMISSION_HEADERS.items()}
        verification["webhook_id"] = self._webhook_id
        verification["webhook_event"] = event

        response = self._request("POST", "/v1/notifications/verify-webhook-signature", body=verification)
        if response.status_code >= 400:
            raise InvalidSignature(f"PayPal refused to verify webhook: {self._error_name(response)}")
        status = self._json_body(response, "webhook verification").get("verification_status")
        if status != "SUCCESS":
            raise InvalidSignature(f"PayPal webhook signature verification returned {status}")

        event_type = event.get("event_type")
        outcome = _WEBHOOK_OUTCOMES.get(event_type)
        if outcome is None:
            logger.info("Ignoring PayPal webhook event type %s", event_type)
            return None

        resource = event.get("resource") or {}
        parent_payment = resource.get("parent_payment")
        if not parent_payment:
            logger.warning("PayPal %s webhook without parent_payment; ignoring", event_type, extra={"event_id": event.get("id")})
            return None

        amount = resource.get("amount") or {}
        return GatewayNotice(
            external_payment_ref=str(parent_payment),
            outcome=outcome,
            amount=parse_amount(amount.get("total", "0")),
            currency=str(amount.get("currency", "USD")),
            raw_provider_id=resource.get("id"),
            event_type=event_type,
        )


__all__ = ["PayPalGateway"]
