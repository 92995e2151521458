"""
Stripe payment gateway (Checkout Sessions).

The Checkout Session id is the external payment reference. Buyers return from
Stripe with `session_id` in the success URL; execute_payment re-reads the
session from Stripe rather than trusting anything in the redirect.

Webhooks are authenticated with the endpoint's signing secret
(`Stripe-Signature` header, HMAC-SHA256 over the raw body) before the body is
parsed.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Optional

import stripe

from domain.errors import GatewayUnavailable, InvalidSignature, PaymentRejected
from domain.money import from_minor_units, to_minor_units
from domain.order import Order, PaymentMethod
from domain.payment_event import GatewayNotice, PaymentOutcome
from services.config import PaymentSettings, require_setting
from services.payment_gateway import CheckoutSession, item_display_name, lower_headers

logger = logging.getLogger(__name__)

# Errors where retrying later may succeed
_TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


class StripeGateway:
    """PaymentGateway implementation for Stripe Checkout."""

    method = PaymentMethod.STRIPE

    SIGNATURE_TOLERANCE_SECONDS = 300

    def __init__(self, settings: PaymentSettings, *, stripe_client: Optional[Any] = None):
        secret_key = require_setting(settings.stripe_secret_key, "STRIPE_SECRET_KEY", "your Stripe secret API key")
        self._webhook_secret = require_setting(
            settings.stripe_webhook_secret, "STRIPE_WEBHOOK_SECRET", "the signing secret of your Stripe webhook endpoint"
        )
        self._frontend_url = settings.frontend_url
        self._client = stripe_client or stripe.StripeClient(
            secret_key,
            http_client=stripe.RequestsClient(timeout=settings.gateway_timeout_seconds),
            max_network_retries=0,
        )

    def create_checkout(self, order: Order) -> CheckoutSession:
        params = {
            "mode": "payment",
            "client_reference_id": str(order.order_id),
            "line_items": [
                {
                    "price_data": {
                        "currency": order.currency.lower(),
                        "product_data": {
                            "name": item_display_name(item),
                            "metadata": {"kind": item.kind.value, "ref_id": str(item.ref_id)},
                        },
                        "unit_amount": to_minor_units(item.unit_price, order.currency),
                    },
                    "quantity": item.quantity,
                }
                for item in order.items
            ],
            "success_url": f"{self._frontend_url}/payment/success?orderId={order.order_id}&session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self._frontend_url}/payment/cancel",
        }

        try:
            session = self._client.v1.checkout.sessions.create(
                params,
                {"idempotency_key": f"checkout-{order.order_id}"},
            )
        except stripe.StripeError as e:
            raise GatewayUnavailable(f"Stripe could not create checkout for order {order.order_id}: {e}") from e

        return CheckoutSession(external_payment_ref=str(session.id), approval_handle=str(session.url))

    def execute_payment(self, external_payment_ref: str, approver_handle: str) -> GatewayNotice:
        """
        Confirm a checkout session. Stripe captures payment on its own page, so
        `approver_handle` (the session id from the return URL) must simply match
        the stored reference.
        """

        if approver_handle and approver_handle != external_payment_ref:
            raise PaymentRejected(f"Checkout session {approver_handle} does not belong to this order")

        try:
            session = self._client.v1.checkout.sessions.retrieve(external_payment_ref)
        except _TRANSIENT_ERRORS as e:
            raise GatewayUnavailable(f"Stripe unavailable while reading session {external_payment_ref}: {e}") from e
        except stripe.StripeError as e:
            raise PaymentRejected(f"Stripe rejected session {external_payment_ref}: {e}") from e

        status = getattr(session, "status", None)
        payment_status = getattr(session, "payment_status", None)

        if payment_status in ("paid", "no_payment_required"):
            return GatewayNotice(
                external_payment_ref=str(session.id),
                outcome=PaymentOutcome.SUCCEEDED,
                amount=from_minor_units(int(session.amount_total or 0), str(session.currency)),
                currency=str(session.currency).upper(),
                raw_provider_id=getattr(session, "payment_intent", None),
                event_type="checkout.session.retrieve",
            )
        if status == "expired":
            raise PaymentRejected(f"Stripe checkout session {external_payment_ref} expired")
        if status == "complete":
            # Delayed payment methods: the async_payment_* webhook settles the order
            raise GatewayUnavailable(f"Stripe payment for session {external_payment_ref} is still processing")
        raise PaymentRejected(f"Stripe checkout session {external_payment_ref} was not completed (status: {status})")

    def verify_and_parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> Optional[GatewayNotice]:
        signature = lower_headers(headers).get("stripe-signature")
        if not signature:
            raise InvalidSignature("Stripe webhook is missing the Stripe-Signature header")

        payload = raw_body.decode("utf-8", errors="replace")
        try:
            stripe.WebhookSignature.verify_header(
                payload, signature, self._webhook_secret, self.SIGNATURE_TOLERANCE_SECONDS
            )
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature(f"Stripe webhook signature verification failed: {e}") from e

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise InvalidSignature("Stripe webhook body is not valid JSON") from e

        event_type = event.get("type")
        session: Mapping[str, Any] = (event.get("data") or {}).get("object") or {}
        outcome = self._outcome_for(event_type, session)
        if outcome is None:
            logger.info("Ignoring Stripe webhook event type %s", event_type)
            return None

        currency = str(session.get("currency") or "usd")
        return GatewayNotice(
            external_payment_ref=str(session.get("id")),
            outcome=outcome,
            amount=from_minor_units(int(session.get("amount_total") or 0), currency),
            currency=currency.upper(),
            raw_provider_id=session.get("payment_intent"),
            event_type=event_type,
        )

    @staticmethod
    def _outcome_for(event_type: Optional[str], session: Mapping[str, Any]) -> Optional[PaymentOutcome]:
        if event_type == "checkout.session.completed":
            # Unpaid here means a delayed method; wait for async_payment_*
            if session.get("payment_status") in ("paid", "no_payment_required"):
                return PaymentOutcome.SUCCEEDED
            return None
        if event_type == "checkout.session.async_payment_succeeded":
            return PaymentOutcome.SUCCEEDED
        if event_type in ("checkout.session.async_payment_failed", "checkout.session.expired"):
            return PaymentOutcome.FAILED
        return None


__all__ = ["StripeGateway"]
