"""
Payment gateway adapter interface.

Each provider adapter hides its request/response shapes behind three
operations. Adapters make outbound network calls only; they never touch the
ledger.

- create_checkout: open a provider-side payment for a pending order
- execute_payment: confirm a buyer-approved payment (browser return path)
- verify_and_parse_webhook: authenticate and decode an inbound webhook

Errors:
- GatewayUnavailable: network failure, timeout or provider 5xx (retryable;
  the order stays pending)
- PaymentRejected: provider declined the payment
- InvalidSignature: webhook could not be authenticated
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Protocol

from domain.errors import GatewayUnavailable
from domain.order import Order, OrderItem, PaymentMethod
from domain.payment_event import GatewayNotice


@dataclass(frozen=True, slots=True)
class CheckoutSession:
    """Provider-side payment opened for an order."""
    external_payment_ref: str
    approval_handle: str  # URL the buyer is redirected to for approval


class PaymentGateway(Protocol):
    method: PaymentMethod

    def create_checkout(self, order: Order) -> CheckoutSession: ...

    def execute_payment(self, external_payment_ref: str, approver_handle: str) -> GatewayNotice: ...

    def verify_and_parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> Optional[GatewayNotice]: ...


def item_display_name(item: OrderItem) -> str:
    """Line item label shown on the provider's checkout page."""

    return f"{item.kind.value.title()} {item.ref_id}"


def lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Case-insensitive header lookup table."""

    return {str(key).lower(): value for key, value in headers.items()}


def gateway_for(gateways: Mapping[PaymentMethod, PaymentGateway], method: PaymentMethod) -> PaymentGateway:
    """
    Raises:
        GatewayUnavailable: if no gateway is configured for `method`.
    """

    gateway = gateways.get(method)
    if gateway is None:
        raise GatewayUnavailable(f"No payment gateway configured for {method.value}")
    return gateway


__all__ = ["CheckoutSession", "PaymentGateway", "gateway_for", "item_display_name", "lower_headers"]
