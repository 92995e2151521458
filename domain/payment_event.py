"""
Domain: payment notices and normalized payment events.

A GatewayNotice is what a payment provider told us. Only its
external_payment_ref is used as a lookup key; order and buyer identity always
come from the ledger, never from data echoed back by the provider.

A PaymentEvent is a GatewayNotice correlated with the Order it belongs to. It
is ephemeral: consumed once by the Fulfillment Engine or discarded as a
duplicate.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from .order import Order


class PaymentOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class GatewayNotice:
    """Untrusted provider report about a payment."""

    external_payment_ref: str
    outcome: PaymentOutcome
    amount: Decimal
    currency: str
    raw_provider_id: Optional[str] = None  # e.g. PayPal sale id, Stripe payment intent id
    event_type: Optional[str] = None


@dataclass(frozen=True, slots=True)
class PaymentEvent:
    external_payment_ref: str
    order_id: UUID
    buyer_id: UUID
    amount: Decimal
    currency: str
    outcome: PaymentOutcome
    raw_provider_id: Optional[str] = None

    @staticmethod
    def from_notice(notice: GatewayNotice, order: Order) -> "PaymentEvent":
        """Correlate a provider notice with the order found by its payment reference."""

        return PaymentEvent(
            external_payment_ref=notice.external_payment_ref,
            order_id=order.order_id,
            buyer_id=order.buyer_id,
            amount=notice.amount,
            currency=notice.currency.upper(),
            outcome=notice.outcome,
            raw_provider_id=notice.raw_provider_id,
        )
