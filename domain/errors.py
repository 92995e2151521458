"""
Domain: fulfillment error taxonomy.

Transient failures (GatewayUnavailable) are retryable by the caller. Security
and correctness anomalies (InvalidSignature, OrderStateConflict) are never
retried automatically. Idempotent no-ops (already processed, already credited)
are result values, not exceptions.
"""

from __future__ import annotations

from typing import Optional
from uuid import UUID


class FulfillmentError(Exception):
    """Base class for payment and fulfillment errors."""


class GatewayUnavailable(FulfillmentError):
    """Payment provider could not be reached, timed out, or returned a server error."""


class PaymentRejected(FulfillmentError):
    """Provider declined the payment; terminal for this attempt."""


class InvalidSignature(FulfillmentError):
    """Inbound webhook payload could not be authenticated."""


class OrderNotFound(FulfillmentError):
    """No order exists for the given id or payment reference."""

    def __init__(self, message: str, *, order_id: Optional[UUID] = None, external_payment_ref: Optional[str] = None):
        super().__init__(message)
        self.order_id = order_id
        self.external_payment_ref = external_payment_ref


class OrderStateConflict(FulfillmentError):
    """
    Attempted an illegal order transition, or an event does not match its order.

    `current` and `attempted` are status values (strings) when the conflict is a
    state-machine violation, and None for event/order mismatches.
    """

    def __init__(
        self,
        message: str,
        *,
        order_id: Optional[UUID] = None,
        current: Optional[str] = None,
        attempted: Optional[str] = None,
    ):
        super().__init__(message)
        self.order_id = order_id
        self.current = current
        self.attempted = attempted


__all__ = [
    "FulfillmentError",
    "GatewayUnavailable",
    "PaymentRejected",
    "InvalidSignature",
    "OrderNotFound",
    "OrderStateConflict",
]
