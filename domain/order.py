"""
Domain: Orders and the order status state machine.

Rules implemented here:
- An Order is one checkout attempt by one buyer for one or more items.
- total_amount equals the sum of line totals at creation time and is never
  recomputed afterwards.
- Unit prices are whole amounts of the currency's minor unit, so the per-line
  amounts a provider charges always add up to total_amount.
- Status transitions are monotonic and limited to the transition table below:

      pending   -> completed   (payment succeeded)
      pending   -> failed      (provider reported failure)
      completed -> refunded    (administrative action)

  Any other transition raises OrderStateConflict.

This module contains only pure domain entities/value objects: no I/O, no
database, no frameworks.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import FrozenSet, Iterable, Mapping, Optional, Tuple
from uuid import UUID, uuid4

from .errors import OrderStateConflict
from .money import DEFAULT_CURRENCY, quantize
from .time import require_utc_timestamp


class OrderStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PENDING


class ItemKind(str, Enum):
    MOD = "mod"
    BUNDLE = "bundle"


class PaymentMethod(str, Enum):
    PAYPAL = "paypal"
    STRIPE = "stripe"


ALLOWED_TRANSITIONS: Mapping[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.COMPLETED, OrderStatus.FAILED}),
    OrderStatus.COMPLETED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}


def is_transition_allowed(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def require_transition(current: OrderStatus, target: OrderStatus, *, order_id: Optional[UUID] = None) -> None:
    """
    Validate a status transition against the transition table.

    Raises:
        OrderStateConflict: if `current -> target` is not a legal transition.
    """

    if not is_transition_allowed(current, target):
        raise OrderStateConflict(
            f"Illegal order transition {current.value} -> {target.value}",
            order_id=order_id,
            current=current.value,
            attempted=target.value,
        )


@dataclass(frozen=True, slots=True)
class OrderItem:
    """A single purchased line: one mod or one bundle."""

    kind: ItemKind
    ref_id: UUID
    unit_price: Decimal
    quantity: int = 1

    def __post_init__(self) -> None:
        if self.quantity < 1:
            raise ValueError("quantity must be at least 1")
        if self.unit_price < 0:
            raise ValueError("unit_price cannot be negative")

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


def compute_total(items: Iterable[OrderItem], currency: str) -> Decimal:
    """Sum of line totals, rounded to the currency's minor unit."""

    return quantize(sum((item.line_total for item in items), Decimal("0")), currency)


@dataclass(frozen=True, slots=True)
class Order:
    """
    Immutable snapshot of an order.

    The Fulfillment Engine is the only writer of status; it never mutates a
    snapshot but asks the ledger for a conditional transition and receives a new
    snapshot back.
    """

    order_id: UUID
    buyer_id: UUID
    items: Tuple[OrderItem, ...]
    total_amount: Decimal
    currency: str
    payment_method: PaymentMethod
    status: OrderStatus
    created_at: datetime
    external_payment_ref: Optional[str] = None
    subscription_term_days: Optional[int] = None  # set only for subscription products
    processed_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        require_utc_timestamp("created_at", self.created_at)
        if self.processed_at is not None:
            require_utc_timestamp("processed_at", self.processed_at)
        if not self.items:
            raise ValueError("Order must contain at least one item")
        if self.total_amount < 0:
            raise ValueError("total_amount cannot be negative")
        if self.subscription_term_days is not None and self.subscription_term_days <= 0:
            raise ValueError("subscription_term_days must be positive")

    @staticmethod
    def create(
        *,
        buyer_id: UUID,
        items: Iterable[OrderItem],
        payment_method: PaymentMethod,
        created_at: datetime,
        currency: str = DEFAULT_CURRENCY,
        subscription_term_days: Optional[int] = None,
        order_id: Optional[UUID] = None,
    ) -> "Order":
        """
        Build a new pending order; total_amount is fixed here.

        Raises:
            ValueError: if a unit price is finer than the currency's minor unit
        """

        line_items = tuple(items)
        for item in line_items:
            if quantize(item.unit_price, currency) != item.unit_price:
                raise ValueError(
                    f"unit_price {item.unit_price} is not a whole amount of {currency.upper()} minor units"
                )
        return Order(
            order_id=order_id or uuid4(),
            buyer_id=buyer_id,
            items=line_items,
            total_amount=compute_total(line_items, currency),
            currency=currency.upper(),
            payment_method=payment_method,
            status=OrderStatus.PENDING,
            created_at=created_at,
            subscription_term_days=subscription_term_days,
        )

    @property
    def is_subscription(self) -> bool:
        return self.subscription_term_days is not None

    def transitioned(
        self,
        target: OrderStatus,
        *,
        processed_at: Optional[datetime] = None,
        external_payment_ref: Optional[str] = None,
    ) -> "Order":
        """Return a new snapshot in `target` status, validating the transition."""

        require_transition(self.status, target, order_id=self.order_id)
        return replace(
            self,
            status=target,
            processed_at=processed_at if processed_at is not None else self.processed_at,
            external_payment_ref=external_payment_ref or self.external_payment_ref,
        )


__all__ = [
    "ALLOWED_TRANSITIONS",
    "ItemKind",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentMethod",
    "compute_total",
    "is_transition_allowed",
    "require_transition",
]
