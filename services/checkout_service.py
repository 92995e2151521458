"""
Checkout service: the buyer-facing payment path.

Handles:
- Creating the pending order and opening the provider-side payment
- Executing a buyer-approved payment and handing the result to the
  Fulfillment Engine

Gateway errors (GatewayUnavailable, PaymentRejected) stop here and are
surfaced to the buyer; they never reach the engine and never mutate the order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, Mapping, Optional
from uuid import UUID

from domain.errors import FulfillmentError, OrderNotFound, OrderStateConflict, PaymentRejected
from domain.money import DEFAULT_CURRENCY
from domain.order import Order, OrderItem, OrderStatus, PaymentMethod
from domain.payment_event import PaymentEvent
from domain.time import utc_now
from repositories.ledger import LedgerStore
from services.fulfillment_service import FulfillmentEngine, FulfillmentResult
from services.payment_gateway import PaymentGateway, gateway_for

logger = logging.getLogger(__name__)


class NotOrderOwner(FulfillmentError):
    """Caller is not the buyer of the order."""


@dataclass(frozen=True, slots=True)
class CheckoutStarted:
    order_id: UUID
    external_payment_ref: str
    approval_url: str
    total_amount: Decimal
    currency: str


@dataclass(frozen=True, slots=True)
class ExecuteResult:
    """
    Result of a buyer execute call.

    success: True when the order is completed, whether by this call or an
    earlier one (duplicate execute or webhook that arrived first)
    """
    success: bool
    result: FulfillmentResult
    order_id: UUID


class CheckoutService:
    def __init__(
        self,
        ledger: LedgerStore,
        gateways: Mapping[PaymentMethod, PaymentGateway],
        engine: FulfillmentEngine,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._ledger = ledger
        self._gateways = gateways
        self._engine = engine
        self._clock = clock

    def start_checkout(
        self,
        buyer_id: UUID,
        items: Iterable[OrderItem],
        payment_method: PaymentMethod,
        *,
        currency: str = DEFAULT_CURRENCY,
        subscription_term_days: Optional[int] = None,
    ) -> CheckoutStarted:
        """
        Create a pending order and open the provider-side payment.

        Raises:
            GatewayUnavailable: provider unreachable; the order stays pending
                without a payment reference
            OrderStateConflict: the payment reference could not be attached
        """

        gateway = gateway_for(self._gateways, payment_method)
        order = Order.create(
            buyer_id=buyer_id,
            items=items,
            payment_method=payment_method,
            created_at=self._clock(),
            currency=currency,
            subscription_term_days=subscription_term_days,
        )
        self._ledger.insert_order(order)

        session = gateway.create_checkout(order)

        if not self._ledger.attach_payment_ref(order.order_id, session.external_payment_ref):
            logger.error(
                "Could not attach payment reference to order %s",
                order.order_id,
                extra={"order_id": str(order.order_id), "external_payment_ref": session.external_payment_ref},
            )
            raise OrderStateConflict(
                f"Order {order.order_id} already has a payment reference",
                order_id=order.order_id,
            )

        logger.info(
            "Checkout started for order %s via %s (%s %s)",
            order.order_id,
            payment_method.value,
            order.total_amount,
            order.currency,
            extra={"order_id": str(order.order_id), "external_payment_ref": session.external_payment_ref},
        )
        return CheckoutStarted(
            order_id=order.order_id,
            external_payment_ref=session.external_payment_ref,
            approval_url=session.approval_handle,
            total_amount=order.total_amount,
            currency=order.currency,
        )

    def execute_checkout(self, order_id: UUID, buyer_id: UUID, approver_handle: str) -> ExecuteResult:
        """
        Execute a buyer-approved payment and fulfill the order.

        Raises:
            OrderNotFound: no such order
            NotOrderOwner: caller is not the order's buyer
            PaymentRejected: provider declined, or the order already failed
            GatewayUnavailable: provider unreachable; the order stays pending
            OrderStateConflict: provider result does not match the order
        """

        order = self._ledger.get_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
        if order.buyer_id != buyer_id:
            logger.warning(
                "User %s attempted to execute order %s owned by %s",
                buyer_id,
                order_id,
                order.buyer_id,
                extra={"event_kind": "security", "order_id": str(order_id)},
            )
            raise NotOrderOwner(f"Order {order_id} does not belong to this user")

        if order.status is OrderStatus.COMPLETED:
            return ExecuteResult(success=True, result=FulfillmentResult.ALREADY_PROCESSED, order_id=order_id)
        if order.status is OrderStatus.FAILED:
            raise PaymentRejected(f"Payment for order {order_id} already failed")
        if order.status is not OrderStatus.PENDING:
            raise OrderStateConflict(
                f"Order {order_id} cannot be executed in status {order.status.value}",
                order_id=order_id,
                current=order.status.value,
                attempted=OrderStatus.COMPLETED.value,
            )
        if order.external_payment_ref is None:
            raise OrderStateConflict(f"Checkout was never opened for order {order_id}", order_id=order_id)

        gateway = gateway_for(self._gateways, order.payment_method)
        notice = gateway.execute_payment(order.external_payment_ref, approver_handle)

        result = self._engine.apply(PaymentEvent.from_notice(notice, order))
        return ExecuteResult(
            success=result in (FulfillmentResult.FULFILLED, FulfillmentResult.ALREADY_PROCESSED),
            result=result,
            order_id=order_id,
        )


__all__ = ["CheckoutService", "CheckoutStarted", "ExecuteResult", "NotOrderOwner"]
