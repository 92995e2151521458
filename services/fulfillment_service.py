"""
Fulfillment service: turns payment events into entitlements, exactly once.

Both inbound paths (the buyer's execute call and provider webhooks) end here.
Correctness rests on one atomic write: the ledger's fulfill_order_atomic claims
the order pending -> completed and grants its entitlements in the same
transaction. Only the caller that wins the claim delivers the purchase; every
other caller observes ALREADY_PROCESSED. No in-process lock is involved, so the
guarantee holds across worker processes. An order is therefore never completed
without its entitlements: if delivery fails the order stays pending and the
provider's redelivery fulfills it.

Process for a SUCCEEDED event:
1. Load the order (OrderNotFound if missing)
2. Check the event matches the order (buyer, amount, currency, payment ref)
3. Expand bundles to their mods (read only)
4. Claim pending -> completed, grant mods and extend subscriptions atomically
5. Credit affiliate commission; failures are queued for retry and never undo 4
6. Queue the purchase confirmation notification (fire-and-forget)

A redelivered success for a completed order re-runs the commission credit,
which is idempotent, so a credit lost between steps 4 and 5 is recovered.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List
from uuid import UUID

from domain.errors import OrderNotFound, OrderStateConflict
from domain.order import ItemKind, Order, OrderStatus
from domain.payment_event import PaymentEvent, PaymentOutcome
from domain.time import utc_now
from repositories.ledger import LedgerStore
from repositories.order_repository import OrderFulfillment
from services.commission_service import CommissionEngine
from services.notification_service import NotificationDispatcher, dispatch_safely

logger = logging.getLogger(__name__)


class FulfillmentResult(str, Enum):
    FULFILLED = "fulfilled"
    MARKED_FAILED = "marked_failed"
    ALREADY_PROCESSED = "already_processed"


class FulfillmentEngine:
    """Single authority for order status changes driven by payment events."""

    def __init__(
        self,
        ledger: LedgerStore,
        commissions: CommissionEngine,
        notifier: NotificationDispatcher,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._ledger = ledger
        self._commissions = commissions
        self._notifier = notifier
        self._clock = clock

    def apply(self, event: PaymentEvent) -> FulfillmentResult:
        """
        Apply a payment event to its order.

        Returns:
            FULFILLED if this call completed the order and granted entitlements,
            MARKED_FAILED if this call moved the order to failed,
            ALREADY_PROCESSED if the event was a duplicate (nothing is granted
            again; a missing commission is credited)

        Raises:
            OrderNotFound: no order with event.order_id
            OrderStateConflict: the event does not match the order, or the
                order is in a state the event cannot move it out of
            RuntimeError: the ledger failed; the order is left pending
        """

        order = self._ledger.get_order(event.order_id)
        if order is None:
            logger.error(
                "Payment event for unknown order %s",
                event.order_id,
                extra={"order_id": str(event.order_id), "external_payment_ref": event.external_payment_ref},
            )
            raise OrderNotFound(f"Order {event.order_id} not found", order_id=event.order_id)

        self._check_event_matches(order, event)

        if event.outcome is PaymentOutcome.FAILED:
            return self._apply_failure(order, event)
        return self._apply_success(order, event)

    # ---------------------------------------------------------
    # Transitions
    # ---------------------------------------------------------
    def _check_event_matches(self, order: Order, event: PaymentEvent) -> None:
        mismatches: List[str] = []
        if event.buyer_id != order.buyer_id:
            mismatches.append("buyer")
        if event.currency.upper() != order.currency.upper():
            mismatches.append("currency")
        # A failure report may carry no amount; only successes must match exactly
        if event.outcome is PaymentOutcome.SUCCEEDED and event.amount != order.total_amount:
            mismatches.append("amount")
        if order.external_payment_ref is not None and order.external_payment_ref != event.external_payment_ref:
            mismatches.append("payment reference")

        if mismatches:
            self._log_anomaly(order, event, f"Payment event does not match order ({', '.join(mismatches)})")
            raise OrderStateConflict(
                f"Payment event does not match order {order.order_id}: {', '.join(mismatches)}",
                order_id=order.order_id,
            )

    def _apply_failure(self, order: Order, event: PaymentEvent) -> FulfillmentResult:
        if order.status.is_terminal:
            logger.info("Failure event for order %s ignored; already %s", order.order_id, order.status.value)
            return FulfillmentResult.ALREADY_PROCESSED

        claimed = self._ledger.claim_transition(
            order.order_id,
            OrderStatus.PENDING,
            OrderStatus.FAILED,
            processed_at=self._clock(),
            external_payment_ref=event.external_payment_ref,
        )
        if claimed is None:
            # Lost a race with another event; whatever it did is final
            return FulfillmentResult.ALREADY_PROCESSED

        logger.info("Order %s marked failed", order.order_id, extra={"external_payment_ref": event.external_payment_ref})
        return FulfillmentResult.MARKED_FAILED

    def _apply_success(self, order: Order, event: PaymentEvent) -> FulfillmentResult:
        if order.status is OrderStatus.PENDING:
            term = timedelta(days=order.subscription_term_days) if order.subscription_term_days is not None else None
            fulfillment = self._ledger.fulfill_order_atomic(
                order.order_id,
                self._expand_mod_ids(order),
                processed_at=self._clock(),
                external_payment_ref=event.external_payment_ref,
                subscription_term=term,
            )
            if fulfillment is not None:
                self._after_fulfillment(fulfillment)
                return FulfillmentResult.FULFILLED

            # Someone else moved the order first; classify by its current state
            current = self._ledger.get_order(order.order_id)
            if current is None:
                raise OrderNotFound(f"Order {order.order_id} disappeared during fulfillment", order_id=order.order_id)
            order = current

        if order.status is OrderStatus.COMPLETED:
            logger.info(
                "Duplicate success event for completed order %s",
                order.order_id,
                extra={"external_payment_ref": event.external_payment_ref, "raw_provider_id": event.raw_provider_id},
            )
            self._credit_commission(order, self._clock())
            return FulfillmentResult.ALREADY_PROCESSED

        self._log_anomaly(order, event, f"Success event for order in status {order.status.value}")
        raise OrderStateConflict(
            f"Illegal order transition {order.status.value} -> {OrderStatus.COMPLETED.value}",
            order_id=order.order_id,
            current=order.status.value,
            attempted=OrderStatus.COMPLETED.value,
        )

    # ---------------------------------------------------------
    # Side effects
    # ---------------------------------------------------------
    def _after_fulfillment(self, fulfillment: OrderFulfillment) -> None:
        order = fulfillment.order
        logger.info(
            "Order %s completed; granted %d new mod(s) to buyer %s",
            order.order_id,
            fulfillment.granted_count,
            order.buyer_id,
            extra={"order_id": str(order.order_id), "external_payment_ref": order.external_payment_ref},
        )
        if fulfillment.subscription_expires_at is not None:
            logger.info(
                "Subscription for user %s extended to %s",
                order.buyer_id,
                fulfillment.subscription_expires_at.isoformat(),
            )

        self._credit_commission(order, self._clock())
        dispatch_safely("purchase_complete", self._notifier.notify_purchase_complete, order.buyer_id, order.order_id)

    def _credit_commission(self, order: Order, now: datetime) -> None:
        try:
            self._commissions.credit(order)
        except Exception as e:
            logger.exception(
                "Commission credit failed for order %s; queued for retry",
                order.order_id,
                extra={"order_id": str(order.order_id)},
            )
            self._queue_commission_retry(order.order_id, str(e) or type(e).__name__, now)

    def _expand_mod_ids(self, order: Order) -> List[UUID]:
        mod_ids: List[UUID] = []
        for item in order.items:
            if item.kind is ItemKind.MOD:
                mod_ids.append(item.ref_id)
                continue

            bundle_mods = self._ledger.get_bundle_mod_ids(item.ref_id)
            if not bundle_mods:
                logger.warning("Bundle %s in order %s contains no mods", item.ref_id, order.order_id)
            mod_ids.extend(bundle_mods)
        return mod_ids

    def _queue_commission_retry(self, order_id: UUID, reason: str, now: datetime) -> None:
        try:
            self._ledger.enqueue_commission_retry(order_id, reason, now)
        except Exception:
            logger.critical(
                "Could not queue commission retry for order %s; manual reconciliation required",
                order_id,
                exc_info=True,
                extra={"order_id": str(order_id)},
            )

    @staticmethod
    def _log_anomaly(order: Order, event: PaymentEvent, message: str) -> None:
        logger.error(
            "%s: order %s",
            message,
            order.order_id,
            extra={
                "order_id": str(order.order_id),
                "order_status": order.status.value,
                "order_buyer_id": str(order.buyer_id),
                "order_total": str(order.total_amount),
                "order_payment_ref": order.external_payment_ref,
                "event_outcome": event.outcome.value,
                "event_buyer_id": str(event.buyer_id),
                "event_amount": str(event.amount),
                "event_currency": event.currency,
                "event_payment_ref": event.external_payment_ref,
                "raw_provider_id": event.raw_provider_id,
            },
        )


__all__ = ["FulfillmentEngine", "FulfillmentResult"]
