"""
Commission service for crediting affiliate referrals.

Handles:
- Commission computation with the affiliate's rate snapshotted at conversion
- Exactly-once crediting per order (unique commission per order_id)
- Out-of-band retry of credits that failed during fulfillment

Idempotency here is independent of the order status claim: even if crediting
is invoked twice for the same completed order, the unique-keyed insert makes
the second call a no-op that reports ALREADY_CREDITED.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional
from uuid import UUID, uuid4

from domain.commission import Commission, CommissionStatus, compute_commission_amount
from domain.errors import OrderNotFound, OrderStateConflict
from domain.order import Order, OrderStatus
from domain.time import utc_now
from repositories.ledger import LedgerStore
from services.notification_service import NotificationDispatcher, dispatch_safely

logger = logging.getLogger(__name__)


class CreditStatus(str, Enum):
    CREDITED = "credited"
    NO_COMMISSION_DUE = "no_commission_due"
    ALREADY_CREDITED = "already_credited"


@dataclass(frozen=True, slots=True)
class CommissionResult:
    """
    Result of a credit attempt.

    commission: the newly created Commission (CREDITED) or the existing one
    (ALREADY_CREDITED, when it could be read back); None otherwise.
    """
    status: CreditStatus
    commission: Optional[Commission] = None


@dataclass(frozen=True, slots=True)
class RetrySummary:
    """Outcome of one pass over the commission retry queue."""
    attempted: int
    resolved: int
    failed: int
    dropped: int = 0


class CommissionEngine:
    """Computes and records referral commissions for completed orders."""

    def __init__(
        self,
        ledger: LedgerStore,
        notifier: NotificationDispatcher,
        *,
        commission_id_factory: Callable[[], UUID] = uuid4,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._ledger = ledger
        self._notifier = notifier
        self._new_commission_id = commission_id_factory
        self._clock = clock

    def credit(self, order: Order) -> CommissionResult:
        """
        Credit the buyer's referrer for a completed order.

        Returns:
            CommissionResult with CREDITED, NO_COMMISSION_DUE or ALREADY_CREDITED

        Raises:
            OrderStateConflict: if the order is not completed
            RuntimeError: if the ledger rejected the credit
        """

        if order.status is not OrderStatus.COMPLETED:
            raise OrderStateConflict(
                f"Cannot credit commission for order in status {order.status.value}",
                order_id=order.order_id,
                current=order.status.value,
            )

        buyer = self._ledger.get_user(order.buyer_id)
        if buyer is None:
            logger.warning("Buyer %s of order %s not found; no commission", order.buyer_id, order.order_id)
            return CommissionResult(CreditStatus.NO_COMMISSION_DUE)

        if buyer.referred_by is None:
            return CommissionResult(CreditStatus.NO_COMMISSION_DUE)

        if buyer.referred_by == buyer.user_id:
            logger.warning("User %s is recorded as their own referrer; no commission", buyer.user_id)
            return CommissionResult(CreditStatus.NO_COMMISSION_DUE)

        affiliate = self._ledger.get_user(buyer.referred_by)
        if affiliate is None:
            logger.warning(
                "Referrer %s of buyer %s no longer exists; no commission for order %s",
                buyer.referred_by,
                buyer.user_id,
                order.order_id,
            )
            return CommissionResult(CreditStatus.NO_COMMISSION_DUE)

        # Rate as of this conversion; stored on the commission and never re-read
        rate = affiliate.commission_rate
        if rate <= 0:
            return CommissionResult(CreditStatus.NO_COMMISSION_DUE)

        commission = Commission(
            commission_id=self._new_commission_id(),
            affiliate_user_id=affiliate.user_id,
            referred_user_id=buyer.user_id,
            order_id=order.order_id,
            order_amount=order.total_amount,
            commission_rate=rate,
            amount=compute_commission_amount(order.total_amount, rate, order.currency),
            currency=order.currency,
            status=CommissionStatus.PENDING,
            created_at=self._clock(),
        )

        if not self._ledger.insert_commission_and_credit(commission):
            logger.info("Commission for order %s already credited", order.order_id)
            return CommissionResult(
                CreditStatus.ALREADY_CREDITED,
                self._ledger.get_commission_by_order(order.order_id),
            )

        logger.info(
            "Credited commission %s %s to affiliate %s for order %s (rate %s)",
            commission.amount,
            commission.currency,
            affiliate.user_id,
            order.order_id,
            rate,
        )
        dispatch_safely(
            "commission_earned",
            self._notifier.notify_commission_earned,
            affiliate.user_id,
            order.order_id,
            commission.amount,
            commission.currency,
        )
        return CommissionResult(CreditStatus.CREDITED, commission)

    def retry_pending(self, limit: int = 100) -> RetrySummary:
        """
        Drain the commission retry queue once.

        Each queued order is credited again; the queue entry is resolved on
        any definitive result (credited, already credited, nothing due) and
        kept with an incremented attempt count on failure. Entries whose order
        is gone or no longer completed (e.g. refunded) can never be credited;
        they are dropped from the queue.
        """

        retries = self._ledger.list_commission_retries(limit)
        resolved = 0
        failed = 0
        dropped = 0

        for retry in retries:
            try:
                order = self._ledger.get_order(retry.order_id)
                if order is None:
                    raise OrderNotFound(f"Order {retry.order_id} not found", order_id=retry.order_id)
                result = self.credit(order)
            except (OrderNotFound, OrderStateConflict) as e:
                dropped += 1
                logger.warning(
                    "Dropping commission retry for order %s after %d attempt(s): %s",
                    retry.order_id,
                    retry.attempts + 1,
                    e,
                    extra={"order_id": str(retry.order_id)},
                )
                self._ledger.resolve_commission_retry(retry.order_id)
                continue
            except Exception as e:
                failed += 1
                logger.exception("Commission retry failed for order %s (attempt %d)", retry.order_id, retry.attempts + 1)
                self._ledger.record_commission_retry_failure(retry, str(e), self._clock())
                continue

            self._ledger.resolve_commission_retry(retry.order_id)
            resolved += 1
            logger.info("Commission retry for order %s resolved: %s", retry.order_id, result.status.value)

        return RetrySummary(attempted=len(retries), resolved=resolved, failed=failed, dropped=dropped)


__all__ = [
    "CommissionEngine",
    "CommissionResult",
    "CreditStatus",
    "RetrySummary",
]
