"""
Notification dispatcher.

Purchase and commission notifications are written to an outbox table and
delivered by the email worker. Callers treat every dispatch as fire-and-forget:
a failure here is logged by the caller and never affects fulfillment.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Callable, Mapping, Protocol
from uuid import UUID

from domain.time import utc_now
from repositories.notification_repository import insert_notification

logger = logging.getLogger(__name__)

PURCHASE_COMPLETE: str = "purchase_complete"
COMMISSION_EARNED: str = "commission_earned"


class NotificationDispatcher(Protocol):
    def notify_purchase_complete(self, buyer_id: UUID, order_id: UUID) -> None: ...

    def notify_commission_earned(self, affiliate_user_id: UUID, order_id: UUID, amount: Decimal, currency: str) -> None: ...


class OutboxNotificationDispatcher:
    """NotificationDispatcher that appends to the notification outbox."""

    def __init__(self, insert: Callable[..., Any] = insert_notification):
        self._insert = insert

    def _enqueue(self, kind: str, recipient: UUID, order_id: UUID, payload: Mapping[str, Any]) -> None:
        notification_id = self._insert(kind, recipient, order_id, payload, utc_now())
        logger.info(
            "Queued %s notification %s for order %s",
            kind,
            notification_id,
            order_id,
        )

    def notify_purchase_complete(self, buyer_id: UUID, order_id: UUID) -> None:
        self._enqueue(PURCHASE_COMPLETE, buyer_id, order_id, {"order_id": str(order_id)})

    def notify_commission_earned(self, affiliate_user_id: UUID, order_id: UUID, amount: Decimal, currency: str) -> None:
        self._enqueue(
            COMMISSION_EARNED,
            affiliate_user_id,
            order_id,
            {"order_id": str(order_id), "amount": str(amount), "currency": currency},
        )


def dispatch_safely(action: str, send: Callable[..., None], *args: Any) -> None:
    """
    Run a notification call, logging instead of raising on failure.

    Notifications must never block or fail the operation that triggered them.
    """

    try:
        send(*args)
    except Exception:
        logger.exception("Notification dispatch failed: %s", action, extra={"notification_action": action})


__all__ = [
    "NotificationDispatcher",
    "OutboxNotificationDispatcher",
    "dispatch_safely",
    "PURCHASE_COMPLETE",
    "COMMISSION_EARNED",
]
