"""
Domain: affiliate commissions.

Rules implemented here:
- At most one Commission exists per order_id.
- The commission rate is snapshotted at conversion time; later changes to the
  affiliate's rate never change an existing Commission.
- amount = order_amount * commission_rate, rounded half-to-even to the
  currency's minor unit.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from .money import quantize
from .time import require_utc_timestamp


class CommissionStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    REJECTED = "rejected"


def compute_commission_amount(order_amount: Decimal, rate: Decimal, currency: str) -> Decimal:
    return quantize(order_amount * rate, currency)


@dataclass(frozen=True, slots=True)
class Commission:
    commission_id: UUID
    affiliate_user_id: UUID
    referred_user_id: UUID
    order_id: UUID
    order_amount: Decimal
    commission_rate: Decimal
    amount: Decimal
    currency: str
    status: CommissionStatus
    created_at: datetime

    def __post_init__(self) -> None:
        require_utc_timestamp("created_at", self.created_at)
        if self.affiliate_user_id == self.referred_user_id:
            raise ValueError("An affiliate cannot earn commission on their own purchase")
        if self.amount < 0:
            raise ValueError("Commission amount cannot be negative")


@dataclass(frozen=True, slots=True)
class CommissionRetry:
    """Queued commission credit that failed during fulfillment."""

    order_id: UUID
    reason: str
    attempts: int
    enqueued_at: datetime
    last_attempt_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        require_utc_timestamp("enqueued_at", self.enqueued_at)
        if self.last_attempt_at is not None:
            require_utc_timestamp("last_attempt_at", self.last_attempt_at)
