"""
Domain: user accounts (entitlement and referral subset).

Only the fields the fulfillment pipeline reads or writes are modeled here;
profile, credentials and session state belong to the account service.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import FrozenSet, Optional
from uuid import UUID

from .time import require_utc_timestamp

DEFAULT_COMMISSION_RATE: Decimal = Decimal("0.10")


@dataclass(frozen=True, slots=True)
class UserAccount:
    """
    Snapshot of a user's entitlements and affiliate counters.

    - owned_mod_ids has set-union semantics: granting an owned mod is a no-op.
    - referred_by is set at registration and never changes.
    - commission_rate is the live rate; commissions snapshot it at conversion time.
    """

    user_id: UUID
    owned_mod_ids: FrozenSet[UUID] = field(default_factory=frozenset)
    subscription_active: bool = False
    subscription_expires_at: Optional[datetime] = None
    referred_by: Optional[UUID] = None
    commission_rate: Decimal = DEFAULT_COMMISSION_RATE
    pending_earnings: Decimal = Decimal("0")
    total_earnings: Decimal = Decimal("0")
    total_conversions: int = 0

    def __post_init__(self) -> None:
        if self.subscription_expires_at is not None:
            require_utc_timestamp("subscription_expires_at", self.subscription_expires_at)
        if not (Decimal("0") <= self.commission_rate <= Decimal("1")):
            raise ValueError("commission_rate must be between 0 and 1")

    def owns(self, mod_id: UUID) -> bool:
        return mod_id in self.owned_mod_ids

    def has_active_subscription(self, now: datetime) -> bool:
        return (
            self.subscription_active
            and self.subscription_expires_at is not None
            and self.subscription_expires_at > now
        )


def extended_expiry(current_expiry: Optional[datetime], now: datetime, term: timedelta) -> datetime:
    """
    New subscription expiry: `max(now, current_expiry) + term`.

    Renewing before expiry keeps the unused time; renewing after expiry starts
    from now.
    """

    require_utc_timestamp("now", now)
    start = now if current_expiry is None or current_expiry < now else current_expiry
    return start + term
