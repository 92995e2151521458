"""
User repository (entitlements, subscriptions, affiliate counters).

Entitlements live in their own table with a unique (user_id, mod_id) key, so
granting an owned mod again is a no-op at the database level. Grants and
subscription extensions are written by the fulfill_order_atomic function (see
order_repository); this module only reads.
"""

from __future__ import annotations

from typing import Any, Iterable, List, Mapping, Optional
from uuid import UUID

from domain.money import parse_amount
from domain.user import DEFAULT_COMMISSION_RATE, UserAccount
from repositories.client import get_supabase
from repositories.rows import parse_optional_datetime, response_rows

_USERS_TABLE: str = "users"
_ENTITLEMENTS_TABLE: str = "user_entitlements"


def _row_to_user(row: Mapping[str, Any], owned_mod_ids: Iterable[UUID]) -> UserAccount:
    referred_by = row.get("referred_by")
    rate = row.get("commission_rate")
    return UserAccount(
        user_id=UUID(str(row["user_id"])),
        owned_mod_ids=frozenset(owned_mod_ids),
        subscription_active=bool(row.get("subscription_active", False)),
        subscription_expires_at=parse_optional_datetime(row.get("subscription_expires_at_utc")),
        referred_by=UUID(str(referred_by)) if referred_by else None,
        commission_rate=parse_amount(rate) if rate is not None else DEFAULT_COMMISSION_RATE,
        pending_earnings=parse_amount(row.get("pending_earnings") or 0),
        total_earnings=parse_amount(row.get("total_earnings") or 0),
        total_conversions=int(row.get("total_conversions") or 0),
    )


def list_owned_mod_ids(user_id: UUID) -> List[UUID]:
    response = (
        get_supabase().table(_ENTITLEMENTS_TABLE)
        .select("mod_id")
        .eq("user_id", str(user_id))
        .execute()
    )
    return [UUID(str(row["mod_id"])) for row in response_rows(response, "list entitlements")]


def get_user_by_id(user_id: UUID) -> Optional[UserAccount]:
    response = (
        get_supabase().table(_USERS_TABLE)
        .select(
            "user_id, subscription_active, subscription_expires_at_utc, referred_by, "
            "commission_rate, pending_earnings, total_earnings, total_conversions"
        )
        .eq("user_id", str(user_id))
        .limit(1)
        .execute()
    )
    rows = response_rows(response, "fetch user")
    if not rows:
        return None
    return _row_to_user(rows[0], list_owned_mod_ids(user_id))


__all__ = [
    "get_user_by_id",
    "list_owned_mod_ids",
]
