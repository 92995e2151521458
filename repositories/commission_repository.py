"""
Commission repository (persistence).

Crediting a commission goes through the `credit_commission_atomic` PostgreSQL
function, which in a single transaction:
- Inserts the commission row (unique on order_id)
- Increments the affiliate's pending_earnings, total_earnings and
  total_conversions with SQL-side arithmetic
and reports ALREADY_CREDITED instead of inserting when a commission for the
order already exists. A commission row never exists without its balance
increment, or vice versa.

Also hosts the commission retry queue used when crediting fails during
fulfillment.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Mapping, Optional
from uuid import UUID

from postgrest.exceptions import APIError

from domain.commission import Commission, CommissionRetry, CommissionStatus
from domain.money import parse_amount
from repositories.client import get_supabase
from repositories.rows import parse_optional_datetime, parse_utc_datetime, response_rows, to_iso_utc

_COMMISSIONS_TABLE: str = "commissions"
_RETRY_TABLE: str = "commission_retries"

# PostgreSQL unique_violation
_UNIQUE_VIOLATION: str = "23505"


@dataclass(frozen=True, slots=True)
class AtomicCreditResult:
    """Result from the credit_commission_atomic PostgreSQL function."""
    success: bool
    already_credited: bool
    error_code: Optional[str]
    error_message: Optional[str]


def _row_to_commission(row: Mapping[str, Any]) -> Commission:
    return Commission(
        commission_id=UUID(str(row["commission_id"])),
        affiliate_user_id=UUID(str(row["affiliate_user_id"])),
        referred_user_id=UUID(str(row["referred_user_id"])),
        order_id=UUID(str(row["order_id"])),
        order_amount=parse_amount(row["order_amount"]),
        commission_rate=parse_amount(row["commission_rate"]),
        amount=parse_amount(row["amount"]),
        currency=str(row.get("currency", "USD")),
        status=CommissionStatus(str(row["status"])),
        created_at=parse_utc_datetime(row["created_at_utc"]),
    )


def _row_to_retry(row: Mapping[str, Any]) -> CommissionRetry:
    return CommissionRetry(
        order_id=UUID(str(row["order_id"])),
        reason=str(row.get("reason") or ""),
        attempts=int(row.get("attempts") or 0),
        enqueued_at=parse_utc_datetime(row["enqueued_at_utc"]),
        last_attempt_at=parse_optional_datetime(row.get("last_attempt_at_utc")),
    )


def _interpret_credit_payload(result: Mapping[str, Any]) -> AtomicCreditResult:
    if result.get("success"):
        return AtomicCreditResult(success=True, already_credited=False, error_code=None, error_message=None)
    if result.get("error") == "ALREADY_CREDITED":
        return AtomicCreditResult(success=False, already_credited=True, error_code="ALREADY_CREDITED", error_message=None)
    return AtomicCreditResult(
        success=False,
        already_credited=False,
        error_code=result.get("error", "UNKNOWN"),
        error_message=result.get("message"),
    )


def credit_commission_atomic(commission: Commission) -> AtomicCreditResult:
    """
    Insert a commission and increment the affiliate's counters atomically.

    Args:
        commission: Commission with its snapshotted rate and computed amount

    Returns:
        AtomicCreditResult; `already_credited` is True when a commission for
        the order already existed (nothing was changed).
    """

    params = {
        "p_commission_id": str(commission.commission_id),
        "p_order_id": str(commission.order_id),
        "p_affiliate_user_id": str(commission.affiliate_user_id),
        "p_referred_user_id": str(commission.referred_user_id),
        "p_order_amount": str(commission.order_amount),
        "p_commission_rate": str(commission.commission_rate),
        "p_amount": str(commission.amount),
        "p_currency": commission.currency,
        "p_created_at": to_iso_utc(commission.created_at, name="created_at"),
    }

    try:
        response = get_supabase().rpc("credit_commission_atomic", params).execute()
    except APIError as e:
        # A raced insert surfaces as a unique violation on order_id
        if e.code == _UNIQUE_VIOLATION:
            return AtomicCreditResult(success=False, already_credited=True, error_code="ALREADY_CREDITED", error_message=None)

        # supabase-py raises APIError for some JSON results of PostgreSQL functions
        try:
            error_data = e.json() if callable(getattr(e, "json", None)) else {}
        except (TypeError, ValueError):
            error_data = {}
        if isinstance(error_data, Mapping) and "success" in error_data:
            return _interpret_credit_payload(error_data)

        return AtomicCreditResult(
            success=False,
            already_credited=False,
            error_code=e.code or "API_ERROR",
            error_message=e.message or str(e),
        )

    error = getattr(response, "error", None)
    if error:
        return AtomicCreditResult(success=False, already_credited=False, error_code="RPC_ERROR", error_message=str(error))

    data = response.data
    if isinstance(data, list):
        data = data[0] if data else {}
    return _interpret_credit_payload(data or {})


def get_commission_by_order(order_id: UUID) -> Optional[Commission]:
    response = (
        get_supabase().table(_COMMISSIONS_TABLE)
        .select("*")
        .eq("order_id", str(order_id))
        .limit(1)
        .execute()
    )
    rows = response_rows(response, "get commission")
    return _row_to_commission(rows[0]) if rows else None


def list_commissions_by_affiliate(affiliate_user_id: UUID) -> List[Commission]:
    response = (
        get_supabase().table(_COMMISSIONS_TABLE)
        .select("*")
        .eq("affiliate_user_id", str(affiliate_user_id))
        .order("created_at_utc", desc=True)
        .execute()
    )
    return [_row_to_commission(row) for row in response_rows(response, "list commissions")]


def enqueue_commission_retry(order_id: UUID, reason: str, enqueued_at: datetime) -> None:
    """Queue an order for out-of-band commission crediting (no-op if already queued)."""

    payload = {
        "order_id": str(order_id),
        "reason": reason[:500],
        "attempts": 0,
        "enqueued_at_utc": to_iso_utc(enqueued_at, name="enqueued_at"),
    }
    response = (
        get_supabase().table(_RETRY_TABLE)
        .upsert(payload, on_conflict="order_id", ignore_duplicates=True)
        .execute()
    )
    response_rows(response, "enqueue commission retry")


def list_commission_retries(limit: int = 100) -> List[CommissionRetry]:
    response = (
        get_supabase().table(_RETRY_TABLE)
        .select("*")
        .order("enqueued_at_utc")
        .limit(limit)
        .execute()
    )
    return [_row_to_retry(row) for row in response_rows(response, "list commission retries")]


def record_commission_retry_failure(retry: CommissionRetry, reason: str, attempted_at: datetime) -> None:
    """Bump the attempt counter of a queued retry after another failure."""

    response = (
        get_supabase().table(_RETRY_TABLE)
        .update(
            {
                "attempts": retry.attempts + 1,
                "reason": reason[:500],
                "last_attempt_at_utc": to_iso_utc(attempted_at, name="attempted_at"),
            }
        )
        .eq("order_id", str(retry.order_id))
        .execute()
    )
    response_rows(response, "record commission retry failure")


def resolve_commission_retry(order_id: UUID) -> None:
    response = get_supabase().table(_RETRY_TABLE).delete().eq("order_id", str(order_id)).execute()
    response_rows(response, "resolve commission retry")


__all__ = [
    "AtomicCreditResult",
    "credit_commission_atomic",
    "get_commission_by_order",
    "list_commissions_by_affiliate",
    "enqueue_commission_retry",
    "list_commission_retries",
    "record_commission_retry_failure",
    "resolve_commission_retry",
]
