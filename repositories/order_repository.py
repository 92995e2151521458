"""
Order repository (persistence).

Provides persistence operations for the Order domain entity, including the
conditional status claim that serializes fulfillment:

    UPDATE orders SET status = <target>, ...
    WHERE order_id = <id> AND status = <expected>

A claim succeeds iff PostgREST returns the updated row. Two callers racing on
the same pending order therefore have exactly one winner, across processes.

Completing a paid order goes through the `fulfill_order_atomic` PostgreSQL
function instead, which performs the same claim together with the
entitlement grant and subscription extension in one transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional
from uuid import UUID

from postgrest.exceptions import APIError

from domain.money import parse_amount
from domain.order import ItemKind, Order, OrderItem, OrderStatus, PaymentMethod, require_transition
from repositories.client import get_supabase
from repositories.rows import parse_optional_datetime, parse_utc_datetime, response_rows, to_iso_utc

_ORDERS_TABLE: str = "orders"


@dataclass(frozen=True, slots=True)
class OrderFulfillment:
    """Result from the fulfill_order_atomic PostgreSQL function."""
    order: Order
    granted_count: int
    subscription_expires_at: Optional[datetime] = None


def _item_to_json(item: OrderItem) -> Dict[str, Any]:
    return {
        "kind": item.kind.value,
        "ref_id": str(item.ref_id),
        "unit_price": str(item.unit_price),
        "quantity": item.quantity,
    }


def _item_from_json(data: Mapping[str, Any]) -> OrderItem:
    return OrderItem(
        kind=ItemKind(str(data["kind"])),
        ref_id=UUID(str(data["ref_id"])),
        unit_price=parse_amount(data["unit_price"]),
        quantity=int(data.get("quantity", 1)),
    )


def _row_to_order(row: Mapping[str, Any]) -> Order:
    """Convert a Supabase row into an Order."""

    term = row.get("subscription_term_days")
    return Order(
        order_id=UUID(str(row["order_id"])),
        buyer_id=UUID(str(row["buyer_id"])),
        items=tuple(_item_from_json(item) for item in row.get("items") or []),
        total_amount=parse_amount(row["total_amount"]),
        currency=str(row.get("currency", "USD")),
        payment_method=PaymentMethod(str(row["payment_method"])),
        status=OrderStatus(str(row["status"])),
        created_at=parse_utc_datetime(row["created_at_utc"]),
        external_payment_ref=row.get("external_payment_ref"),
        subscription_term_days=int(term) if term is not None else None,
        processed_at=parse_optional_datetime(row.get("processed_at_utc")),
    )


def insert_order(order: Order) -> None:
    """Insert a new (pending) order."""

    payload: Dict[str, Any] = {
        "order_id": str(order.order_id),
        "buyer_id": str(order.buyer_id),
        "items": [_item_to_json(item) for item in order.items],
        "total_amount": str(order.total_amount),
        "currency": order.currency,
        "payment_method": order.payment_method.value,
        "status": order.status.value,
        "external_payment_ref": order.external_payment_ref,
        "subscription_term_days": order.subscription_term_days,
        "created_at_utc": to_iso_utc(order.created_at, name="created_at"),
    }

    response = get_supabase().table(_ORDERS_TABLE).insert(payload).execute()
    response_rows(response, "insert order")


def get_order_by_id(order_id: UUID) -> Optional[Order]:
    response = (
        get_supabase().table(_ORDERS_TABLE)
        .select("*")
        .eq("order_id", str(order_id))
        .limit(1)
        .execute()
    )
    rows = response_rows(response, "get order")
    return _row_to_order(rows[0]) if rows else None


def get_order_by_payment_ref(external_payment_ref: str) -> Optional[Order]:
    """Look up the order correlated with a provider payment reference."""

    response = (
        get_supabase().table(_ORDERS_TABLE)
        .select("*")
        .eq("external_payment_ref", external_payment_ref)
        .limit(1)
        .execute()
    )
    rows = response_rows(response, "get order by payment reference")
    return _row_to_order(rows[0]) if rows else None


def list_orders_by_buyer(buyer_id: UUID) -> List[Order]:
    response = (
        get_supabase().table(_ORDERS_TABLE)
        .select("*")
        .eq("buyer_id", str(buyer_id))
        .order("created_at_utc", desc=True)
        .execute()
    )
    return [_row_to_order(row) for row in response_rows(response, "list orders")]


def attach_payment_ref(order_id: UUID, external_payment_ref: str) -> bool:
    """
    Record the provider payment reference on a pending order.

    Only succeeds while the order is pending and has no reference yet.

    Returns:
        True if the reference was attached.
    """

    response = (
        get_supabase().table(_ORDERS_TABLE)
        .update({"external_payment_ref": external_payment_ref})
        .eq("order_id", str(order_id))
        .eq("status", OrderStatus.PENDING.value)
        .is_("external_payment_ref", "null")
        .execute()
    )
    return bool(response_rows(response, "attach payment reference"))


def claim_transition(
    order_id: UUID,
    expected: OrderStatus,
    target: OrderStatus,
    *,
    processed_at: Optional[datetime] = None,
    external_payment_ref: Optional[str] = None,
) -> Optional[Order]:
    """
    Atomically move an order from `expected` to `target` status.

    Returns:
        The updated Order if this caller won the claim, None if the order was
        not in `expected` status (or does not exist).

    Raises:
        OrderStateConflict: if `expected -> target` is not a legal transition.
    """

    require_transition(expected, target, order_id=order_id)

    payload: Dict[str, Any] = {"status": target.value}
    if processed_at is not None:
        payload["processed_at_utc"] = to_iso_utc(processed_at, name="processed_at")
    if external_payment_ref is not None:
        payload["external_payment_ref"] = external_payment_ref

    response = (
        get_supabase().table(_ORDERS_TABLE)
        .update(payload)
        .eq("order_id", str(order_id))
        .eq("status", expected.value)
        .execute()
    )
    rows = response_rows(response, "claim order transition")
    return _row_to_order(rows[0]) if rows else None


def fulfill_order_atomic(
    order_id: UUID,
    mod_ids: Iterable[UUID],
    *,
    processed_at: datetime,
    external_payment_ref: Optional[str] = None,
    subscription_term: Optional[timedelta] = None,
) -> Optional[OrderFulfillment]:
    """
    Complete a pending order and deliver its contents in one transaction.

    Calls fulfill_order_atomic() which:
    1. Claims the order (pending -> completed), or returns NOT_CLAIMED
    2. Grants the mods to the buyer with set-union semantics
    3. Extends the buyer's subscription when `subscription_term` is given

    Any failure rolls back all three, leaving the order pending.

    Returns:
        OrderFulfillment if this caller won the claim, None if the order was
        no longer pending.

    Raises:
        RuntimeError: if the database rejected the operation
    """

    params: Dict[str, Any] = {
        "p_order_id": str(order_id),
        "p_processed_at": to_iso_utc(processed_at, name="processed_at"),
        "p_external_payment_ref": external_payment_ref,
        "p_mod_ids": sorted({str(mod_id) for mod_id in mod_ids}),
        "p_subscription_term_seconds": int(subscription_term.total_seconds()) if subscription_term is not None else None,
    }

    try:
        response = get_supabase().rpc("fulfill_order_atomic", params).execute()
    except APIError as e:
        raise RuntimeError(f"Failed to fulfill order {order_id} ({e.code}): {e.message or e}") from e

    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to fulfill order {order_id}: {error}")

    result = response.data
    if isinstance(result, list):
        result = result[0] if result else {}
    result = result or {}

    if not result.get("success"):
        if result.get("error") == "NOT_CLAIMED":
            return None
        raise RuntimeError(f"Failed to fulfill order {order_id}: {result.get('error', 'UNKNOWN')}")

    return OrderFulfillment(
        order=_row_to_order(result["order"]),
        granted_count=int(result.get("granted") or 0),
        subscription_expires_at=parse_optional_datetime(result.get("subscription_expires_at_utc")),
    )


__all__ = [
    "OrderFulfillment",
    "insert_order",
    "get_order_by_id",
    "get_order_by_payment_ref",
    "list_orders_by_buyer",
    "attach_payment_ref",
    "claim_transition",
    "fulfill_order_atomic",
]
