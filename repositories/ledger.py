"""
Ledger store interface.

The fulfillment pipeline depends on four write primitives that the storage
layer must provide atomically:

1. Conditional status claim on an order (compare-and-set on status)
2. Entitlement set-union (combined with 1 when an order completes)
3. Unique-keyed commission insert
4. Atomic affiliate counter increment (combined with 3 in one unit of work)

`SupabaseLedgerStore` implements the interface on top of the repository
modules; services receive a `LedgerStore` so they never import the Supabase
client directly.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Protocol
from uuid import UUID

from domain.commission import Commission, CommissionRetry
from domain.order import Order, OrderStatus
from domain.user import UserAccount
from repositories import catalog_repository, commission_repository, order_repository, user_repository
from repositories.order_repository import OrderFulfillment


class LedgerStore(Protocol):
    # Orders
    def insert_order(self, order: Order) -> None: ...

    def get_order(self, order_id: UUID) -> Optional[Order]: ...

    def get_order_by_payment_ref(self, external_payment_ref: str) -> Optional[Order]: ...

    def list_orders_by_buyer(self, buyer_id: UUID) -> List[Order]: ...

    def attach_payment_ref(self, order_id: UUID, external_payment_ref: str) -> bool: ...

    def claim_transition(
        self,
        order_id: UUID,
        expected: OrderStatus,
        target: OrderStatus,
        *,
        processed_at: Optional[datetime] = None,
        external_payment_ref: Optional[str] = None,
    ) -> Optional[Order]: ...

    # Users and catalog
    def get_user(self, user_id: UUID) -> Optional[UserAccount]: ...

    def get_bundle_mod_ids(self, bundle_id: UUID) -> List[UUID]: ...

    def fulfill_order_atomic(
        self,
        order_id: UUID,
        mod_ids: Iterable[UUID],
        *,
        processed_at: datetime,
        external_payment_ref: Optional[str] = None,
        subscription_term: Optional[timedelta] = None,
    ) -> Optional[OrderFulfillment]: ...

    # Commissions
    def insert_commission_and_credit(self, commission: Commission) -> bool: ...

    def get_commission_by_order(self, order_id: UUID) -> Optional[Commission]: ...

    def list_commissions_by_affiliate(self, affiliate_user_id: UUID) -> List[Commission]: ...

    def enqueue_commission_retry(self, order_id: UUID, reason: str, enqueued_at: datetime) -> None: ...

    def list_commission_retries(self, limit: int = 100) -> List[CommissionRetry]: ...

    def record_commission_retry_failure(self, retry: CommissionRetry, reason: str, attempted_at: datetime) -> None: ...

    def resolve_commission_retry(self, order_id: UUID) -> None: ...


class SupabaseLedgerStore:
    """LedgerStore backed by Supabase tables and PostgreSQL functions."""

    def insert_order(self, order: Order) -> None:
        order_repository.insert_order(order)

    def get_order(self, order_id: UUID) -> Optional[Order]:
        return order_repository.get_order_by_id(order_id)

    def get_order_by_payment_ref(self, external_payment_ref: str) -> Optional[Order]:
        return order_repository.get_order_by_payment_ref(external_payment_ref)

    def list_orders_by_buyer(self, buyer_id: UUID) -> List[Order]:
        return order_repository.list_orders_by_buyer(buyer_id)

    def attach_payment_ref(self, order_id: UUID, external_payment_ref: str) -> bool:
        return order_repository.attach_payment_ref(order_id, external_payment_ref)

    def claim_transition(
        self,
        order_id: UUID,
        expected: OrderStatus,
        target: OrderStatus,
        *,
        processed_at: Optional[datetime] = None,
        external_payment_ref: Optional[str] = None,
    ) -> Optional[Order]:
        return order_repository.claim_transition(
            order_id,
            expected,
            target,
            processed_at=processed_at,
            external_payment_ref=external_payment_ref,
        )

    def get_user(self, user_id: UUID) -> Optional[UserAccount]:
        return user_repository.get_user_by_id(user_id)

    def get_bundle_mod_ids(self, bundle_id: UUID) -> List[UUID]:
        return catalog_repository.get_bundle_mod_ids(bundle_id)

    def fulfill_order_atomic(
        self,
        order_id: UUID,
        mod_ids: Iterable[UUID],
        *,
        processed_at: datetime,
        external_payment_ref: Optional[str] = None,
        subscription_term: Optional[timedelta] = None,
    ) -> Optional[OrderFulfillment]:
        return order_repository.fulfill_order_atomic(
            order_id,
            mod_ids,
            processed_at=processed_at,
            external_payment_ref=external_payment_ref,
            subscription_term=subscription_term,
        )

    def insert_commission_and_credit(self, commission: Commission) -> bool:
        """
        Returns:
            True if the commission was inserted and credited, False if a
            commission for the order already existed.

        Raises:
            RuntimeError: if the database rejected the operation.
        """

        result = commission_repository.credit_commission_atomic(commission)
        if result.success:
            return True
        if result.already_credited:
            return False
        raise RuntimeError(f"Failed to credit commission ({result.error_code}): {result.error_message}")

    def get_commission_by_order(self, order_id: UUID) -> Optional[Commission]:
        return commission_repository.get_commission_by_order(order_id)

    def list_commissions_by_affiliate(self, affiliate_user_id: UUID) -> List[Commission]:
        return commission_repository.list_commissions_by_affiliate(affiliate_user_id)

    def enqueue_commission_retry(self, order_id: UUID, reason: str, enqueued_at: datetime) -> None:
        commission_repository.enqueue_commission_retry(order_id, reason, enqueued_at)

    def list_commission_retries(self, limit: int = 100) -> List[CommissionRetry]:
        return commission_repository.list_commission_retries(limit)

    def record_commission_retry_failure(self, retry: CommissionRetry, reason: str, attempted_at: datetime) -> None:
        commission_repository.record_commission_retry_failure(retry, reason, attempted_at)

    def resolve_commission_retry(self, order_id: UUID) -> None:
        commission_repository.resolve_commission_retry(order_id)


__all__ = ["LedgerStore", "SupabaseLedgerStore"]
