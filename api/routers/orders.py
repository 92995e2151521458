"""
Orders API Endpoints.

Buyer-scoped order status and affiliate commission history.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException

from api.dependencies import get_current_buyer_id, get_ledger
from api.models import CommissionListResponse, CommissionResponse, OrderItemResponse, OrderResponse
from domain.order import Order
from repositories.ledger import LedgerStore

router = APIRouter()


def _order_response(order: Order) -> OrderResponse:
    return OrderResponse(
        order_id=order.order_id,
        status=order.status,
        items=[
            OrderItemResponse(kind=item.kind, ref_id=item.ref_id, unit_price=item.unit_price, quantity=item.quantity)
            for item in order.items
        ],
        total_amount=order.total_amount,
        currency=order.currency,
        payment_method=order.payment_method,
        external_payment_ref=order.external_payment_ref,
        subscription_term_days=order.subscription_term_days,
        created_at=order.created_at,
        processed_at=order.processed_at,
    )


@router.get(
    "/orders",
    response_model=List[OrderResponse],
    summary="List My Orders",
)
def list_my_orders(
    buyer_id: UUID = Depends(get_current_buyer_id),
    ledger: LedgerStore = Depends(get_ledger),
):
    """Orders placed by the current user, newest first."""
    return [_order_response(order) for order in ledger.list_orders_by_buyer(buyer_id)]


@router.get(
    "/orders/{order_id}",
    response_model=OrderResponse,
    summary="Get Order Status",
)
def get_order(
    order_id: UUID,
    buyer_id: UUID = Depends(get_current_buyer_id),
    ledger: LedgerStore = Depends(get_ledger),
):
    """
    Poll the status of an order, e.g. while a webhook settles a delayed payment.

    Orders of other users are reported as not found.
    """
    order = ledger.get_order(order_id)
    if order is None or order.buyer_id != buyer_id:
        raise HTTPException(status_code=404, detail=f"Order not found: {order_id}")
    return _order_response(order)


@router.get(
    "/affiliates/me/commissions",
    response_model=CommissionListResponse,
    summary="List My Commissions",
)
def list_my_commissions(
    user_id: UUID = Depends(get_current_buyer_id),
    ledger: LedgerStore = Depends(get_ledger),
):
    commissions = ledger.list_commissions_by_affiliate(user_id)
    return CommissionListResponse(
        commissions=[
            CommissionResponse(
                commission_id=c.commission_id,
                order_id=c.order_id,
                referred_user_id=c.referred_user_id,
                order_amount=c.order_amount,
                commission_rate=c.commission_rate,
                amount=c.amount,
                currency=c.currency,
                status=c.status.value,
                created_at=c.created_at,
            )
            for c in commissions
        ],
        total_count=len(commissions),
    )
