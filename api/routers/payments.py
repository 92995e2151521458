"""
Payments API Endpoints.

Endpoints for starting checkouts and executing buyer-approved payments.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException

from api.dependencies import get_checkout_service, get_current_buyer_id, get_settings
from api.models import CheckoutRequest, CheckoutResponse, ExecuteRequest, ExecuteResponse
from domain.errors import GatewayUnavailable, OrderNotFound, OrderStateConflict, PaymentRejected
from domain.order import OrderItem
from services.checkout_service import CheckoutService, NotOrderOwner
from services.config import PaymentSettings
from services.fulfillment_service import FulfillmentResult

router = APIRouter()

_RESULT_MESSAGES = {
    FulfillmentResult.FULFILLED: "Payment completed. Your purchase is ready.",
    FulfillmentResult.ALREADY_PROCESSED: "Payment already completed.",
    FulfillmentResult.MARKED_FAILED: "Payment failed.",
}


@router.post(
    "/checkout",
    response_model=CheckoutResponse,
    summary="Start Checkout",
    description="Create a pending order and open a payment with the chosen provider."
)
def start_checkout(
    request: CheckoutRequest,
    buyer_id: UUID = Depends(get_current_buyer_id),
    service: CheckoutService = Depends(get_checkout_service),
    settings: PaymentSettings = Depends(get_settings),
):
    """
    Start a checkout.

    **Process:**
    1. Creates a pending order with the total fixed from the line items
    2. Opens a payment with PayPal or Stripe
    3. Stores the provider's payment reference on the order

    Redirect the buyer to `approval_url`. If the provider is unreachable the
    request fails with 503 and nothing is charged.
    """
    term_days = request.subscription_term_days
    if request.subscription and term_days is None:
        term_days = settings.subscription_term_days

    try:
        started = service.start_checkout(
            buyer_id,
            [
                OrderItem(kind=item.kind, ref_id=item.ref_id, unit_price=item.unit_price, quantity=item.quantity)
                for item in request.items
            ],
            request.payment_method,
            currency=request.currency or settings.default_currency,
            subscription_term_days=term_days,
        )
    except GatewayUnavailable as e:
        raise HTTPException(status_code=503, detail=f"Payment provider unavailable: {str(e)}")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return CheckoutResponse(
        order_id=started.order_id,
        external_payment_ref=started.external_payment_ref,
        approval_url=started.approval_url,
        total_amount=started.total_amount,
        currency=started.currency,
    )


@router.post(
    "/checkout/{order_id}/execute",
    response_model=ExecuteResponse,
    summary="Execute Payment",
    description="Confirm a buyer-approved payment and deliver the purchase."
)
def execute_checkout(
    order_id: UUID,
    request: ExecuteRequest,
    buyer_id: UUID = Depends(get_current_buyer_id),
    service: CheckoutService = Depends(get_checkout_service),
):
    """
    Execute a payment after the buyer approved it with the provider.

    Calling this more than once (double submit, or after the provider's
    webhook already completed the order) is safe and reports success.

    **Errors:**
    - 402: the provider declined the payment
    - 403: the order belongs to another user
    - 404: unknown order
    - 503: the provider is unreachable; retry later
    """
    try:
        result = service.execute_checkout(order_id, buyer_id, request.approver_handle)
    except OrderNotFound:
        raise HTTPException(status_code=404, detail=f"Order not found: {order_id}")
    except NotOrderOwner:
        raise HTTPException(status_code=403, detail="Not authorized to execute this order")
    except PaymentRejected as e:
        raise HTTPException(status_code=402, detail=f"Payment rejected: {str(e)}")
    except GatewayUnavailable as e:
        raise HTTPException(status_code=503, detail=f"Payment provider unavailable: {str(e)}")
    except OrderStateConflict as e:
        raise HTTPException(status_code=500, detail=f"Order could not be completed: {str(e)}")

    return ExecuteResponse(
        success=result.success,
        order_id=result.order_id,
        result=result.result.value,
        message=_RESULT_MESSAGES[result.result],
    )
