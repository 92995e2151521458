"""
API Request and Response Models.

Pydantic models for validating API requests and serializing responses.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from domain.order import ItemKind, OrderStatus, PaymentMethod


# ============================================================================
# Checkout Models
# ============================================================================

class CheckoutItem(BaseModel):
    """Single line item in a checkout request."""
    kind: ItemKind
    ref_id: UUID
    unit_price: Decimal = Field(..., ge=0, decimal_places=3)
    quantity: int = Field(1, ge=1)


class CheckoutRequest(BaseModel):
    """Request to start a checkout."""
    items: List[CheckoutItem] = Field(
        ...,
        min_length=1,
        description="Mods and bundles being purchased"
    )
    payment_method: PaymentMethod
    currency: Optional[str] = Field(
        None,
        min_length=3,
        max_length=3,
        description="ISO 4217 currency code; defaults to DEFAULT_CURRENCY"
    )
    subscription: bool = Field(
        False,
        description="Purchase is a subscription product"
    )
    subscription_term_days: Optional[int] = Field(
        None,
        gt=0,
        description="Subscription term; defaults to SUBSCRIPTION_TERM_DAYS when subscription is set"
    )

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "items": [
                    {
                        "kind": "mod",
                        "ref_id": "123e4567-e89b-12d3-a456-426614174000",
                        "unit_price": "4.99",
                        "quantity": 1
                    },
                    {
                        "kind": "bundle",
                        "ref_id": "123e4567-e89b-12d3-a456-426614174001",
                        "unit_price": "15.00",
                        "quantity": 1
                    }
                ],
                "payment_method": "paypal",
                "currency": "USD"
            }
        }
    )


class CheckoutResponse(BaseModel):
    """Response after opening a provider-side payment."""
    order_id: UUID
    external_payment_ref: str
    approval_url: str
    total_amount: Decimal
    currency: str

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "order_id": "123e4567-e89b-12d3-a456-426614174002",
                "external_payment_ref": "PAYID-MXYZ123",
                "approval_url": "https://www.sandbox.paypal.com/checkoutnow?token=EC-123",
                "total_amount": "19.99",
                "currency": "USD"
            }
        }
    )


class ExecuteRequest(BaseModel):
    """Buyer approval returned by the payment provider."""
    approver_handle: str = Field(
        "",
        description="PayPal PayerID, or the Stripe checkout session id"
    )


class ExecuteResponse(BaseModel):
    """Response after executing a payment."""
    success: bool
    order_id: UUID
    result: str
    message: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "success": True,
                "order_id": "123e4567-e89b-12d3-a456-426614174002",
                "result": "fulfilled",
                "message": "Payment completed. Your mods are ready to download."
            }
        }
    )


# ============================================================================
# Order Models
# ============================================================================

class OrderItemResponse(BaseModel):
    kind: ItemKind
    ref_id: UUID
    unit_price: Decimal
    quantity: int


class OrderResponse(BaseModel):
    """Buyer-visible order status."""
    order_id: UUID
    status: OrderStatus
    items: List[OrderItemResponse]
    total_amount: Decimal
    currency: str
    payment_method: PaymentMethod
    external_payment_ref: Optional[str] = None
    subscription_term_days: Optional[int] = None
    created_at: datetime
    processed_at: Optional[datetime] = None


# ============================================================================
# Affiliate Models
# ============================================================================

class CommissionResponse(BaseModel):
    """Single commission credited to the current affiliate."""
    commission_id: UUID
    order_id: UUID
    referred_user_id: UUID
    order_amount: Decimal
    commission_rate: Decimal
    amount: Decimal
    currency: str
    status: str
    created_at: datetime


class CommissionListResponse(BaseModel):
    commissions: List[CommissionResponse]
    total_count: int


# ============================================================================
# Webhook Models
# ============================================================================

class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to the payment provider."""
    status: str

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "processed"
            }
        }
    )


# ============================================================================
# Error Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    detail: Optional[str] = None
    status_code: int
