"""
FastAPI dependencies.

Wiring for the ledger, payment gateways and engines, plus the current-buyer
resolver. Tests replace any of these through `app.dependency_overrides`.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Dict, Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException

from domain.order import PaymentMethod
from repositories.ledger import LedgerStore, SupabaseLedgerStore
from services.checkout_service import CheckoutService
from services.commission_service import CommissionEngine
from services.config import PaymentSettings, get_payment_settings
from services.fulfillment_service import FulfillmentEngine
from services.notification_service import NotificationDispatcher, OutboxNotificationDispatcher
from services.payment_gateway import PaymentGateway
from services.paypal_gateway import PayPalGateway
from services.stripe_gateway import StripeGateway
from services.webhook_service import WebhookService

logger = logging.getLogger(__name__)


def get_settings() -> PaymentSettings:
    return get_payment_settings()


@lru_cache(maxsize=1)
def _ledger() -> SupabaseLedgerStore:
    return SupabaseLedgerStore()


def get_ledger() -> LedgerStore:
    return _ledger()


def get_notifier() -> NotificationDispatcher:
    return OutboxNotificationDispatcher()


@lru_cache(maxsize=1)
def _gateways() -> Dict[PaymentMethod, PaymentGateway]:
    # A provider is enabled by setting its API credential; partial
    # configuration fails loudly in the gateway constructor.
    settings = get_payment_settings()
    gateways: Dict[PaymentMethod, PaymentGateway] = {}
    if settings.paypal_client_id:
        gateways[PaymentMethod.PAYPAL] = PayPalGateway(settings)
    if settings.stripe_secret_key:
        gateways[PaymentMethod.STRIPE] = StripeGateway(settings)
    if not gateways:
        logger.warning("No payment gateway configured; set PayPal or Stripe credentials")
    return gateways


def get_gateways() -> Dict[PaymentMethod, PaymentGateway]:
    return _gateways()


def get_commission_engine(
    ledger: LedgerStore = Depends(get_ledger),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> CommissionEngine:
    return CommissionEngine(ledger, notifier)


def get_fulfillment_engine(
    ledger: LedgerStore = Depends(get_ledger),
    commissions: CommissionEngine = Depends(get_commission_engine),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> FulfillmentEngine:
    return FulfillmentEngine(ledger, commissions, notifier)


def get_checkout_service(
    ledger: LedgerStore = Depends(get_ledger),
    gateways: Dict[PaymentMethod, PaymentGateway] = Depends(get_gateways),
    engine: FulfillmentEngine = Depends(get_fulfillment_engine),
) -> CheckoutService:
    return CheckoutService(ledger, gateways, engine)


def get_webhook_service(
    ledger: LedgerStore = Depends(get_ledger),
    gateways: Dict[PaymentMethod, PaymentGateway] = Depends(get_gateways),
    engine: FulfillmentEngine = Depends(get_fulfillment_engine),
) -> WebhookService:
    return WebhookService(ledger, gateways, engine)


def get_current_buyer_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> UUID:
    """
    Resolve the authenticated user.

    The session layer in front of this service sets X-User-Id; override this
    dependency to plug in a different authentication scheme.
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        return UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid user id")
