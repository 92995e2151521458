"""
Tests for `services/checkout_service.py`.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import uuid4

import pytest

from conftest import BUYER_ID, FIXED_NOW, MOD_ID
from domain.errors import GatewayUnavailable, OrderNotFound, OrderStateConflict, PaymentRejected
from domain.order import ItemKind, OrderItem, OrderStatus, PaymentMethod
from domain.payment_event import GatewayNotice, PaymentOutcome
from fakes import FakeGateway
from services.checkout_service import CheckoutService, NotOrderOwner
from services.fulfillment_service import FulfillmentResult

ITEMS = [OrderItem(kind=ItemKind.MOD, ref_id=MOD_ID, unit_price=Decimal("100.00"))]


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway(PaymentMethod.PAYPAL)


@pytest.fixture
def service(ledger, gateway, engine) -> CheckoutService:
    return CheckoutService(ledger, {PaymentMethod.PAYPAL: gateway}, engine, clock=lambda: FIXED_NOW)


def _success(ref: str, amount: str = "100.00") -> GatewayNotice:
    return GatewayNotice(
        external_payment_ref=ref,
        outcome=PaymentOutcome.SUCCEEDED,
        amount=Decimal(amount),
        currency="USD",
        raw_provider_id="SALE-9",
    )


def test_start_checkout_creates_pending_order_with_payment_ref(service, ledger) -> None:
    started = service.start_checkout(BUYER_ID, ITEMS, PaymentMethod.PAYPAL)

    order = ledger.get_order(started.order_id)
    assert order.status is OrderStatus.PENDING
    assert order.external_payment_ref == started.external_payment_ref == "PAY-1"
    assert started.approval_url.endswith("/PAY-1")
    assert started.total_amount == Decimal("100.00")


def test_start_checkout_gateway_unavailable_leaves_order_pending(service, ledger, gateway) -> None:
    gateway.checkout_result = GatewayUnavailable("timed out")

    with pytest.raises(GatewayUnavailable):
        service.start_checkout(BUYER_ID, ITEMS, PaymentMethod.PAYPAL)

    (order,) = ledger.orders.values()
    assert order.status is OrderStatus.PENDING
    assert order.external_payment_ref is None


def test_start_checkout_without_configured_gateway(service) -> None:
    with pytest.raises(GatewayUnavailable):
        service.start_checkout(BUYER_ID, ITEMS, PaymentMethod.STRIPE)


def test_execute_fulfills_order(service, ledger, gateway) -> None:
    started = service.start_checkout(BUYER_ID, ITEMS, PaymentMethod.PAYPAL)
    gateway.execute_result = _success(started.external_payment_ref)

    result = service.execute_checkout(started.order_id, BUYER_ID, "PAYER-1")

    assert result.success is True
    assert result.result is FulfillmentResult.FULFILLED
    assert gateway.executed == [("PAY-1", "PAYER-1")]
    assert ledger.get_order(started.order_id).status is OrderStatus.COMPLETED
    assert ledger.owned_mod_ids(BUYER_ID) == {MOD_ID}


def test_execute_twice_reports_success_once_fulfilled(service, ledger, gateway) -> None:
    started = service.start_checkout(BUYER_ID, ITEMS, PaymentMethod.PAYPAL)
    gateway.execute_result = _success(started.external_payment_ref)
    service.execute_checkout(started.order_id, BUYER_ID, "PAYER-1")

    again = service.execute_checkout(started.order_id, BUYER_ID, "PAYER-1")

    assert again.success is True
    assert again.result is FulfillmentResult.ALREADY_PROCESSED
    assert len(ledger.commissions) == 1


def test_execute_rejected_payment_leaves_order_pending(service, ledger, gateway) -> None:
    started = service.start_checkout(BUYER_ID, ITEMS, PaymentMethod.PAYPAL)
    gateway.execute_result = PaymentRejected("INSTRUMENT_DECLINED")

    with pytest.raises(PaymentRejected):
        service.execute_checkout(started.order_id, BUYER_ID, "PAYER-1")

    assert ledger.get_order(started.order_id).status is OrderStatus.PENDING
    assert ledger.owned_mod_ids(BUYER_ID) == set()


def test_execute_by_other_user_is_forbidden(service, gateway) -> None:
    started = service.start_checkout(BUYER_ID, ITEMS, PaymentMethod.PAYPAL)

    with pytest.raises(NotOrderOwner):
        service.execute_checkout(started.order_id, uuid4(), "PAYER-1")

    assert gateway.executed == []


def test_execute_unknown_order(service) -> None:
    with pytest.raises(OrderNotFound):
        service.execute_checkout(uuid4(), BUYER_ID, "PAYER-1")


def test_execute_amount_mismatch_is_conflict(service, ledger, gateway) -> None:
    started = service.start_checkout(BUYER_ID, ITEMS, PaymentMethod.PAYPAL)
    gateway.execute_result = _success(started.external_payment_ref, amount="1.00")

    with pytest.raises(OrderStateConflict):
        service.execute_checkout(started.order_id, BUYER_ID, "PAYER-1")

    assert ledger.get_order(started.order_id).status is OrderStatus.PENDING
