"""
Tests for `services/fulfillment_service.py`.

Covers contract rules:
- A payment is fulfilled exactly once, however many times it is reported.
- Concurrent reports of the same payment produce exactly one FULFILLED.
- Failed payments grant nothing; illegal transitions leave the order unchanged.
- Bundles expand to their mods; subscriptions extend from max(now, expiry).
- Commission and notification failures never undo entitlements.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal
from uuid import UUID, uuid4

import pytest

from conftest import AFFILIATE_ID, BUYER_ID, FIXED_NOW, MOD_ID, make_order
from domain.errors import OrderNotFound, OrderStateConflict
from domain.order import ItemKind, OrderItem, OrderStatus
from domain.payment_event import PaymentEvent, PaymentOutcome
from fakes import RecordingDispatcher
from services.commission_service import CommissionEngine
from services.fulfillment_service import FulfillmentEngine, FulfillmentResult


def _event(order, *, outcome=PaymentOutcome.SUCCEEDED, amount=None, ref=None, buyer_id=None) -> PaymentEvent:
    return PaymentEvent(
        external_payment_ref=ref or order.external_payment_ref,
        order_id=order.order_id,
        buyer_id=buyer_id or order.buyer_id,
        amount=order.total_amount if amount is None else amount,
        currency=order.currency,
        outcome=outcome,
        raw_provider_id="SALE-1",
    )


def test_success_event_fulfills_order_and_credits_commission(engine, ledger, notifier) -> None:
    order = make_order(ledger)

    result = engine.apply(_event(order))

    assert result is FulfillmentResult.FULFILLED
    stored = ledger.get_order(order.order_id)
    assert stored.status is OrderStatus.COMPLETED
    assert stored.processed_at == FIXED_NOW
    assert ledger.owned_mod_ids(BUYER_ID) == {MOD_ID}

    commission = ledger.get_commission_by_order(order.order_id)
    assert commission.amount == Decimal("20.00")
    assert commission.affiliate_user_id == AFFILIATE_ID
    assert notifier.purchases == [(BUYER_ID, order.order_id)]
    assert notifier.commissions == [(AFFILIATE_ID, order.order_id, Decimal("20.00"), "USD")]


def test_duplicate_success_events_fulfill_once(engine, ledger, notifier) -> None:
    """Execute plus webhook for the same payment: one grant, one $20.00 commission."""

    order = make_order(ledger)

    first = engine.apply(_event(order))
    second = engine.apply(_event(order))

    assert first is FulfillmentResult.FULFILLED
    assert second is FulfillmentResult.ALREADY_PROCESSED
    assert ledger.owned_mod_ids(BUYER_ID) == {MOD_ID}
    assert len(ledger.commissions) == 1

    affiliate = ledger.get_user(AFFILIATE_ID)
    assert affiliate.pending_earnings == Decimal("20.00")
    assert affiliate.total_conversions == 1
    assert len(notifier.purchases) == 1


def test_concurrent_success_events_yield_single_fulfillment(engine, ledger) -> None:
    order = make_order(ledger)
    event = _event(order)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: engine.apply(event), range(16)))

    assert results.count(FulfillmentResult.FULFILLED) == 1
    assert results.count(FulfillmentResult.ALREADY_PROCESSED) == 15
    assert ledger.get_user(AFFILIATE_ID).pending_earnings == Decimal("20.00")
    assert len(ledger.commissions) == 1


def test_failure_event_marks_failed_without_entitlements(engine, ledger, notifier) -> None:
    order = make_order(ledger)

    result = engine.apply(_event(order, outcome=PaymentOutcome.FAILED))

    assert result is FulfillmentResult.MARKED_FAILED
    assert ledger.get_order(order.order_id).status is OrderStatus.FAILED
    assert ledger.owned_mod_ids(BUYER_ID) == set()
    assert ledger.commissions == {}
    assert notifier.purchases == []


def test_failure_event_after_completion_is_ignored(engine, ledger) -> None:
    order = make_order(ledger)
    engine.apply(_event(order))

    result = engine.apply(_event(order, outcome=PaymentOutcome.FAILED))

    assert result is FulfillmentResult.ALREADY_PROCESSED
    assert ledger.get_order(order.order_id).status is OrderStatus.COMPLETED


def test_success_event_on_refunded_order_is_conflict(engine, ledger) -> None:
    order = make_order(ledger)
    refunded = replace(order, status=OrderStatus.REFUNDED)
    ledger.orders[order.order_id] = refunded

    with pytest.raises(OrderStateConflict) as excinfo:
        engine.apply(_event(order))

    assert excinfo.value.current == "refunded"
    assert excinfo.value.attempted == "completed"
    assert ledger.get_order(order.order_id) == refunded
    assert ledger.owned_mod_ids(BUYER_ID) == set()


def test_success_event_on_failed_order_is_conflict(engine, ledger) -> None:
    order = make_order(ledger)
    engine.apply(_event(order, outcome=PaymentOutcome.FAILED))

    with pytest.raises(OrderStateConflict):
        engine.apply(_event(order))

    assert ledger.get_order(order.order_id).status is OrderStatus.FAILED


def test_unknown_order_raises_not_found(engine, ledger) -> None:
    order = make_order(ledger)
    event = replace(_event(order), order_id=uuid4())

    with pytest.raises(OrderNotFound):
        engine.apply(event)


@pytest.mark.parametrize(
    "overrides",
    [
        {"amount": Decimal("1.00")},
        {"ref": "PAY-OTHER"},
        {"buyer_id": UUID("00000000-0000-0000-0000-0000000000ff")},
    ],
)
def test_mismatched_event_is_conflict_and_changes_nothing(engine, ledger, overrides) -> None:
    order = make_order(ledger)

    with pytest.raises(OrderStateConflict):
        engine.apply(_event(order, **overrides))

    assert ledger.get_order(order.order_id).status is OrderStatus.PENDING
    assert ledger.claim_calls == 0


def test_bundle_expands_to_member_mods(engine, ledger) -> None:
    bundle_id = uuid4()
    m1, m2, m3 = uuid4(), uuid4(), uuid4()
    ledger.add_bundle(bundle_id, [m1, m2, m3])
    order = make_order(ledger, items=[OrderItem(kind=ItemKind.BUNDLE, ref_id=bundle_id, unit_price=Decimal("15.00"))])

    engine.apply(_event(order))

    assert ledger.owned_mod_ids(BUYER_ID) == {m1, m2, m3}


def test_already_owned_mods_are_not_duplicated(engine, ledger) -> None:
    bundle_id = uuid4()
    ledger.add_bundle(bundle_id, [MOD_ID, uuid4()])
    ledger.entitlements.add((BUYER_ID, MOD_ID))
    order = make_order(ledger, items=[OrderItem(kind=ItemKind.BUNDLE, ref_id=bundle_id, unit_price=Decimal("10.00"))])

    engine.apply(_event(order))

    assert len(ledger.owned_mod_ids(BUYER_ID)) == 2


def test_buyer_without_referrer_earns_no_commission(ledger, notifier) -> None:
    buyer = uuid4()
    ledger.add_user(buyer)
    engine = FulfillmentEngine(ledger, CommissionEngine(ledger, notifier), notifier, clock=lambda: FIXED_NOW)
    order = make_order(ledger, buyer_id=buyer)

    assert engine.apply(_event(order)) is FulfillmentResult.FULFILLED

    assert ledger.commissions == {}
    assert ledger.get_user(AFFILIATE_ID).pending_earnings == Decimal("0")


def test_commission_rate_is_snapshotted(engine, ledger) -> None:
    """$25 at 20% earns $5; raising the rate to 30% later leaves it at $5."""

    order = make_order(ledger, items=[OrderItem(kind=ItemKind.MOD, ref_id=MOD_ID, unit_price=Decimal("25.00"))])
    engine.apply(_event(order))

    ledger.set_commission_rate(AFFILIATE_ID, Decimal("0.30"))
    engine.apply(_event(order))

    commission = ledger.get_commission_by_order(order.order_id)
    assert commission.amount == Decimal("5.00")
    assert commission.commission_rate == Decimal("0.20")
    assert ledger.get_user(AFFILIATE_ID).pending_earnings == Decimal("5.00")


def test_subscription_extends_from_later_of_now_and_expiry(engine, ledger) -> None:
    current_expiry = FIXED_NOW + timedelta(days=10)
    ledger.users[BUYER_ID] = replace(
        ledger.users[BUYER_ID], subscription_active=True, subscription_expires_at=current_expiry
    )
    order = make_order(ledger, subscription_term_days=365)

    engine.apply(_event(order))

    buyer = ledger.get_user(BUYER_ID)
    assert buyer.subscription_active is True
    assert buyer.subscription_expires_at == current_expiry + timedelta(days=365)


def test_lapsed_subscription_extends_from_now(engine, ledger) -> None:
    ledger.users[BUYER_ID] = replace(
        ledger.users[BUYER_ID], subscription_active=True, subscription_expires_at=FIXED_NOW - timedelta(days=30)
    )
    order = make_order(ledger, subscription_term_days=30)

    engine.apply(_event(order))

    assert ledger.get_user(BUYER_ID).subscription_expires_at == FIXED_NOW + timedelta(days=30)


def test_commission_failure_keeps_entitlements_and_queues_retry(engine, ledger, commission_engine) -> None:
    ledger.fail_commission_inserts = 1
    order = make_order(ledger)

    result = engine.apply(_event(order))

    assert result is FulfillmentResult.FULFILLED
    assert ledger.owned_mod_ids(BUYER_ID) == {MOD_ID}
    assert ledger.commissions == {}
    assert list(ledger.retries) == [order.order_id]

    summary = commission_engine.retry_pending()
    again = commission_engine.retry_pending()

    assert summary.resolved == 1
    assert again.attempted == 0
    assert ledger.get_user(AFFILIATE_ID).pending_earnings == Decimal("20.00")
    assert len(ledger.commissions) == 1


def test_failed_delivery_leaves_order_pending_for_redelivery(engine, ledger) -> None:
    """A ledger failure while delivering must not complete the order empty-handed."""

    ledger.fail_fulfillments = 1
    order = make_order(ledger)

    with pytest.raises(RuntimeError):
        engine.apply(_event(order))

    assert ledger.get_order(order.order_id).status is OrderStatus.PENDING
    assert ledger.owned_mod_ids(BUYER_ID) == set()
    assert ledger.commissions == {}

    assert engine.apply(_event(order)) is FulfillmentResult.FULFILLED
    assert ledger.owned_mod_ids(BUYER_ID) == {MOD_ID}
    assert len(ledger.commissions) == 1


def test_bundle_lookup_failure_leaves_order_pending(engine, ledger, monkeypatch) -> None:
    bundle_id = uuid4()
    m1, m2 = uuid4(), uuid4()
    ledger.add_bundle(bundle_id, [m1, m2])
    order = make_order(ledger, items=[OrderItem(kind=ItemKind.BUNDLE, ref_id=bundle_id, unit_price=Decimal("15.00"))])

    def unavailable(bundle: UUID):
        raise RuntimeError("Failed to fetch bundle contents: connection reset")

    with monkeypatch.context() as patched:
        patched.setattr(ledger, "get_bundle_mod_ids", unavailable)
        with pytest.raises(RuntimeError):
            engine.apply(_event(order))

    assert ledger.get_order(order.order_id).status is OrderStatus.PENDING
    assert ledger.claim_calls == 0

    assert engine.apply(_event(order)) is FulfillmentResult.FULFILLED
    assert ledger.owned_mod_ids(BUYER_ID) == {m1, m2}


def test_subscription_failure_rolls_back_claim_and_grants(engine, ledger) -> None:
    unknown_buyer = uuid4()
    order = make_order(ledger, buyer_id=unknown_buyer, subscription_term_days=30)

    with pytest.raises(RuntimeError):
        engine.apply(_event(order))

    assert ledger.get_order(order.order_id).status is OrderStatus.PENDING
    assert ledger.owned_mod_ids(unknown_buyer) == set()


def test_redelivery_recovers_commission_lost_after_fulfillment(engine, ledger, monkeypatch) -> None:
    ledger.fail_commission_inserts = 1
    order = make_order(ledger)

    def queue_down(order_id, reason, enqueued_at):
        raise RuntimeError("Failed to enqueue commission retry: connection reset")

    with monkeypatch.context() as patched:
        patched.setattr(ledger, "enqueue_commission_retry", queue_down)
        assert engine.apply(_event(order)) is FulfillmentResult.FULFILLED

    assert ledger.commissions == {}
    assert ledger.retries == {}

    assert engine.apply(_event(order)) is FulfillmentResult.ALREADY_PROCESSED

    assert ledger.get_commission_by_order(order.order_id).amount == Decimal("20.00")
    assert ledger.get_user(AFFILIATE_ID).pending_earnings == Decimal("20.00")
    assert ledger.owned_mod_ids(BUYER_ID) == {MOD_ID}


def test_notification_failure_does_not_affect_result(ledger) -> None:
    failing = RecordingDispatcher(fail=True)
    engine = FulfillmentEngine(ledger, CommissionEngine(ledger, failing), failing, clock=lambda: FIXED_NOW)
    order = make_order(ledger)

    assert engine.apply(_event(order)) is FulfillmentResult.FULFILLED

    assert ledger.get_order(order.order_id).status is OrderStatus.COMPLETED
    assert ledger.get_commission_by_order(order.order_id) is not None
