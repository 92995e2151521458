"""
Tests for `services/commission_service.py`.
"""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from uuid import uuid4

import pytest

from conftest import AFFILIATE_ID, BUYER_ID, FIXED_NOW, MOD_ID, make_order
from domain.errors import OrderStateConflict
from domain.order import ItemKind, OrderItem, OrderStatus
from services.commission_service import CreditStatus


def _completed(ledger, **kwargs):
    order = make_order(ledger, **kwargs)
    return ledger.claim_transition(order.order_id, OrderStatus.PENDING, OrderStatus.COMPLETED, processed_at=FIXED_NOW)


def test_credit_records_commission_and_increments_counters(commission_engine, ledger, notifier) -> None:
    order = _completed(ledger)

    result = commission_engine.credit(order)

    assert result.status is CreditStatus.CREDITED
    assert result.commission.amount == Decimal("20.00")
    assert result.commission.referred_user_id == BUYER_ID

    affiliate = ledger.get_user(AFFILIATE_ID)
    assert affiliate.pending_earnings == Decimal("20.00")
    assert affiliate.total_earnings == Decimal("20.00")
    assert affiliate.total_conversions == 1
    assert len(notifier.commissions) == 1


def test_second_credit_reports_already_credited(commission_engine, ledger, notifier) -> None:
    order = _completed(ledger)
    first = commission_engine.credit(order)

    second = commission_engine.credit(order)

    assert second.status is CreditStatus.ALREADY_CREDITED
    assert second.commission == first.commission
    assert ledger.get_user(AFFILIATE_ID).pending_earnings == Decimal("20.00")
    assert len(notifier.commissions) == 1


def test_pending_order_cannot_be_credited(commission_engine, ledger) -> None:
    order = make_order(ledger)

    with pytest.raises(OrderStateConflict):
        commission_engine.credit(order)


def test_commission_rounds_half_to_even(commission_engine, ledger) -> None:
    """$0.25 at 10% is 0.025, which rounds to the even cent 0.02."""

    ledger.set_commission_rate(AFFILIATE_ID, Decimal("0.10"))
    order = _completed(ledger, items=[OrderItem(kind=ItemKind.MOD, ref_id=MOD_ID, unit_price=Decimal("0.25"))])

    result = commission_engine.credit(order)

    assert result.commission.amount == Decimal("0.02")


@pytest.mark.parametrize("case", ["no_referrer", "self_referral", "missing_affiliate", "zero_rate"])
def test_no_commission_due(commission_engine, ledger, case) -> None:
    if case == "no_referrer":
        ledger.users[BUYER_ID] = replace(ledger.users[BUYER_ID], referred_by=None)
    elif case == "self_referral":
        ledger.users[BUYER_ID] = replace(ledger.users[BUYER_ID], referred_by=BUYER_ID)
    elif case == "missing_affiliate":
        ledger.users[BUYER_ID] = replace(ledger.users[BUYER_ID], referred_by=uuid4())
    else:
        ledger.set_commission_rate(AFFILIATE_ID, Decimal("0"))
    order = _completed(ledger)

    result = commission_engine.credit(order)

    assert result.status is CreditStatus.NO_COMMISSION_DUE
    assert ledger.commissions == {}


def test_retry_keeps_failing_entries_with_attempt_count(commission_engine, ledger) -> None:
    order = _completed(ledger)
    ledger.enqueue_commission_retry(order.order_id, "connection reset", FIXED_NOW)
    ledger.fail_commission_inserts = 1

    summary = commission_engine.retry_pending()

    assert (summary.attempted, summary.resolved, summary.failed) == (1, 0, 1)
    assert ledger.retries[order.order_id].attempts == 1
    assert ledger.retries[order.order_id].last_attempt_at is not None

    summary = commission_engine.retry_pending()

    assert (summary.resolved, summary.failed) == (1, 0)
    assert ledger.retries == {}
    assert ledger.get_user(AFFILIATE_ID).pending_earnings == Decimal("20.00")


def test_retry_resolves_entry_when_already_credited(commission_engine, ledger) -> None:
    order = _completed(ledger)
    commission_engine.credit(order)
    ledger.enqueue_commission_retry(order.order_id, "timeout after commit", FIXED_NOW)

    summary = commission_engine.retry_pending()

    assert summary.resolved == 1
    assert ledger.get_user(AFFILIATE_ID).total_conversions == 1


def test_commission_uses_injected_clock(commission_engine, ledger) -> None:
    order = _completed(ledger)

    result = commission_engine.credit(order)

    assert result.commission.created_at == FIXED_NOW


def test_retry_drops_entry_for_refunded_order(commission_engine, ledger) -> None:
    order = _completed(ledger)
    ledger.enqueue_commission_retry(order.order_id, "connection reset", FIXED_NOW)
    ledger.orders[order.order_id] = order.transitioned(OrderStatus.REFUNDED)

    summary = commission_engine.retry_pending()

    assert (summary.attempted, summary.resolved, summary.failed, summary.dropped) == (1, 0, 0, 1)
    assert ledger.retries == {}
    assert ledger.commissions == {}

    assert commission_engine.retry_pending().attempted == 0


def test_retry_drops_entry_for_missing_order(commission_engine, ledger) -> None:
    ledger.enqueue_commission_retry(uuid4(), "connection reset", FIXED_NOW)

    summary = commission_engine.retry_pending()

    assert (summary.failed, summary.dropped) == (0, 1)
    assert ledger.retries == {}
