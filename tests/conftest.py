"""
Pytest configuration and shared fixtures.

This file adds the parent directory to the Python path so that tests
can import from the domain, repositories, services and api modules.
"""

import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from uuid import UUID

import pytest

# Add the project root to the Python path so tests can import domain,
# repositories, etc.
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from domain.order import ItemKind, Order, OrderItem, PaymentMethod  # noqa: E402
from services.commission_service import CommissionEngine  # noqa: E402
from services.fulfillment_service import FulfillmentEngine  # noqa: E402
from fakes import InMemoryLedgerStore, RecordingDispatcher  # noqa: E402

BUYER_ID = UUID("00000000-0000-0000-0000-0000000000b1")
AFFILIATE_ID = UUID("00000000-0000-0000-0000-0000000000a1")
MOD_ID = UUID("00000000-0000-0000-0000-00000000d001")
FIXED_NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_order(
    ledger: InMemoryLedgerStore,
    *,
    buyer_id: UUID = BUYER_ID,
    items=None,
    payment_ref: str = "PAY-1",
    subscription_term_days=None,
    payment_method: PaymentMethod = PaymentMethod.PAYPAL,
) -> Order:
    """Insert a pending order with an attached payment reference."""

    order = Order.create(
        buyer_id=buyer_id,
        items=items or [OrderItem(kind=ItemKind.MOD, ref_id=MOD_ID, unit_price=Decimal("100.00"))],
        payment_method=payment_method,
        created_at=FIXED_NOW,
        subscription_term_days=subscription_term_days,
    )
    ledger.insert_order(order)
    ledger.attach_payment_ref(order.order_id, payment_ref)
    return ledger.get_order(order.order_id)


@pytest.fixture
def ledger() -> InMemoryLedgerStore:
    store = InMemoryLedgerStore()
    store.add_user(AFFILIATE_ID, commission_rate=Decimal("0.20"))
    store.add_user(BUYER_ID, referred_by=AFFILIATE_ID)
    return store


@pytest.fixture
def notifier() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def commission_engine(ledger, notifier) -> CommissionEngine:
    return CommissionEngine(ledger, notifier, clock=lambda: FIXED_NOW)


@pytest.fixture
def engine(ledger, commission_engine, notifier) -> FulfillmentEngine:
    return FulfillmentEngine(ledger, commission_engine, notifier, clock=lambda: FIXED_NOW)
