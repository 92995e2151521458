"""
Webhook service: the provider-facing payment path.

A webhook is authenticated first, then correlated with its order through the
stored external payment reference, then handed to the Fulfillment Engine.
Providers redeliver until they receive a 2xx, so every definitive
classification is acknowledged; only transient failures (provider
unreachable during verification, ledger errors) propagate so the delivery is
retried.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Mapping

from domain.errors import InvalidSignature, OrderNotFound, OrderStateConflict
from domain.order import PaymentMethod
from domain.payment_event import PaymentEvent
from repositories.ledger import LedgerStore
from services.fulfillment_service import FulfillmentEngine, FulfillmentResult
from services.payment_gateway import PaymentGateway, gateway_for

logger = logging.getLogger(__name__)


class WebhookAck(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    REJECTED = "rejected"
    UNKNOWN_ORDER = "unknown_order"
    CONFLICT = "conflict"


class WebhookService:
    def __init__(
        self,
        ledger: LedgerStore,
        gateways: Mapping[PaymentMethod, PaymentGateway],
        engine: FulfillmentEngine,
    ):
        self._ledger = ledger
        self._gateways = gateways
        self._engine = engine

    def handle(self, provider: PaymentMethod, raw_body: bytes, headers: Mapping[str, str]) -> WebhookAck:
        """
        Authenticate, correlate and apply one webhook delivery.

        Raises:
            GatewayUnavailable: the provider could not be reached to verify
            RuntimeError: ledger failure
        """

        gateway = gateway_for(self._gateways, provider)

        try:
            notice = gateway.verify_and_parse_webhook(raw_body, headers)
        except InvalidSignature as e:
            logger.warning(
                "Rejected %s webhook: %s",
                provider.value,
                e,
                extra={"event_kind": "security", "provider": provider.value},
            )
            return WebhookAck.REJECTED

        if notice is None:
            return WebhookAck.IGNORED

        order = self._ledger.get_order_by_payment_ref(notice.external_payment_ref)
        if order is None:
            logger.error(
                "%s webhook %s references unknown payment %s",
                provider.value,
                notice.event_type,
                notice.external_payment_ref,
                extra={"external_payment_ref": notice.external_payment_ref, "raw_provider_id": notice.raw_provider_id},
            )
            return WebhookAck.UNKNOWN_ORDER

        try:
            result = self._engine.apply(PaymentEvent.from_notice(notice, order))
        except OrderNotFound:
            return WebhookAck.UNKNOWN_ORDER
        except OrderStateConflict:
            # Logged with full context by the engine; redelivery cannot fix it
            return WebhookAck.CONFLICT

        if result is FulfillmentResult.ALREADY_PROCESSED:
            return WebhookAck.DUPLICATE
        return WebhookAck.PROCESSED


__all__ = ["WebhookAck", "WebhookService"]
