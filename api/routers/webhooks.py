"""
Webhook API Endpoints.

Inbound payment notifications from PayPal and Stripe. These endpoints carry no
session authentication; every delivery is signature-verified before it is
trusted. A 2xx is only returned once the delivery has been classified, so the
provider redelivers anything that failed transiently.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from api.dependencies import get_webhook_service
from api.models import WebhookAckResponse
from domain.errors import GatewayUnavailable
from domain.order import PaymentMethod
from services.webhook_service import WebhookService

logger = logging.getLogger(__name__)

router = APIRouter()


async def _handle(provider: PaymentMethod, request: Request, service: WebhookService) -> WebhookAckResponse:
    # Signatures cover the exact bytes received
    raw_body = await request.body()
    try:
        ack = await run_in_threadpool(service.handle, provider, raw_body, dict(request.headers))
    except GatewayUnavailable as e:
        logger.warning("%s webhook could not be verified now: %s", provider.value, e)
        raise HTTPException(status_code=503, detail="Payment provider unavailable")
    except Exception:
        logger.exception("Unexpected error processing %s webhook", provider.value)
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    return WebhookAckResponse(status=ack.value)


@router.post(
    "/webhooks/paypal",
    response_model=WebhookAckResponse,
    summary="PayPal Webhook",
)
async def paypal_webhook(request: Request, service: WebhookService = Depends(get_webhook_service)):
    return await _handle(PaymentMethod.PAYPAL, request, service)


@router.post(
    "/webhooks/stripe",
    response_model=WebhookAckResponse,
    summary="Stripe Webhook",
)
async def stripe_webhook(request: Request, service: WebhookService = Depends(get_webhook_service)):
    return await _handle(PaymentMethod.STRIPE, request, service)
