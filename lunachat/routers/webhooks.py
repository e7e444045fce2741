"""
Stripe Webhook Router
=====================

POST /api/webhooks/stripe

    signature / parse failure   -> 400 (LUNA-HOOK-001), nothing processed
    processed, skipped or dup   -> 200 {received, handled, duplicate}
    processing failure          -> 500, Stripe retries the delivery
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from lunachat.clients import get_payments
from lunachat.services.customer_link import CustomerLinkResolver
from lunachat.services.payments_gateway import PaymentsGateway
from lunachat.services.subscription_events import SubscriptionEventProcessor

router = APIRouter()

logger = logging.getLogger(__name__)


@router.post("/stripe", summary="Stripe Webhook", description="Receive subscription lifecycle events from Stripe.")
async def stripe_webhook(request: Request, payments: PaymentsGateway = Depends(get_payments)):
    payload = await request.body()
    event = payments.verify_webhook(payload, request.headers.get("Stripe-Signature"))

    logger.info("Received Stripe event: id=%s type=%s", event["id"], event["type"])
    processor = SubscriptionEventProcessor(payments, CustomerLinkResolver(payments))
    try:
        outcome = await processor.process(event)
    except Exception as e:
        logger.error("Error processing Stripe event %s: %s", event["id"], e, exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})

    return {
        "received": True,
        "handled": outcome.handled,
        "duplicate": outcome.duplicate,
        "reason": outcome.reason,
    }
