import logging

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from app.api.deps import get_event_ingestor, get_processor
from app.services.billing_events import BillingEventIngestor
from app.services.processor import StripeProcessor

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    processor: StripeProcessor = Depends(get_processor),
    ingestor: BillingEventIngestor = Depends(get_event_ingestor),
):
    """Receive Stripe events.

    2xx tells Stripe the event is settled (applied, duplicate, or ignored).
    Any failure while applying answers 503 so Stripe redelivers later.
    """
    payload = await request.body()
    try:
        event = processor.construct_event(payload, stripe_signature)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    try:
        outcome = await run_in_threadpool(ingestor.ingest, event)
    except Exception as e:
        logger.error(f"Webhook processing error for {event.get('id')}: {e}")
        raise HTTPException(status_code=503, detail="Webhook processing failed; please retry")

    return {"received": True, "outcome": outcome.value}
