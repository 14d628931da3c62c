"""Stripe webhook API routes"""
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from donation_ledger.core.config import settings
from donation_ledger.core.exceptions import MalformedEventError, WebhookNotConfiguredError
from donation_ledger.db.session import get_db
from donation_ledger.services.reconciliation_service import process_event
from donation_ledger.services.stripe_service import construct_event

router = APIRouter(prefix="/api/stripe", tags=["webhooks"])
logger = logging.getLogger(__name__)


def verify_webhook(payload: bytes, sig_header: str):
    """Verify the signature and return the parsed event.

    Raises:
        WebhookNotConfiguredError: When no signing secret is configured
        ValueError: For invalid payload
        stripe.SignatureVerificationError: For invalid signature
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("Webhook secret not configured")
        raise WebhookNotConfiguredError("STRIPE_WEBHOOK_SECRET is not set")
    return construct_event(payload, sig_header)


@router.post("/webhook")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Handle Stripe webhook events

    Non-2xx responses make Stripe redeliver, which is what we want for
    processing failures: the unit of work was rolled back and the event id
    was never claimed.
    """
    # Raw bytes, the signature covers the exact body
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not sig_header:
        raise HTTPException(400, "Missing stripe-signature header")

    try:
        event = verify_webhook(payload, sig_header)
    except WebhookNotConfiguredError as e:
        raise HTTPException(500, str(e))
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise HTTPException(400, "Invalid payload")
    except stripe.SignatureVerificationError as e:
        logger.error(f"Invalid webhook signature: {e}")
        raise HTTPException(400, "Invalid signature")

    try:
        # Blocking DB and Stripe I/O, kept off the event loop
        result = await run_in_threadpool(process_event, event, db)
    except MalformedEventError as e:
        logger.error(f"Malformed webhook event: {e}")
        raise HTTPException(400, str(e))
    except Exception as e:
        logger.error(f"Error processing webhook: {e}", exc_info=True)
        raise HTTPException(500, "Webhook processing failed")

    if result.duplicate:
        return {"received": True, "duplicate": True}
    return {"received": True}
