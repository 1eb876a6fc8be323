"""Stripe webhook API routes"""
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from studiofinder.core.errors import VerificationError, WebhookConfigurationError
from studiofinder.db.session import get_db
from studiofinder.schemas.events import WebhookEventOut
from studiofinder.services.event_ledger import list_recent_events
from studiofinder.services.webhook_service import process_stripe_webhook

router = APIRouter(prefix="/api/stripe", tags=["stripe"])
logger = logging.getLogger(__name__)


@router.post("/webhook")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Handle Stripe webhook events

    Note: This route must be excluded from any global JSON parsing middleware
    to ensure the request body remains as raw bytes for signature verification.

    A non-2xx answer makes Stripe redeliver, so any processing failure is
    reported as 400 once it has been recorded on the event ledger.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        return process_stripe_webhook(payload, sig_header, db)
    except WebhookConfigurationError as e:
        logger.error(f"Webhook rejected, server misconfigured: {e}")
        raise HTTPException(500, "Webhook not configured")
    except VerificationError as e:
        logger.error(f"Webhook verification failed: {e}")
        raise HTTPException(400, str(e))
    except Exception as e:
        logger.error(f"Error processing webhook: {e}", exc_info=True)
        raise HTTPException(400, "Webhook processing failed")


@router.get("/webhook-events", response_model=List[WebhookEventOut])
def get_webhook_events(
    limit: int = Query(20, ge=1, le=100),
    failed_only: bool = Query(False),
    db: Session = Depends(get_db)
):
    """Recent webhook ledger entries, newest first"""
    return list_recent_events(db, limit=limit, failed_only=failed_only)
