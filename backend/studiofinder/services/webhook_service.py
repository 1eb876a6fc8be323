"""Webhook orchestration: verify, admit, route, record the outcome"""
import logging
from typing import Any, Callable, Dict

from sqlalchemy.orm import Session

from studiofinder.core.metrics import webhook_events_counter
from studiofinder.core.otel import get_tracer
from studiofinder.schemas.events import EventType
from studiofinder.services import event_ledger, stripe_service, webhook_handlers
from studiofinder.services.webhook_context import WebhookContext

logger = logging.getLogger(__name__)

EVENT_HANDLERS: Dict[EventType, Callable[[WebhookContext], str]] = {
    EventType.CHECKOUT_SESSION_COMPLETED: webhook_handlers.handle_checkout_session_completed,
    EventType.CHARGE_REFUNDED: webhook_handlers.handle_charge_refunded,
    EventType.REFUND_UPDATED: webhook_handlers.handle_refund_updated,
    EventType.PAYMENT_INTENT_FAILED: webhook_handlers.handle_payment_failed,
    EventType.CHARGE_FAILED: webhook_handlers.handle_payment_failed,
}


def route_event(ctx: WebhookContext) -> str:
    """Dispatch to the handler for the event type; unknown types are acknowledged"""
    handler = EVENT_HANDLERS.get(ctx.event.event_type)
    if handler is None:
        ctx.log.info("No handler registered; acknowledging")
        return webhook_handlers.STATUS_IGNORED
    return handler(ctx)


def process_stripe_webhook(payload: bytes, sig_header: str, db: Session) -> Dict[str, Any]:
    """Process a Stripe webhook delivery

    Verifies the signature, claims the event in the ledger before any side
    effect, runs its handler and records the outcome. A handler failure is
    recorded on the ledger and re-raised so the endpoint answers with a status
    that makes Stripe redeliver.

    Args:
        payload: Raw request body as bytes (must not be parsed by middleware)
        sig_header: Stripe signature header
        db: Database session

    Returns:
        Dict with status information

    Raises:
        WebhookConfigurationError: webhook secret not configured
        VerificationError: missing/invalid signature or payload
        Exception: whatever the handler raised, after it has been recorded
    """
    event = stripe_service.construct_incoming_event(payload, sig_header)

    admission = event_ledger.admit(event.provider_event_id, event.type, event.raw, db)
    if not admission.admitted:
        webhook_events_counter.labels(event_type=event.type, outcome="duplicate").inc()
        return {"status": event_ledger.ALREADY_PROCESSED}

    ctx = WebhookContext.for_event(event, db)
    if admission.retry:
        ctx.log.info(f"Redelivery, attempt {admission.record.attempts}")

    tracer = get_tracer()
    with tracer.start_as_current_span("stripe.webhook") as span:
        span.set_attribute("stripe.event_id", event.provider_event_id)
        span.set_attribute("stripe.event_type", event.type)
        try:
            status = route_event(ctx)
        except Exception as e:
            ctx.log.error(f"Processing failed: {e}", exc_info=True)
            event_ledger.mark_processed(event.provider_event_id, db, success=False,
                                        error=f"{type(e).__name__}: {e}")
            webhook_events_counter.labels(event_type=event.type, outcome="failed").inc()
            raise

    event_ledger.mark_processed(event.provider_event_id, db, success=True)
    webhook_events_counter.labels(event_type=event.type, outcome=status).inc()
    ctx.log.info(f"Processed ({status})")
    return {"status": status}
