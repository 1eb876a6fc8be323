"""Idempotency ledger for provider webhook events

Admission is an INSERT guarded by the unique constraint on provider_event_id,
so concurrent deliveries served by different processes are serialised by the
database rather than by an in-process lock.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from studiofinder.core.config import settings
from studiofinder.models.stripe_event import StripeWebhookEvent

logger = logging.getLogger(__name__)

ADMITTED = "admitted"
ALREADY_PROCESSED = "already_processed"


@dataclass
class Admission:
    status: str
    record: Optional[StripeWebhookEvent] = None
    retry: bool = False

    @property
    def admitted(self) -> bool:
        return self.status == ADMITTED


def admit(provider_event_id: str, event_type: str, payload: Dict[str, Any], db: Session,
          now: Optional[datetime] = None) -> Admission:
    """Claim an event for processing.

    Inserts a ledger row before any side effect. A uniqueness violation means
    another delivery already claimed it; that claim is only taken over when the
    earlier attempt failed or has been in flight longer than the claim timeout.
    """
    now = now or datetime.now(timezone.utc)
    record = StripeWebhookEvent(
        provider_event_id=provider_event_id,
        event_type=event_type,
        payload=payload,
        processed=False,
        attempts=1,
        claimed_at=now,
        created_at=now,
    )
    db.add(record)
    try:
        db.commit()
        db.refresh(record)
        return Admission(ADMITTED, record)
    except IntegrityError:
        db.rollback()

    if _reclaim(provider_event_id, db, now):
        record = get_event(provider_event_id, db)
        logger.info(f"Re-admitting event {provider_event_id} (attempt {record.attempts})")
        return Admission(ADMITTED, record, retry=True)

    logger.info(f"Event {provider_event_id} already processed or in flight")
    return Admission(ALREADY_PROCESSED, get_event(provider_event_id, db))


def _reclaim(provider_event_id: str, db: Session, now: datetime) -> bool:
    """Atomically take over a failed or stale claim. True if this caller won it."""
    stale_before = now - timedelta(seconds=settings.WEBHOOK_CLAIM_TIMEOUT_SECONDS)
    result = db.execute(
        update(StripeWebhookEvent)
        .where(
            StripeWebhookEvent.provider_event_id == provider_event_id,
            StripeWebhookEvent.processed.is_(False),
            or_(
                StripeWebhookEvent.error.isnot(None),
                StripeWebhookEvent.claimed_at < stale_before,
            ),
        )
        .values(
            error=None,
            claimed_at=now,
            attempts=StripeWebhookEvent.attempts + 1,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def mark_processed(provider_event_id: str, db: Session, success: bool = True,
                   error: Optional[str] = None) -> None:
    """Record the outcome of handling. Called exactly once per admitted attempt."""
    # Discard whatever a failed handler left pending before touching the ledger
    db.rollback()
    record = get_event(provider_event_id, db)
    if record is None:
        logger.error(f"Ledger entry for event {provider_event_id} disappeared before completion")
        return
    record.processed = success
    record.processed_at = datetime.now(timezone.utc)
    record.error = None if success else (error or "unknown error")
    db.commit()


def get_event(provider_event_id: str, db: Session) -> Optional[StripeWebhookEvent]:
    return db.query(StripeWebhookEvent).filter(
        StripeWebhookEvent.provider_event_id == provider_event_id
    ).first()


def list_recent_events(db: Session, limit: int = 20, failed_only: bool = False) -> List[StripeWebhookEvent]:
    query = db.query(StripeWebhookEvent)
    if failed_only:
        query = query.filter(StripeWebhookEvent.error.isnot(None))
    return query.order_by(StripeWebhookEvent.created_at.desc(), StripeWebhookEvent.id.desc()).limit(limit).all()
