"""StripeWebhookEvent model"""
from sqlalchemy import Column, Integer, String, Boolean, Text, JSON, DateTime
from datetime import datetime, timezone
from studiofinder.models.base import Base


class StripeWebhookEvent(Base):
    """Stripe webhook event ledger for idempotency

    The unique constraint on provider_event_id is the admission gate: the row is
    inserted before any side effect and updated once handling completes.
    """
    __tablename__ = "stripe_webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    provider_event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    processed = Column(Boolean, default=False, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, default=1, nullable=False)
    claimed_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
