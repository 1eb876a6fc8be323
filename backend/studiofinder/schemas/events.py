"""Typed views of provider webhook events"""
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    CHARGE_REFUNDED = "charge.refunded"
    REFUND_UPDATED = "refund.updated"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    CHARGE_FAILED = "charge.failed"


class Purpose(str, Enum):
    MEMBERSHIP = "membership"
    MEMBERSHIP_RENEWAL = "membership_renewal"
    FEATURED_UPGRADE = "featured_upgrade"


class IncomingEvent(BaseModel):
    """A verified provider callback

    `type` stays a plain string so unrecognised provider events can still be
    admitted, logged and acknowledged.
    """
    provider_event_id: str
    type: str
    purpose: Optional[str] = None
    payload: Dict[str, Any]
    raw: Dict[str, Any] = Field(default_factory=dict)

    @property
    def event_type(self) -> Optional[EventType]:
        try:
            return EventType(self.type)
        except ValueError:
            return None


class WebhookEventOut(BaseModel):
    """Ledger entry as exposed to support tooling"""
    provider_event_id: str
    event_type: str
    processed: bool
    attempts: int
    error: Optional[str] = None
    processed_at: Optional[Any] = None
    created_at: Any

    model_config = {"from_attributes": True}
