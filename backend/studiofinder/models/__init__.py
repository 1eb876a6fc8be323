"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from studiofinder.models.base import Base
from studiofinder.models.user import User
from studiofinder.models.payment import Payment, Refund
from studiofinder.models.subscription import Subscription
from studiofinder.models.stripe_event import StripeWebhookEvent
from studiofinder.models.studio_profile import StudioProfile

# Export all for convenience
__all__ = [
    "Base", "User", "Payment", "Refund",
    "Subscription", "StripeWebhookEvent", "StudioProfile"
]
