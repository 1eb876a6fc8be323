"""Subscription (membership) model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from studiofinder.models.base import Base


class MembershipStatus:
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"


class Subscription(Base):
    """Membership period. A user may have several rows; the newest one is authoritative."""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(20), nullable=False)  # 'ACTIVE', 'CANCELLED'
    payment_method = Column(String(20), nullable=False, default="STRIPE")
    stripe_subscription_id = Column(String(255), unique=True, nullable=True)
    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationship
    user = relationship("User", back_populates="subscriptions")

    __table_args__ = (
        Index('ix_subscriptions_user_created', 'user_id', 'created_at'),
    )
