"""User model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from studiofinder.models.base import Base


class UserStatus:
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"


class UserRole:
    USER = "USER"
    ADMIN = "ADMIN"


class User(Base):
    """User accounts (only the columns the payment engine reads or writes)"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    display_name = Column(String(255), nullable=True)
    role = Column(String(20), default=UserRole.USER, nullable=False)
    status = Column(String(20), default=UserStatus.PENDING, nullable=False, index=True)
    email_verified = Column(Boolean, default=False, nullable=False)

    # Payment retry tracking
    payment_attempted_at = Column(DateTime(timezone=True), nullable=True)
    payment_retry_count = Column(Integer, default=0, nullable=False)

    # Signup reminder tracking, cleared when membership is granted
    day2_reminder_sent_at = Column(DateTime(timezone=True), nullable=True)
    day5_reminder_sent_at = Column(DateTime(timezone=True), nullable=True)
    failed_payment_email_sent_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    payments = relationship("Payment", back_populates="user", cascade="all, delete-orphan")
    subscriptions = relationship("Subscription", back_populates="user", cascade="all, delete-orphan")
    studio_profile = relationship("StudioProfile", back_populates="user", uselist=False, cascade="all, delete-orphan")
