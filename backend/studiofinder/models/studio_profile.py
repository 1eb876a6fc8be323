"""StudioProfile model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from studiofinder.models.base import Base


class StudioStatus:
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class StudioProfile(Base):
    """Public studio listing. The payment engine only toggles status and featured flags."""
    __tablename__ = "studio_profiles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    status = Column(String(20), default=StudioStatus.INACTIVE, nullable=False)
    is_featured = Column(Boolean, default=False, nullable=False)
    featured_until = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationship
    user = relationship("User", back_populates="studio_profile")
