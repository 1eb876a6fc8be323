"""Commands issued to the studio profile listing

The profile itself is owned elsewhere; the payment engine only mirrors
membership outcomes onto its status and featured flags. Functions here do not
commit; callers include them in their own transaction.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from studiofinder.models.studio_profile import StudioProfile, StudioStatus
from studiofinder.services.expiry import add_months, as_utc

logger = logging.getLogger(__name__)


def get_studio_for_user(user_id: int, db: Session, lock: bool = False) -> Optional[StudioProfile]:
    query = db.query(StudioProfile).filter(StudioProfile.user_id == user_id)
    if lock:
        query = query.with_for_update()
    return query.first()


def activate_studio_if_inactive(user_id: int, db: Session) -> bool:
    """Set the user's studio ACTIVE if it exists and is not already. Returns True if changed."""
    studio = get_studio_for_user(user_id, db)
    if not studio:
        return False
    if studio.status == StudioStatus.ACTIVE:
        return False
    studio.status = StudioStatus.ACTIVE
    logger.info(f"Studio {studio.id} for user {user_id} set ACTIVE")
    return True


def set_studio_status(user_id: int, status: str, db: Session) -> bool:
    """Set the user's studio status. Returns False when the user has no studio."""
    studio = get_studio_for_user(user_id, db)
    if not studio:
        logger.info(f"User {user_id} has no studio profile; status {status} not applied")
        return False
    studio.status = status
    logger.info(f"Studio {studio.id} for user {user_id} set {status}")
    return True


def count_featured_studios(db: Session, now: datetime) -> int:
    return db.query(StudioProfile).filter(
        StudioProfile.is_featured.is_(True),
        or_(StudioProfile.featured_until.is_(None), StudioProfile.featured_until >= now)
    ).count()


def extend_featured(studio: StudioProfile, months: int, now: Optional[datetime] = None) -> datetime:
    """Feature a studio for `months`, stacking on any unexpired featured period

    Caller must hold the studio row lock (get_studio_for_user(lock=True)).
    """
    now = as_utc(now) or datetime.now(timezone.utc)
    current_until = as_utc(studio.featured_until)
    base = current_until if studio.is_featured and current_until and current_until > now else now
    studio.is_featured = True
    studio.featured_until = add_months(base, months)
    return studio.featured_until


def clear_featured(studio: StudioProfile, now: Optional[datetime] = None):
    studio.is_featured = False
    studio.featured_until = as_utc(now) or datetime.now(timezone.utc)
