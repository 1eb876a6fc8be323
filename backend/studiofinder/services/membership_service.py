"""Membership lifecycle: grant, renew and refund-driven cancellation

Each public operation is a single transaction: the user's status, the
membership row and the studio command are committed together or not at all.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from studiofinder.core.errors import MembershipInvariantError
from studiofinder.core.metrics import membership_transitions_counter
from studiofinder.models.payment import Payment
from studiofinder.models.studio_profile import StudioStatus
from studiofinder.models.subscription import MembershipStatus, Subscription
from studiofinder.models.user import User, UserStatus
from studiofinder.services import studio_service
from studiofinder.services.expiry import add_months, as_utc, calculate_renewal_expiry

logger = logging.getLogger(__name__)


def get_latest_membership(user_id: int, db: Session, lock: bool = False) -> Optional[Subscription]:
    """Most recently created membership row (the authoritative one)"""
    query = db.query(Subscription).filter(Subscription.user_id == user_id).order_by(
        Subscription.created_at.desc(), Subscription.id.desc()
    )
    if lock:
        query = query.with_for_update()
    return query.first()


def get_active_membership(user_id: int, db: Session, lock: bool = False) -> Optional[Subscription]:
    query = db.query(Subscription).filter(
        Subscription.user_id == user_id,
        Subscription.status == MembershipStatus.ACTIVE
    ).order_by(Subscription.created_at.desc(), Subscription.id.desc())
    if lock:
        query = query.with_for_update()
    return query.first()


def _activate_user(user: User):
    """PENDING -> ACTIVE and reset signup/payment reminder tracking"""
    user.status = UserStatus.ACTIVE
    user.payment_attempted_at = None
    user.payment_retry_count = 0
    user.day2_reminder_sent_at = None
    user.day5_reminder_sent_at = None
    user.failed_payment_email_sent_at = None


def mark_payment_applied(payment: Payment, membership: Subscription, db: Session, now: datetime):
    """Stamp the payment with the membership it produced, in the same transaction

    A replay of the same checkout then sees the stamp and leaves membership alone.
    """
    db.flush()
    payment.payment_metadata = {
        **(payment.payment_metadata or {}),
        "membership_applied_at": now.isoformat(),
        "membership_id": membership.id,
    }


def membership_already_applied(payment: Payment) -> bool:
    return bool((payment.payment_metadata or {}).get("membership_applied_at"))


def _lock_user(user_id: int, db: Session) -> User:
    user = db.query(User).filter(User.id == user_id).with_for_update().first()
    if not user:
        raise ValueError(f"User {user_id} not found")
    return user


def grant_membership(
    user_id: int,
    duration_months: int,
    db: Session,
    payment_method: str = "STRIPE",
    payment: Optional[Payment] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    """Activate the user and create a membership running `duration_months` from now"""
    now = now or datetime.now(timezone.utc)
    try:
        user = _lock_user(user_id, db)
        _activate_user(user)

        membership = Subscription(
            user_id=user_id,
            status=MembershipStatus.ACTIVE,
            payment_method=payment_method,
            current_period_start=now,
            current_period_end=add_months(now, duration_months),
            created_at=now,
        )
        db.add(membership)
        if payment is not None:
            mark_payment_applied(payment, membership, db, now)
        studio_service.activate_studio_if_inactive(user_id, db)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(membership)
    membership_transitions_counter.labels(transition="grant").inc()
    logger.info(
        f"Granted {duration_months}-month membership to user {user_id}, "
        f"expires {membership.current_period_end.isoformat()}"
    )
    return membership


def renew_membership(
    user_id: int,
    renewal_type: str,
    db: Session,
    current_expiry_hint: Optional[datetime] = None,
    payment_method: str = "STRIPE",
    payment: Optional[Payment] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    """Extend the user's membership according to the renewal kind

    The current expiry is taken from the hint carried in checkout metadata,
    falling back to the newest membership row. The latest row is updated in
    place (its end date only ever moves forward); a row is created when the
    user has none.

    Raises:
        MissingExpiryError: early/standard renewal with no known expiry
    """
    now = now or datetime.now(timezone.utc)
    try:
        user = _lock_user(user_id, db)
        membership = get_latest_membership(user_id, db, lock=True)

        current_expiry = as_utc(current_expiry_hint)
        if current_expiry is None and membership is not None:
            current_expiry = as_utc(membership.current_period_end)

        new_expiry = calculate_renewal_expiry(renewal_type, current_expiry, user_id=user_id, now=now)

        _activate_user(user)
        if membership is None:
            membership = Subscription(
                user_id=user_id,
                status=MembershipStatus.ACTIVE,
                payment_method=payment_method,
                current_period_start=now,
                current_period_end=new_expiry,
                created_at=now,
            )
            db.add(membership)
        else:
            existing_end = as_utc(membership.current_period_end)
            if existing_end and existing_end > new_expiry:
                logger.warning(
                    f"Renewal for user {user_id} computed {new_expiry.isoformat()} before current "
                    f"end {existing_end.isoformat()}; keeping current end"
                )
                new_expiry = existing_end
            membership.status = MembershipStatus.ACTIVE
            membership.cancelled_at = None
            membership.current_period_end = new_expiry

        if payment is not None:
            mark_payment_applied(payment, membership, db, now)
        studio_service.activate_studio_if_inactive(user_id, db)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(membership)
    membership_transitions_counter.labels(transition="renew").inc()
    logger.info(f"Renewed membership for user {user_id} ({renewal_type}), expires {new_expiry.isoformat()}")
    return membership


def cancel_membership_for_refund(user_id: int, db: Session, now: Optional[datetime] = None) -> Optional[Subscription]:
    """End the active membership immediately and deactivate the studio listing

    Does not commit; runs inside the refund transaction.
    """
    now = now or datetime.now(timezone.utc)
    membership = get_active_membership(user_id, db, lock=True)
    if membership:
        membership.status = MembershipStatus.CANCELLED
        membership.cancelled_at = now
        membership.current_period_end = now
        membership_transitions_counter.labels(transition="cancel").inc()
        logger.info(f"Cancelled membership {membership.id} for user {user_id} after full refund")
    else:
        logger.warning(f"Full refund for user {user_id} but no active membership found")

    studio_service.set_studio_status(user_id, StudioStatus.INACTIVE, db)
    return membership


def require_current_membership(user_id: int, db: Session) -> Subscription:
    """Authoritative membership after a grant/renew; its absence is an invariant violation"""
    membership = get_latest_membership(user_id, db)
    if membership is None or membership.status != MembershipStatus.ACTIVE:
        raise MembershipInvariantError(f"No active membership for user {user_id} after successful write")
    return membership
