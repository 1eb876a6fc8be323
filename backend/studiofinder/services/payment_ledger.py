"""Payment and refund persistence

Payments are unique per checkout session and per payment intent; creation is
"create-or-fetch" so two concurrent deliveries for the same checkout converge
on a single row.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from studiofinder.core.metrics import payments_recorded_counter
from studiofinder.models.payment import Payment, PaymentStatus, Refund, RefundStatus
from studiofinder.models.user import User, UserRole

logger = logging.getLogger(__name__)

# Provider refund status -> stored status
REFUND_STATUS_MAP = {
    "pending": RefundStatus.PENDING,
    "requires_action": RefundStatus.PENDING,
    "succeeded": RefundStatus.SUCCEEDED,
    "failed": RefundStatus.FAILED,
    "canceled": RefundStatus.CANCELLED,
}

# Only refunds in this state count toward a payment's refunded amount
MONETARY_REFUND_STATUS = RefundStatus.SUCCEEDED


def get_payment_by_session(session_id: str, db: Session) -> Optional[Payment]:
    return db.query(Payment).filter(Payment.stripe_checkout_session_id == session_id).first()


def get_payment_by_intent(payment_intent_id: str, db: Session, lock: bool = False) -> Optional[Payment]:
    query = db.query(Payment).filter(Payment.stripe_payment_intent_id == payment_intent_id)
    if lock:
        query = query.with_for_update()
    return query.first()


def record_checkout_payment(
    db: Session,
    user_id: int,
    checkout_session_id: str,
    amount: int,
    currency: str,
    payment_intent_id: Optional[str] = None,
    charge_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    status: str = PaymentStatus.SUCCEEDED,
) -> Tuple[Payment, bool]:
    """Create the Payment for a completed checkout, or return the existing one.

    A FAILED row left on the same payment intent by an earlier declined
    attempt is completed in place rather than duplicated.

    Commits on creation so the payment is durable before any membership work.

    Returns:
        (payment, created)
    """
    existing = get_payment_by_session(checkout_session_id, db)
    if existing:
        return existing, False

    if payment_intent_id:
        existing = get_payment_by_intent(payment_intent_id, db, lock=True)
        if existing:
            return _adopt_intent_payment(db, existing, checkout_session_id, amount, currency,
                                         charge_id, metadata, status)

    payment = Payment(
        user_id=user_id,
        stripe_checkout_session_id=checkout_session_id,
        stripe_payment_intent_id=payment_intent_id,
        stripe_charge_id=charge_id,
        amount=amount,
        currency=currency,
        status=status,
        refunded_amount=0,
        payment_metadata=metadata or {},
    )
    db.add(payment)
    try:
        db.commit()
    except IntegrityError:
        # Concurrent duplicate insert; fall back to the existing row
        db.rollback()
        existing = get_payment_by_session(checkout_session_id, db)
        if existing:
            logger.info(f"Payment for checkout {checkout_session_id} created concurrently; reusing {existing.id}")
            return existing, False
        if payment_intent_id:
            existing = get_payment_by_intent(payment_intent_id, db, lock=True)
            if existing:
                return _adopt_intent_payment(db, existing, checkout_session_id, amount, currency,
                                             charge_id, metadata, status)
        raise

    db.refresh(payment)
    purpose = (metadata or {}).get("purpose", "unknown")
    payments_recorded_counter.labels(purpose=purpose, status=status).inc()
    logger.info(f"Recorded payment {payment.id} for user {user_id}: {amount} {currency} ({status})")
    return payment, True


def _adopt_intent_payment(
    db: Session,
    payment: Payment,
    checkout_session_id: str,
    amount: int,
    currency: str,
    charge_id: Optional[str],
    metadata: Optional[Dict[str, Any]],
    status: str,
) -> Tuple[Payment, bool]:
    """Reuse the payment already held by a checkout's payment intent.

    Only a FAILED row with no checkout session is rewritten; anything else
    belongs to another checkout and is returned untouched.
    """
    if payment.status != PaymentStatus.FAILED or payment.stripe_checkout_session_id:
        db.rollback()
        logger.info(f"Payment {payment.id} already holds intent {payment.stripe_payment_intent_id}; reusing it")
        return payment, False

    payment.stripe_checkout_session_id = checkout_session_id
    payment.stripe_charge_id = charge_id or payment.stripe_charge_id
    payment.amount = amount
    payment.currency = currency
    payment.status = status
    payment.payment_metadata = {**(payment.payment_metadata or {}), **(metadata or {})}
    db.commit()
    db.refresh(payment)

    purpose = (metadata or {}).get("purpose", "unknown")
    payments_recorded_counter.labels(purpose=purpose, status=status).inc()
    logger.info(f"Payment {payment.id} for intent {payment.stripe_payment_intent_id} completed by checkout "
                f"{checkout_session_id}: FAILED -> {status}")
    return payment, True


def record_failed_payment(
    db: Session,
    user: User,
    payment_intent_id: str,
    amount: int,
    currency: str,
    error_code: Optional[str],
    error_message: Optional[str],
    metadata: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Tuple[Payment, bool]:
    """Mark the intent's payment FAILED, or create a FAILED payment and bump the retry count.

    Returns:
        (payment, created)
    """
    now = now or datetime.now(timezone.utc)
    existing = get_payment_by_intent(payment_intent_id, db, lock=True)
    if existing:
        existing.status = PaymentStatus.FAILED
        db.commit()
        logger.info(f"Payment {existing.id} for intent {payment_intent_id} marked FAILED")
        return existing, False

    payment = Payment(
        user_id=user.id,
        stripe_payment_intent_id=payment_intent_id,
        amount=amount,
        currency=currency,
        status=PaymentStatus.FAILED,
        refunded_amount=0,
        payment_metadata={
            **(metadata or {}),
            "error_code": error_code,
            "error_message": error_message,
        },
    )
    db.add(payment)

    locked_user = db.query(User).filter(User.id == user.id).with_for_update().first()
    locked_user.payment_retry_count = (locked_user.payment_retry_count or 0) + 1
    if locked_user.payment_attempted_at is None:
        locked_user.payment_attempted_at = now

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = get_payment_by_intent(payment_intent_id, db)
        if existing:
            return existing, False
        raise

    db.refresh(payment)
    purpose = (metadata or {}).get("purpose", "unknown")
    payments_recorded_counter.labels(purpose=purpose, status=PaymentStatus.FAILED).inc()
    return payment, True


def compute_refund_totals(amount: int, refunded_amount: int, refund_amount: int) -> Tuple[int, str, bool]:
    """Apply a refund to a payment's running total.

    Returns:
        (new_refunded_amount, new_status, is_full_refund)
    """
    new_refunded = min((refunded_amount or 0) + max(refund_amount, 0), amount)
    is_full = new_refunded >= amount
    if is_full:
        status = PaymentStatus.REFUNDED
    elif new_refunded > 0:
        status = PaymentStatus.PARTIALLY_REFUNDED
    else:
        status = PaymentStatus.SUCCEEDED
    return new_refunded, status, is_full


def get_payment_for_refund(refund: Refund, db: Session, lock: bool = False) -> Optional[Payment]:
    query = db.query(Payment).filter(Payment.id == refund.payment_id)
    if lock:
        query = query.with_for_update()
    return query.first()


def settle_refunds(payment: Payment, db: Session) -> Tuple[bool, bool]:
    """Recompute the payment's refunded amount from its succeeded refunds.

    Pending, failed and cancelled refunds never count, so a refund that later
    fails leaves no money on the payment.

    Returns:
        (is_full_refund, was_full_refund)
    """
    db.flush()
    was_full = payment.status == PaymentStatus.REFUNDED
    total = db.query(func.coalesce(func.sum(Refund.amount), 0)).filter(
        Refund.payment_id == payment.id,
        Refund.status == MONETARY_REFUND_STATUS,
    ).scalar()
    new_refunded, new_status, is_full = compute_refund_totals(payment.amount, 0, total or 0)
    payment.refunded_amount = new_refunded
    payment.status = new_status
    return is_full, was_full


def get_refund(stripe_refund_id: str, db: Session) -> Optional[Refund]:
    return db.query(Refund).filter(Refund.stripe_refund_id == stripe_refund_id).first()


def resolve_refund_processor(payment: Payment, db: Session) -> Optional[int]:
    """User to attribute a provider-initiated refund to: an admin, else the payer"""
    admin = db.query(User).filter(User.role == UserRole.ADMIN).order_by(User.id).first()
    if admin:
        return admin.id
    owner = db.query(User).filter(User.id == payment.user_id).first()
    if owner:
        return owner.id
    logger.error(f"No user available to attribute refund on payment {payment.id}; insert will fail")
    return None


def map_refund_status(provider_status: Optional[str]) -> str:
    return REFUND_STATUS_MAP.get((provider_status or "succeeded").lower(), RefundStatus.PENDING)
