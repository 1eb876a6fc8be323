"""Handlers for verified Stripe webhook events

Handlers follow one shape: provider lookups first (no open transaction),
then durable payment bookkeeping, then membership/studio changes, then a
best-effort notification. An error from the membership step is held until the
notification has been attempted and is re-raised afterwards so the ledger
records the failure and the provider redelivers.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError

from studiofinder.core.config import settings
from studiofinder.core.errors import MalformedEventError
from studiofinder.core.metrics import refunds_processed_counter
from studiofinder.models.payment import Payment, Refund
from studiofinder.models.user import User
from studiofinder.schemas.events import Purpose
from studiofinder.services import (
    email_service, membership_service, payment_ledger, stripe_service, studio_service
)
from studiofinder.services.expiry import RENEWAL_EARLY, RENEWAL_FIVE_YEAR, RENEWAL_STANDARD, parse_expiry
from studiofinder.services.stripe_service import _get_id, _get_stripe_value
from studiofinder.services.webhook_context import WebhookContext

STATUS_SUCCESS = "success"
STATUS_IGNORED = "ignored"

PLAN_NAMES = {
    RENEWAL_EARLY: "Membership renewal (early, +30 days bonus)",
    RENEWAL_STANDARD: "Membership renewal (1 year)",
    RENEWAL_FIVE_YEAR: "Membership renewal (5 years)",
}


@dataclass
class CheckoutDetails:
    """Everything a checkout handler needs, gathered before touching the database"""
    session_id: str
    metadata: Dict[str, Any]
    amount: int
    currency: str
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    customer_email: Optional[str] = None
    coupon_metadata: Optional[Dict[str, Any]] = None
    zero_amount: bool = False


@dataclass
class HandlerOutcome:
    """Two-phase result: side effects recorded so far plus the error to raise last"""
    primary_error: Optional[Exception] = None

    def raise_if_failed(self):
        if self.primary_error is not None:
            raise self.primary_error


# ============================================================================
# CHECKOUT
# ============================================================================

def handle_checkout_session_completed(ctx: WebhookContext) -> str:
    session = ctx.event.payload
    mode = session.get("mode")
    if mode != "payment":
        # Subscription-mode checkouts belong to the legacy auto-renew flow
        ctx.log.info(f"Ignoring checkout session {session.get('id')} in mode '{mode}'")
        return STATUS_IGNORED

    if ctx.event.purpose == Purpose.FEATURED_UPGRADE.value:
        return handle_featured_upgrade(ctx)
    return handle_membership_payment(ctx)


def _checkout_has_discount(session: Dict[str, Any], metadata: Dict[str, Any]) -> bool:
    total_details = session.get("total_details") or {}
    return bool(
        (total_details.get("amount_discount") or 0) > 0
        or session.get("discounts")
        or metadata.get("coupon_id")
        or metadata.get("coupon")
    )


def collect_checkout_details(ctx: WebhookContext) -> CheckoutDetails:
    """Resolve intent, charge, coupon and customer details from the provider

    Runs before any database work so no lock or transaction is held across
    the provider round-trips.
    """
    session = ctx.event.payload
    session_id = session.get("id")
    if not session_id:
        raise MalformedEventError("checkout.session.completed without a session id")

    metadata = dict(session.get("metadata") or {})
    amount = session.get("amount_total") or 0
    details = CheckoutDetails(
        session_id=session_id,
        metadata=metadata,
        amount=amount,
        currency=(session.get("currency") or "gbp").lower(),
        customer_email=(session.get("customer_details") or {}).get("email") or session.get("customer_email"),
    )

    has_intent = bool(session.get("payment_intent"))
    has_discount = _checkout_has_discount(session, metadata)
    details.zero_amount = amount == 0 and not has_intent

    if has_intent or has_discount:
        expanded = stripe_service.expand_checkout_session(session_id)
        if has_intent:
            payment_intent = _get_stripe_value(expanded, "payment_intent") or session.get("payment_intent")
            details.payment_intent_id = _get_id(payment_intent)
            details.charge_id = _get_id(_get_stripe_value(payment_intent, "latest_charge")) \
                if not isinstance(payment_intent, str) else None
        if has_discount:
            details.coupon_metadata = stripe_service.get_coupon_metadata(expanded, metadata)

    if not metadata.get("user_id") and not details.customer_email:
        details.customer_email = stripe_service.lookup_customer_email(_get_id(session.get("customer")))

    return details


def resolve_grant_duration(coupon_metadata: Optional[Dict[str, Any]], log=None) -> int:
    """Membership length in months: coupon override within bounds, else the default"""
    default = settings.MEMBERSHIP_DEFAULT_MONTHS
    if not coupon_metadata:
        return default
    raw = coupon_metadata.get("duration_months", coupon_metadata.get("membership_duration_months"))
    if raw is None:
        return default
    text = str(raw).strip()
    if not text.isdigit():
        if log:
            log.warning(f"Ignoring non-numeric coupon duration {raw!r}; using {default} months")
        return default
    months = int(text)
    if not settings.MEMBERSHIP_MIN_COUPON_MONTHS <= months <= settings.MEMBERSHIP_MAX_COUPON_MONTHS:
        if log:
            log.warning(f"Ignoring out-of-range coupon duration {months}; using {default} months")
        return default
    return months


def _resolve_user(ctx: WebhookContext, details: CheckoutDetails) -> Optional[User]:
    user_id = details.metadata.get("user_id")
    if user_id:
        try:
            return ctx.db.query(User).filter(User.id == int(user_id)).first()
        except (TypeError, ValueError):
            raise MalformedEventError(f"Invalid user_id in checkout metadata: {user_id!r}")
    if details.customer_email:
        return ctx.db.query(User).filter(User.email == details.customer_email.lower()).first()
    raise MalformedEventError(f"Checkout {details.session_id} carries no user_id or customer email")


def _record_checkout_payment(ctx: WebhookContext, details: CheckoutDetails, user: User,
                             purpose: str, extra_metadata: Dict[str, Any]) -> Payment:
    metadata = {
        "purpose": purpose,
        "user_email": details.metadata.get("user_email") or user.email,
        "zero_amount": details.zero_amount,
        **extra_metadata,
    }
    payment, created = payment_ledger.record_checkout_payment(
        ctx.db,
        user_id=user.id,
        checkout_session_id=details.session_id,
        amount=details.amount,
        currency=details.currency,
        payment_intent_id=details.payment_intent_id,
        charge_id=details.charge_id,
        metadata=metadata,
    )
    if not created:
        ctx.log.info(f"Payment {payment.id} for checkout {details.session_id} already recorded")
    return payment


def handle_membership_payment(ctx: WebhookContext) -> str:
    """Membership signup or renewal paid through a payment-mode checkout"""
    details = collect_checkout_details(ctx)
    metadata = details.metadata
    purpose = metadata.get("purpose") or Purpose.MEMBERSHIP.value
    is_renewal = purpose == Purpose.MEMBERSHIP_RENEWAL.value
    renewal_type = metadata.get("renewal_type") or None
    outcome = HandlerOutcome()

    user = _resolve_user(ctx, details)
    if user is None:
        ctx.log.warning(f"No user found for checkout {details.session_id}; nothing recorded")
        return STATUS_SUCCESS

    extra: Dict[str, Any] = {}
    if is_renewal:
        extra["renewal_type"] = renewal_type
        extra["current_expiry"] = metadata.get("current_expiry")
    if details.coupon_metadata is not None:
        extra["coupon_metadata"] = details.coupon_metadata
    if not user.email_verified:
        extra["verification_bypass_detected"] = True
        extra["warning"] = "Payment succeeded for unverified email"

    payment = _record_checkout_payment(ctx, details, user, purpose, extra)

    if not user.email_verified:
        ctx.log.warning(
            f"SECURITY: payment {payment.id} succeeded for unverified user {user.id}; "
            f"membership not granted"
        )
        return STATUS_SUCCESS

    membership = None
    if membership_service.membership_already_applied(payment):
        ctx.log.info(f"Membership for payment {payment.id} already applied; skipping")
        membership = membership_service.get_latest_membership(user.id, ctx.db)
    else:
        try:
            if is_renewal:
                if not renewal_type:
                    raise MalformedEventError(
                        f"membership_renewal checkout {details.session_id} missing renewal_type"
                    )
                membership_service.renew_membership(
                    user.id, renewal_type, ctx.db,
                    current_expiry_hint=parse_expiry(metadata.get("current_expiry")),
                    payment=payment,
                    now=ctx.now,
                )
            else:
                months = resolve_grant_duration(details.coupon_metadata, ctx.log)
                membership_service.grant_membership(user.id, months, ctx.db, payment=payment, now=ctx.now)
            membership = membership_service.require_current_membership(user.id, ctx.db)
        except Exception as e:
            ctx.log.error(f"Membership update failed for user {user.id} after payment {payment.id}: {e}",
                          exc_info=True)
            outcome.primary_error = e

    plan_name = PLAN_NAMES.get(renewal_type, "Membership renewal") if is_renewal else "Annual membership"
    ctx.send_notification(user.email, email_service.TEMPLATE_PAYMENT_SUCCESS, {
        "customer_name": user.display_name or metadata.get("user_name"),
        "amount": email_service.format_amount(payment.amount),
        "currency": payment.currency,
        "invoice_number": payment.stripe_payment_intent_id or payment.stripe_checkout_session_id,
        "plan_name": plan_name,
        "next_billing_date": email_service.format_date(membership.current_period_end if membership else None),
    })

    outcome.raise_if_failed()
    return STATUS_SUCCESS


def handle_featured_upgrade(ctx: WebhookContext) -> str:
    """Featured-listing upgrade paid through a payment-mode checkout"""
    details = collect_checkout_details(ctx)
    metadata = details.metadata
    outcome = HandlerOutcome()

    if not metadata.get("user_id"):
        raise MalformedEventError(f"featured_upgrade checkout {details.session_id} missing user_id")
    user = _resolve_user(ctx, details)
    if user is None:
        ctx.log.warning(f"No user found for featured checkout {details.session_id}; nothing recorded")
        return STATUS_SUCCESS

    payment = _record_checkout_payment(ctx, details, user, Purpose.FEATURED_UPGRADE.value, {
        "studio_id": metadata.get("studio_id"),
    })

    if (payment.payment_metadata or {}).get("featured_applied_at"):
        ctx.log.info(f"Featured upgrade for payment {payment.id} already applied; skipping")
        return STATUS_SUCCESS

    db = ctx.db
    studio = None
    featured_until = None
    try:
        studio = studio_service.get_studio_for_user(user.id, db, lock=True)
        if studio is None:
            ctx.log.warning(f"User {user.id} paid for featured upgrade but has no studio profile")
            db.rollback()
            return STATUS_SUCCESS

        featured_count = studio_service.count_featured_studios(db, ctx.now)
        if not studio.is_featured and featured_count >= settings.FEATURED_MAX_SLOTS:
            ctx.log.warning(
                f"Featured slots full ({featured_count}/{settings.FEATURED_MAX_SLOTS}); "
                f"honouring paid upgrade for studio {studio.id}"
            )
        featured_until = studio_service.extend_featured(studio, settings.FEATURED_DURATION_MONTHS, ctx.now)
        payment.payment_metadata = {
            **(payment.payment_metadata or {}),
            "featured_applied_at": ctx.now.isoformat(),
            "featured_until": featured_until.isoformat(),
        }
        db.commit()
        ctx.log.info(f"Studio {studio.id} featured until {featured_until.isoformat()}")
    except Exception as e:
        db.rollback()
        ctx.log.error(f"Featured upgrade failed for user {user.id} after payment {payment.id}: {e}",
                      exc_info=True)
        outcome.primary_error = e

    ctx.send_notification(user.email, email_service.TEMPLATE_FEATURED_UPGRADE, {
        "customer_name": user.display_name or metadata.get("user_name"),
        "studio_name": studio.name if studio is not None else "Your studio",
        "featured_until": email_service.format_date(featured_until),
    })

    outcome.raise_if_failed()
    return STATUS_SUCCESS


# ============================================================================
# REFUNDS
# ============================================================================

def handle_charge_refunded(ctx: WebhookContext) -> str:
    charge = ctx.event.payload
    if charge.get("object") == "refund":
        refunds = [charge]
        fallback_intent = None
    else:
        refunds = ((charge.get("refunds") or {}).get("data")) or []
        fallback_intent = _get_id(charge.get("payment_intent"))
        if not refunds and charge.get("id"):
            refunds = stripe_service.list_charge_refunds(charge["id"])

    if not refunds:
        ctx.log.warning(f"charge.refunded for {charge.get('id')} carried no refunds")
        return STATUS_SUCCESS

    for refund in refunds:
        process_refund(ctx, refund, fallback_intent=fallback_intent)
    return STATUS_SUCCESS


def handle_refund_updated(ctx: WebhookContext) -> str:
    process_refund(ctx, ctx.event.payload)
    return STATUS_SUCCESS


def process_refund(ctx: WebhookContext, refund_data: Any, fallback_intent: Optional[str] = None) -> Optional[Refund]:
    """Record one provider refund, or sync the status of one already recorded

    Only succeeded refunds move money; idempotent on the provider refund id.
    """
    db = ctx.db
    refund_id = _get_stripe_value(refund_data, "id")
    if not refund_id:
        raise MalformedEventError("Refund payload without an id")

    status = payment_ledger.map_refund_status(_get_stripe_value(refund_data, "status"))
    existing = payment_ledger.get_refund(refund_id, db)
    if existing:
        return _sync_refund_status(ctx, existing, status)

    payment_intent_id = _get_id(_get_stripe_value(refund_data, "payment_intent")) or fallback_intent
    if not payment_intent_id:
        raise MalformedEventError(f"Refund {refund_id} has no payment_intent")

    payment = payment_ledger.get_payment_by_intent(payment_intent_id, db, lock=True)
    if payment is None:
        ctx.log.warning(f"Refund {refund_id}: no payment for intent {payment_intent_id}; ignoring")
        db.rollback()
        return None

    refund_amount = _get_stripe_value(refund_data, "amount", 0) or 0
    refund = Refund(
        stripe_refund_id=refund_id,
        payment_id=payment.id,
        user_id=payment.user_id,
        amount=refund_amount,
        currency=(_get_stripe_value(refund_data, "currency") or payment.currency).lower(),
        reason=_get_stripe_value(refund_data, "reason"),
        status=status,
        processed_by=payment_ledger.resolve_refund_processor(payment, db),
        created_at=ctx.now,
    )
    db.add(refund)

    moves_money = status == payment_ledger.MONETARY_REFUND_STATUS
    is_full = False
    if moves_money:
        is_full, was_full = payment_ledger.settle_refunds(payment, db)
        if is_full and not was_full:
            _apply_full_refund(ctx, payment)
    else:
        ctx.log.info(f"Refund {refund_id} recorded as {status}; payment {payment.id} unchanged until it succeeds")

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        if payment_ledger.get_refund(refund_id, db):
            ctx.log.info(f"Refund {refund_id} recorded concurrently; skipping")
            return None
        raise

    if moves_money:
        refunds_processed_counter.labels(kind="full" if is_full else "partial").inc()
        ctx.log.info(
            f"Refund {refund_id} of {refund_amount} applied to payment {payment.id}: "
            f"refunded {payment.refunded_amount}/{payment.amount} ({payment.status})"
        )
    return refund


def _sync_refund_status(ctx: WebhookContext, refund: Refund, new_status: str) -> Optional[Refund]:
    """Move a recorded refund to its latest provider status and re-settle the payment"""
    db = ctx.db
    if refund.status == new_status:
        ctx.log.info(f"Refund {refund.stripe_refund_id} already recorded as {new_status}; skipping")
        return None

    payment = payment_ledger.get_payment_for_refund(refund, db, lock=True)
    db.refresh(refund)
    old_status = refund.status
    if old_status == new_status:
        db.rollback()
        return None

    refund.status = new_status
    counted_before = old_status == payment_ledger.MONETARY_REFUND_STATUS
    counted_after = new_status == payment_ledger.MONETARY_REFUND_STATUS
    is_full = False
    if counted_before != counted_after:
        is_full, was_full = payment_ledger.settle_refunds(payment, db)
        if is_full and not was_full:
            _apply_full_refund(ctx, payment)
        elif was_full and not is_full:
            ctx.log.warning(
                f"Refund {refund.stripe_refund_id} moved to {new_status}; payment {payment.id} is no longer "
                f"fully refunded but the earlier cancellation stands"
            )
    db.commit()

    if counted_after:
        refunds_processed_counter.labels(kind="full" if is_full else "partial").inc()
    ctx.log.info(
        f"Refund {refund.stripe_refund_id} status {old_status} -> {new_status}; payment {payment.id} "
        f"refunded {payment.refunded_amount}/{payment.amount} ({payment.status})"
    )
    return refund


def _apply_full_refund(ctx: WebhookContext, payment: Payment):
    """Undo what the payment bought: the featured listing, otherwise the membership"""
    purpose = (payment.payment_metadata or {}).get("purpose")
    if purpose == Purpose.FEATURED_UPGRADE.value:
        studio = studio_service.get_studio_for_user(payment.user_id, ctx.db, lock=True)
        if studio:
            studio_service.clear_featured(studio, ctx.now)
            ctx.log.info(f"Studio {studio.id} un-featured after full refund of payment {payment.id}")
    else:
        membership_service.cancel_membership_for_refund(payment.user_id, ctx.db, now=ctx.now)


# ============================================================================
# FAILED PAYMENTS
# ============================================================================

def handle_payment_failed(ctx: WebhookContext) -> str:
    """payment_intent.payment_failed and charge.failed"""
    obj = ctx.event.payload
    if obj.get("object") == "charge" or ctx.event.type == "charge.failed":
        payment_intent_id = _get_id(obj.get("payment_intent"))
        error_code = obj.get("failure_code")
        error_message = obj.get("failure_message")
    else:
        payment_intent_id = obj.get("id")
        last_error = obj.get("last_payment_error") or {}
        error_code = last_error.get("code")
        error_message = last_error.get("message")

    if not payment_intent_id:
        raise MalformedEventError(f"{ctx.event.type} without a payment intent id")

    db = ctx.db
    existing = payment_ledger.get_payment_by_intent(payment_intent_id, db)
    metadata = dict(obj.get("metadata") or {})
    user = None
    if existing is None:
        user_id = metadata.get("user_id")
        if user_id:
            user = db.query(User).filter(User.id == int(user_id)).first() if str(user_id).isdigit() else None
        if user is None:
            ctx.log.warning(f"Failed payment {payment_intent_id}: user {user_id!r} not found; ignoring")
            return STATUS_SUCCESS

    payment, created = payment_ledger.record_failed_payment(
        db,
        user=user,
        payment_intent_id=payment_intent_id,
        amount=obj.get("amount") or 0,
        currency=(obj.get("currency") or "gbp").lower(),
        error_code=error_code,
        error_message=error_message,
        metadata={"purpose": metadata.get("purpose") or "unknown"},
        now=ctx.now,
    )
    if created:
        ctx.log.info(f"Recorded failed payment {payment.id} for user {payment.user_id}: {error_code} {error_message}")
    return STATUS_SUCCESS
