"""Stripe API access: webhook verification and read-only lookups"""
import json
import logging
import stripe
from typing import Any, Dict, Optional

from studiofinder.core.config import settings
from studiofinder.core.errors import VerificationError, WebhookConfigurationError
from studiofinder.schemas.events import IncomingEvent

logger = logging.getLogger(__name__)

# Configure Stripe
stripe.api_key = settings.STRIPE_SECRET_KEY


# ============================================================================
# STRIPE OBJECT ACCESS HELPER
# ============================================================================

def _get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key, default)
        return default if value is None else value
    # Stripe objects
    try:
        value = obj[key]
    except (KeyError, TypeError, AttributeError):
        value = getattr(obj, key, None)
    return default if value is None else value


def _get_id(obj: Any) -> Optional[str]:
    """Stripe fields are either an ID string or an expanded object"""
    if obj is None or isinstance(obj, str):
        return obj
    return _get_stripe_value(obj, 'id')


# ============================================================================
# WEBHOOK INGRESS
# ============================================================================

def construct_incoming_event(payload: bytes, sig_header: Optional[str]) -> IncomingEvent:
    """Authenticate a raw callback and parse it into an IncomingEvent

    Raises:
        WebhookConfigurationError: webhook secret not configured
        VerificationError: missing/invalid signature or unparsable payload
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("Webhook secret not configured")
        raise WebhookConfigurationError("Webhook secret not configured")

    if not sig_header:
        raise VerificationError("Missing stripe-signature header")

    try:
        stripe.Webhook.construct_event(
            payload, sig_header, settings.STRIPE_WEBHOOK_SECRET,
            tolerance=settings.STRIPE_WEBHOOK_TOLERANCE
        )
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise VerificationError("Invalid payload") from e
    except stripe.SignatureVerificationError as e:
        logger.error(f"Invalid webhook signature: {e}")
        raise VerificationError("Invalid signature") from e

    # Signature is valid; parse the body ourselves so handlers see plain dicts
    try:
        raw = json.loads(payload)
    except (TypeError, ValueError) as e:
        raise VerificationError("Invalid payload") from e

    event_id = raw.get("id")
    event_type = raw.get("type")
    data_object = (raw.get("data") or {}).get("object")
    if not event_id or not event_type or not isinstance(data_object, dict):
        raise VerificationError("Event is missing id, type or data.object")

    metadata = data_object.get("metadata") or {}
    return IncomingEvent(
        provider_event_id=event_id,
        type=event_type,
        purpose=metadata.get("purpose") or None,
        payload=data_object,
        raw=raw,
    )


# ============================================================================
# READ-ONLY LOOKUPS
# ============================================================================

def expand_checkout_session(session_id: str) -> Any:
    """Retrieve a checkout session with payment intent and discount breakdown expanded"""
    return stripe.checkout.Session.retrieve(
        session_id,
        expand=['payment_intent', 'payment_intent.latest_charge', 'total_details.breakdown']
    )


def retrieve_coupon(coupon_id: str) -> Any:
    return stripe.Coupon.retrieve(coupon_id)


def retrieve_customer(customer_id: str) -> Any:
    return stripe.Customer.retrieve(customer_id)


def get_session_coupon_ids(session: Any) -> list:
    """Coupon IDs applied to a checkout session (from the expanded discount breakdown)"""
    coupon_ids = []
    total_details = _get_stripe_value(session, 'total_details', {})
    breakdown = _get_stripe_value(total_details, 'breakdown', {})
    for entry in _get_stripe_value(breakdown, 'discounts', []) or []:
        discount = _get_stripe_value(entry, 'discount', {})
        coupon = _get_stripe_value(discount, 'coupon')
        if coupon is None:
            # Newer API versions nest the coupon under discount.source
            coupon = _get_stripe_value(_get_stripe_value(discount, 'source', {}), 'coupon')
        coupon_id = _get_id(coupon)
        if coupon_id:
            coupon_ids.append(coupon_id)
    return coupon_ids


def get_coupon_metadata(session: Any, metadata: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Metadata of the first coupon applied to a checkout, or None

    Only consulted when the checkout indicates a discount was applied; lookup
    failures are logged and treated as "no override".
    """
    coupon_ids = get_session_coupon_ids(session)
    coupon_hint = metadata.get('coupon_id') or metadata.get('coupon')
    if coupon_hint and coupon_hint not in coupon_ids:
        coupon_ids.append(coupon_hint)
    if not coupon_ids:
        return None

    try:
        coupon = retrieve_coupon(coupon_ids[0])
    except stripe.StripeError as e:
        logger.warning(f"Could not retrieve coupon {coupon_ids[0]}: {e}")
        return None
    coupon_metadata = _get_stripe_value(coupon, 'metadata', {}) or {}
    if not isinstance(coupon_metadata, dict):
        coupon_metadata = dict(coupon_metadata)
    return coupon_metadata


def lookup_customer_email(customer_id: Optional[str]) -> Optional[str]:
    if not customer_id:
        return None
    try:
        customer = retrieve_customer(customer_id)
    except stripe.StripeError as e:
        logger.warning(f"Could not retrieve customer {customer_id}: {e}")
        return None
    return _get_stripe_value(customer, 'email')


def list_charge_refunds(charge_id: str) -> list:
    """Refunds of a charge, for charge.refunded payloads that omit the embedded list"""
    refunds = stripe.Refund.list(charge=charge_id, limit=100)
    return list(_get_stripe_value(refunds, 'data', []) or [])
