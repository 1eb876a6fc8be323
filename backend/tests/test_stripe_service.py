"""Stripe client wrapper tests"""
import json
import pytest
import stripe
from unittest.mock import patch

from conftest import build_event, sign_payload, signed_request
from studiofinder.core.config import settings
from studiofinder.core.errors import VerificationError, WebhookConfigurationError
from studiofinder.services import stripe_service


@pytest.mark.critical
class TestConstructIncomingEvent:
    """Signature verification and event parsing"""

    def test_valid_event_parsed(self):
        obj = {"id": "cs_1", "object": "checkout.session", "metadata": {"purpose": "featured_upgrade"}}
        payload, sig = signed_request(build_event("checkout.session.completed", obj, event_id="evt_1"))

        event = stripe_service.construct_incoming_event(payload, sig)

        assert event.provider_event_id == "evt_1"
        assert event.type == "checkout.session.completed"
        assert event.purpose == "featured_upgrade"
        assert event.payload == obj
        assert event.event_type.value == "checkout.session.completed"

    def test_unrecognised_type_still_parsed(self):
        payload, sig = signed_request(build_event("invoice.paid", {"id": "in_1"}))
        event = stripe_service.construct_incoming_event(payload, sig)
        assert event.event_type is None
        assert event.purpose is None

    def test_missing_secret_is_configuration_error(self):
        payload, sig = signed_request(build_event("invoice.paid", {"id": "in_1"}))
        with patch.object(settings, "STRIPE_WEBHOOK_SECRET", ""):
            with pytest.raises(WebhookConfigurationError):
                stripe_service.construct_incoming_event(payload, sig)

    def test_missing_header(self):
        with pytest.raises(VerificationError):
            stripe_service.construct_incoming_event(b"{}", None)

    def test_tampered_payload(self):
        event = build_event("invoice.paid", {"id": "in_1"})
        payload = json.dumps(event)
        sig = sign_payload(payload)
        tampered = payload.replace("in_1", "in_2").encode("utf-8")

        with pytest.raises(VerificationError):
            stripe_service.construct_incoming_event(tampered, sig)


@pytest.mark.high
class TestCouponLookup:
    """Coupon ids from the expanded discount breakdown"""

    def test_coupon_ids_from_both_breakdown_shapes(self):
        session = {"total_details": {"breakdown": {"discounts": [
            {"discount": {"coupon": {"id": "LEGACY"}}},
            {"discount": {"source": {"coupon": "NEWER"}}},
        ]}}}
        assert stripe_service.get_session_coupon_ids(session) == ["LEGACY", "NEWER"]

    def test_no_discount_means_no_lookup(self, auto_mock_stripe):
        assert stripe_service.get_coupon_metadata({"total_details": {}}, {}) is None
        auto_mock_stripe.coupon_retrieve.assert_not_called()

    def test_metadata_hint_used_when_breakdown_empty(self, auto_mock_stripe):
        auto_mock_stripe.coupon_retrieve.return_value = {"id": "HINT", "metadata": {"duration_months": "6"}}

        metadata = stripe_service.get_coupon_metadata({}, {"coupon_id": "HINT"})

        assert metadata == {"duration_months": "6"}
        auto_mock_stripe.coupon_retrieve.assert_called_once_with("HINT")

    def test_customer_lookup_failure_returns_none(self, auto_mock_stripe):
        auto_mock_stripe.customer_retrieve.side_effect = stripe.APIConnectionError("network down")
        assert stripe_service.lookup_customer_email("cus_1") is None

    def test_get_id_accepts_expanded_objects(self):
        assert stripe_service._get_id("pi_1") == "pi_1"
        assert stripe_service._get_id({"id": "pi_2"}) == "pi_2"
        assert stripe_service._get_id(None) is None
