"""Idempotency ledger tests"""
import pytest
from datetime import datetime, timezone, timedelta

from studiofinder.models.stripe_event import StripeWebhookEvent
from studiofinder.services import event_ledger

NOW = datetime(2026, 5, 1, 10, 0, tzinfo=timezone.utc)


@pytest.mark.critical
class TestAdmission:
    """Insert-first admission keyed by provider event id"""

    def test_first_delivery_is_admitted(self, db_session):
        admission = event_ledger.admit("evt_1", "charge.refunded", {"id": "evt_1"}, db_session, now=NOW)

        assert admission.admitted
        assert admission.retry is False
        record = event_ledger.get_event("evt_1", db_session)
        assert record.processed is False
        assert record.attempts == 1

    def test_second_delivery_while_in_flight_is_rejected(self, db_session):
        event_ledger.admit("evt_1", "charge.refunded", {}, db_session, now=NOW)

        admission = event_ledger.admit("evt_1", "charge.refunded", {}, db_session, now=NOW + timedelta(seconds=5))

        assert not admission.admitted
        assert admission.status == event_ledger.ALREADY_PROCESSED
        assert db_session.query(StripeWebhookEvent).count() == 1

    def test_processed_event_is_never_readmitted(self, db_session):
        event_ledger.admit("evt_1", "charge.refunded", {}, db_session, now=NOW)
        event_ledger.mark_processed("evt_1", db_session, success=True)

        much_later = NOW + timedelta(days=3)
        admission = event_ledger.admit("evt_1", "charge.refunded", {}, db_session, now=much_later)

        assert not admission.admitted

    def test_failed_event_is_readmitted_on_redelivery(self, db_session):
        event_ledger.admit("evt_1", "checkout.session.completed", {}, db_session, now=NOW)
        event_ledger.mark_processed("evt_1", db_session, success=False, error="MalformedEventError: boom")

        admission = event_ledger.admit("evt_1", "checkout.session.completed", {}, db_session,
                                       now=NOW + timedelta(minutes=1))

        assert admission.admitted
        assert admission.retry is True
        db_session.refresh(admission.record)
        assert admission.record.attempts == 2
        assert admission.record.error is None

    def test_stale_claim_is_readmitted(self, db_session):
        event_ledger.admit("evt_1", "charge.failed", {}, db_session, now=NOW)

        # No outcome recorded: the first attempt crashed mid-flight
        admission = event_ledger.admit("evt_1", "charge.failed", {}, db_session, now=NOW + timedelta(hours=1))

        assert admission.admitted
        assert admission.retry is True

    def test_only_one_redelivery_wins_a_failed_claim(self, db_session):
        event_ledger.admit("evt_1", "charge.failed", {}, db_session, now=NOW)
        event_ledger.mark_processed("evt_1", db_session, success=False, error="boom")

        first = event_ledger.admit("evt_1", "charge.failed", {}, db_session, now=NOW + timedelta(minutes=1))
        second = event_ledger.admit("evt_1", "charge.failed", {}, db_session, now=NOW + timedelta(minutes=1))

        assert first.admitted
        assert not second.admitted


@pytest.mark.high
class TestOutcome:
    """Recording the result of handling"""

    def test_mark_processed_failure_keeps_error(self, db_session):
        event_ledger.admit("evt_1", "charge.refunded", {}, db_session, now=NOW)

        event_ledger.mark_processed("evt_1", db_session, success=False, error="ValueError: bad")

        record = event_ledger.get_event("evt_1", db_session)
        assert record.processed is False
        assert record.error == "ValueError: bad"
        assert record.processed_at is not None

    def test_mark_processed_unknown_event_is_noop(self, db_session):
        event_ledger.mark_processed("evt_missing", db_session, success=True)
        assert event_ledger.get_event("evt_missing", db_session) is None

    def test_list_recent_events_newest_first(self, db_session):
        for i in range(3):
            event_ledger.admit(f"evt_{i}", "charge.refunded", {}, db_session, now=NOW + timedelta(minutes=i))
        event_ledger.mark_processed("evt_1", db_session, success=False, error="boom")

        recent = event_ledger.list_recent_events(db_session, limit=2)
        failed = event_ledger.list_recent_events(db_session, failed_only=True)

        assert [e.provider_event_id for e in recent] == ["evt_2", "evt_1"]
        assert [e.provider_event_id for e in failed] == ["evt_1"]
