"""
Unit tests for the webhook dedup gate.

Tests:
1. First delivery acquires the claim and persists the event row
2. Duplicate of a processed event → already_processed
3. Duplicate while the first delivery is in flight → already_processing
4. Failed or stale claims are reclaimed exactly once
5. Lookup key falls back to the payload hash
"""

from datetime import timedelta

from sqlalchemy import select

from billing_helpers import NOW
from cwb_api.billing.webhook_dedup import (
    ACQUIRED,
    ALREADY_PROCESSED,
    ALREADY_PROCESSING,
    RECLAIMED,
    SOURCE_STRIPE,
    event_key,
    mark_event_failed,
    mark_event_processed,
    try_acquire_event,
)
from cwb_api.db.models import WebhookEvent

STALE_AFTER = 300


def _acquire(db_session, event_id="evt_1", now=NOW):
    return try_acquire_event(
        db_session,
        source=SOURCE_STRIPE,
        external_event_id=event_id,
        event_type="customer.subscription.updated",
        payload={"id": event_id},
        payload_hash="abc123",
        now=now,
        stale_after_seconds=STALE_AFTER,
    )


def _row(db_session, event_id="evt_1") -> WebhookEvent:
    db_session.expire_all()
    return db_session.execute(
        select(WebhookEvent).where(WebhookEvent.external_event_id == event_id)
    ).scalar_one()


def test_first_delivery_acquires(db_session):
    claim = _acquire(db_session)

    assert claim.outcome == ACQUIRED
    assert claim.acquired is True
    row = _row(db_session)
    assert row.processed is False
    assert row.attempts == 1
    assert row.payload_hash == "abc123"


def test_duplicate_of_processed_event(db_session):
    claim = _acquire(db_session)
    mark_event_processed(db_session, claim.record_id, NOW)
    db_session.commit()

    duplicate = _acquire(db_session, now=NOW + timedelta(minutes=1))

    assert duplicate.outcome == ALREADY_PROCESSED
    assert duplicate.acquired is False
    assert duplicate.record_id == claim.record_id


def test_duplicate_while_in_flight(db_session):
    _acquire(db_session)

    duplicate = _acquire(db_session, now=NOW + timedelta(seconds=5))

    assert duplicate.outcome == ALREADY_PROCESSING
    assert _row(db_session).attempts == 1


def test_failed_event_is_reclaimed_on_redelivery(db_session):
    claim = _acquire(db_session)
    mark_event_failed(db_session, claim.record_id, "boom", NOW)
    db_session.commit()

    assert _row(db_session).error == "boom"

    retry = _acquire(db_session, now=NOW + timedelta(seconds=30))

    assert retry.outcome == RECLAIMED
    row = _row(db_session)
    assert row.error is None
    assert row.processed_at is None
    assert row.attempts == 2

    # The reclaimed row is in flight again
    assert _acquire(db_session, now=NOW + timedelta(seconds=31)).outcome == ALREADY_PROCESSING


def test_stale_claim_is_reclaimed(db_session):
    _acquire(db_session)

    retry = _acquire(db_session, now=NOW + timedelta(seconds=STALE_AFTER + 1))

    assert retry.outcome == RECLAIMED


def test_failed_error_is_truncated(db_session):
    claim = _acquire(db_session)
    mark_event_failed(db_session, claim.record_id, "x" * 5000, NOW)
    db_session.commit()

    assert len(_row(db_session).error) == 1000


def test_event_key_prefers_event_id():
    assert event_key({"id": "evt_9"}, "deadbeef") == "evt_9"
    assert event_key({"type": "ping"}, "deadbeef") == "hash_deadbeef"
    assert event_key(["not", "a", "dict"], "deadbeef") == "hash_deadbeef"
