"""Unit tests for the notification outbox and its retry/dead-letter contract."""

from datetime import timedelta

import pytest

from billing_helpers import NOW
from cwb_api.db.models import NotificationQueueEntry
from cwb_api.notifications import queue


def _enqueue(db_session, template=queue.TRIAL_ENDED, scheduled_for=NOW, tenant_id="tenant_a"):
    entry = queue.enqueue(
        db_session,
        tenant_id=tenant_id,
        destination="owner@example.test",
        template_name=template,
        template_data={"userName": "Ada"},
        scheduled_for=scheduled_for,
    )
    db_session.commit()
    return entry


def test_enqueue_batch_is_part_of_callers_transaction(db_session):
    queue.enqueue_batch(
        db_session,
        [
            queue.NotificationRequest("tenant_a", "a@example.test", queue.trial_reminder_template(7)),
            queue.NotificationRequest("tenant_a", "a@example.test", queue.trial_reminder_template(11)),
        ],
    )
    db_session.rollback()

    assert queue.list_for_tenant(db_session, "tenant_a") == []


def test_has_notification_by_status(db_session):
    entry = _enqueue(db_session)

    assert queue.has_notification(db_session, "tenant_a", queue.TRIAL_ENDED) is True
    assert queue.has_notification(db_session, "tenant_a", queue.PAYMENT_FAILED) is False
    assert queue.has_notification(db_session, "tenant_b", queue.TRIAL_ENDED) is False

    entry.status = queue.STATUS_FAILED
    db_session.commit()

    assert queue.has_notification(db_session, "tenant_a", queue.TRIAL_ENDED) is False
    assert queue.has_notification(
        db_session, "tenant_a", queue.TRIAL_ENDED, statuses=(queue.STATUS_FAILED,)
    ) is True


def test_cancel_pending_only_touches_pending_rows(db_session):
    reminder = _enqueue(db_session, template=queue.trial_reminder_template(7))
    sent = _enqueue(db_session, template=queue.trial_reminder_template(11))
    queue.mark_sent(db_session, sent.id, now=NOW)
    db_session.commit()

    canceled = queue.cancel_pending(
        db_session,
        "tenant_a",
        [queue.trial_reminder_template(7), queue.trial_reminder_template(11)],
        reason="canceled: trial converted",
    )
    db_session.commit()

    assert canceled == 1
    db_session.refresh(reminder)
    db_session.refresh(sent)
    assert reminder.status == queue.STATUS_FAILED
    assert reminder.last_error == "canceled: trial converted"
    assert sent.status == queue.STATUS_SENT


def test_claim_due_skips_future_rows(db_session):
    due = _enqueue(db_session, scheduled_for=NOW - timedelta(minutes=1))
    _enqueue(db_session, template=queue.PAYMENT_FAILED, scheduled_for=NOW + timedelta(days=7))

    claimed = queue.claim_due(db_session, now=NOW)

    assert [entry.id for entry in claimed] == [due.id]


def test_mark_sent_is_single_shot(db_session):
    entry = _enqueue(db_session)

    assert queue.mark_sent(db_session, entry.id, now=NOW) is True
    assert queue.mark_sent(db_session, entry.id, now=NOW) is False


@pytest.mark.parametrize(
    "attempts,seconds",
    [(1, 60), (2, 120), (3, 240), (6, 1920), (7, 3600), (12, 3600)],
)
def test_backoff_delay_doubles_and_caps(attempts, seconds):
    assert queue.backoff_delay(attempts) == timedelta(seconds=seconds)


def test_failed_delivery_is_rescheduled_with_backoff(db_session):
    entry = _enqueue(db_session)

    status = queue.mark_failed(db_session, entry.id, "smtp 451", now=NOW, max_attempts=3)
    db_session.commit()

    assert status == queue.STATUS_PENDING
    row = db_session.get(NotificationQueueEntry, entry.id)
    assert row.attempts == 1
    assert row.last_error == "smtp 451"
    assert queue.claim_due(db_session, now=NOW) == []
    assert [e.id for e in queue.claim_due(db_session, now=NOW + timedelta(seconds=61))] == [entry.id]


def test_dead_letter_after_max_attempts(db_session):
    entry = _enqueue(db_session)

    statuses = [
        queue.mark_failed(db_session, entry.id, "bounce", now=NOW, max_attempts=3)
        for _ in range(3)
    ]
    db_session.commit()

    assert statuses == [queue.STATUS_PENDING, queue.STATUS_PENDING, queue.STATUS_FAILED]
    assert queue.mark_failed(db_session, entry.id, "bounce", now=NOW, max_attempts=3) is None
