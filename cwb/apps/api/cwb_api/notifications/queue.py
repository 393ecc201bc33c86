"""Notification outbox.

Producers (state machine handlers, trial scheduler) add rows inside their own
transaction; nothing here commits. The external delivery worker drains due
rows through claim_due / mark_sent / mark_failed, which implement the retry
and dead-letter policy:

  attempt n fails → rescheduled after min(60s * 2^(n-1), 1h)
  attempt == CWB_NOTIFICATION_MAX_ATTEMPTS fails → status 'failed' (dead letter)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from cwb_api.config.env import get_notification_max_attempts
from cwb_api.db.models import NotificationQueueEntry
from cwb_api.utils.clock import utcnow

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"

# Template identifiers
TRIAL_REMINDER_TEMPLATE = "trial_reminder_day_{day}"
TRIAL_ENDED = "trial_ended"
PAYMENT_FAILED = "payment_failed"
SUBSCRIPTION_REACTIVATED = "subscription_reactivated"

BACKOFF_BASE_SECONDS = 60
BACKOFF_MAX_SECONDS = 3600


def trial_reminder_template(day: int) -> str:
    return TRIAL_REMINDER_TEMPLATE.format(day=day)


@dataclass
class NotificationRequest:
    """One row to enqueue"""
    tenant_id: str
    destination: str
    template_name: str
    template_data: dict[str, Any] = field(default_factory=dict)
    scheduled_for: Optional[datetime] = None


def enqueue(
    session: Session,
    tenant_id: str,
    destination: str,
    template_name: str,
    template_data: Optional[dict[str, Any]] = None,
    scheduled_for: Optional[datetime] = None,
) -> NotificationQueueEntry:
    """Add one pending row to the caller's transaction.

    Callers check has_notification() first when a template must not repeat.
    """
    entry = NotificationQueueEntry(
        tenant_id=tenant_id,
        destination=destination,
        template_name=template_name,
        template_data=template_data or {},
        scheduled_for=scheduled_for or utcnow(),
        status=STATUS_PENDING,
        attempts=0,
    )
    session.add(entry)
    logger.info(
        "NOTIFICATION_ENQUEUED",
        extra={
            "tenant_id": tenant_id,
            "template_name": template_name,
            "scheduled_for": entry.scheduled_for.isoformat(),
        },
    )
    return entry


def enqueue_batch(
    session: Session, requests: Iterable[NotificationRequest]
) -> list[NotificationQueueEntry]:
    """Add several rows atomically with whatever else the caller's transaction holds."""
    return [
        enqueue(
            session,
            tenant_id=request.tenant_id,
            destination=request.destination,
            template_name=request.template_name,
            template_data=request.template_data,
            scheduled_for=request.scheduled_for,
        )
        for request in requests
    ]


def has_notification(
    session: Session,
    tenant_id: str,
    template_name: str,
    statuses: Sequence[str] = (STATUS_PENDING, STATUS_SENT),
) -> bool:
    """Is there a row for (tenant, template) in one of ``statuses``?"""
    stmt = (
        select(NotificationQueueEntry.id)
        .where(
            NotificationQueueEntry.tenant_id == tenant_id,
            NotificationQueueEntry.template_name == template_name,
            NotificationQueueEntry.status.in_(list(statuses)),
        )
        .limit(1)
    )
    return session.execute(stmt).first() is not None


def list_for_tenant(
    session: Session, tenant_id: str, template_name: Optional[str] = None
) -> list[NotificationQueueEntry]:
    stmt = select(NotificationQueueEntry).where(NotificationQueueEntry.tenant_id == tenant_id)
    if template_name is not None:
        stmt = stmt.where(NotificationQueueEntry.template_name == template_name)
    stmt = stmt.order_by(NotificationQueueEntry.scheduled_for.asc(), NotificationQueueEntry.id.asc())
    return list(session.execute(stmt).scalars().all())


def cancel_pending(
    session: Session, tenant_id: str, template_names: Sequence[str], reason: str
) -> int:
    """Mark still-pending rows for these templates as failed with ``reason``."""
    if not template_names:
        return 0
    stmt = (
        update(NotificationQueueEntry)
        .where(
            NotificationQueueEntry.tenant_id == tenant_id,
            NotificationQueueEntry.template_name.in_(list(template_names)),
            NotificationQueueEntry.status == STATUS_PENDING,
        )
        .values(status=STATUS_FAILED, last_error=reason)
        .execution_options(synchronize_session=False)
    )
    canceled = session.execute(stmt).rowcount
    if canceled:
        logger.info(
            "NOTIFICATION_CANCELED",
            extra={"tenant_id": tenant_id, "count": canceled, "reason": reason},
        )
    return canceled


# ---------------------------------------------------------------------------
# Delivery worker contract
# ---------------------------------------------------------------------------


def claim_due(
    session: Session, now: Optional[datetime] = None, limit: int = 50
) -> list[NotificationQueueEntry]:
    """Return pending rows whose scheduled_for has passed, oldest first.

    On PostgreSQL rows are locked with SKIP LOCKED so parallel workers split
    the batch; the caller commits after marking each row.
    """
    now = now or utcnow()
    stmt = (
        select(NotificationQueueEntry)
        .where(
            NotificationQueueEntry.status == STATUS_PENDING,
            NotificationQueueEntry.scheduled_for <= now,
        )
        .order_by(NotificationQueueEntry.scheduled_for.asc(), NotificationQueueEntry.id.asc())
        .limit(limit)
    )
    if session.get_bind().dialect.name == "postgresql":
        stmt = stmt.with_for_update(skip_locked=True)
    return list(session.execute(stmt).scalars().all())


def mark_sent(session: Session, entry_id: int, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    stmt = (
        update(NotificationQueueEntry)
        .where(
            NotificationQueueEntry.id == entry_id,
            NotificationQueueEntry.status == STATUS_PENDING,
        )
        .values(
            status=STATUS_SENT,
            sent_at=now,
            attempts=NotificationQueueEntry.attempts + 1,
            last_error=None,
        )
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1


def backoff_delay(attempts: int) -> timedelta:
    """Delay before the next try after ``attempts`` failed deliveries."""
    seconds = BACKOFF_BASE_SECONDS * (2 ** max(attempts - 1, 0))
    return timedelta(seconds=min(seconds, BACKOFF_MAX_SECONDS))


def mark_failed(
    session: Session,
    entry_id: int,
    error: str,
    now: Optional[datetime] = None,
    max_attempts: Optional[int] = None,
) -> Optional[str]:
    """Record a failed delivery; reschedule or dead-letter.

    Returns:
        New status ('pending' when rescheduled, 'failed' when dead-lettered),
        or None if the row was not pending.
    """
    now = now or utcnow()
    max_attempts = max_attempts or get_notification_max_attempts()

    entry = session.get(NotificationQueueEntry, entry_id)
    if entry is None or entry.status != STATUS_PENDING:
        return None

    entry.attempts += 1
    entry.last_error = error[:1000]
    if entry.attempts >= max_attempts:
        entry.status = STATUS_FAILED
        logger.error(
            "NOTIFICATION_DEAD_LETTERED",
            extra={
                "notification_id": entry_id,
                "tenant_id": entry.tenant_id,
                "template_name": entry.template_name,
                "attempts": entry.attempts,
            },
        )
    else:
        entry.scheduled_for = now + backoff_delay(entry.attempts)
        logger.warning(
            "NOTIFICATION_RETRY_SCHEDULED",
            extra={
                "notification_id": entry_id,
                "template_name": entry.template_name,
                "attempts": entry.attempts,
                "next_attempt_at": entry.scheduled_for.isoformat(),
            },
        )
    session.flush()
    return entry.status
