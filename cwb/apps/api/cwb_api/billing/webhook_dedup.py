"""Webhook dedup gate: unique-constraint claim for concurrent idempotency.

Guarantees at most one in-flight processing per (source, external_event_id),
even when the processor redelivers an event while the first delivery is
still running.

Design:
  1. INSERT webhook_events row (processed=false, claimed_at=now)
       → commit succeeds   : this delivery is the FIRST processor → continue
       → IntegrityError    : UNIQUE(source, external_event_id) hit → step 2
  2. Existing row:
       processed=true                          → already_processed (ACK, zero side effects)
       error set OR claim older than stale TTL → conditional UPDATE reclaims it
                                                 (rowcount == 1 wins) → continue
       otherwise                               → already_processing (ACK)

The UPDATE in step 2 is atomic (row-level lock), so two redeliveries racing
to reclaim the same failed row cannot both win.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cwb_api.db.models import WebhookEvent

logger = logging.getLogger(__name__)

SOURCE_STRIPE = "stripe"

ACQUIRED = "acquired"
RECLAIMED = "reclaimed"
ALREADY_PROCESSED = "already_processed"
ALREADY_PROCESSING = "already_processing"

MAX_ERROR_LENGTH = 1000


@dataclass
class ClaimResult:
    outcome: str
    record_id: Optional[int] = None

    @property
    def acquired(self) -> bool:
        return self.outcome in (ACQUIRED, RECLAIMED)


def event_key(payload: dict, payload_hash: str) -> str:
    """Deterministic lookup key: processor event id, else the body hash."""
    event_id = payload.get("id") if isinstance(payload, dict) else None
    if event_id:
        return str(event_id)
    return f"hash_{payload_hash}"


def try_acquire_event(
    db: Session,
    *,
    source: str,
    external_event_id: str,
    event_type: str,
    payload: dict,
    payload_hash: str,
    now: datetime,
    stale_after_seconds: int,
) -> ClaimResult:
    """Attempt to claim processing rights for (source, external_event_id).

    Commits the claim before returning so that concurrent deliveries see it.
    """
    record = WebhookEvent(
        source=source,
        external_event_id=external_event_id,
        event_type=event_type,
        payload=payload,
        payload_hash=payload_hash,
        processed=False,
        attempts=1,
        claimed_at=now,
        received_at=now,
    )
    db.add(record)
    try:
        db.commit()
        logger.debug(
            "WEBHOOK_DEDUP_ACQUIRED",
            extra={"source": source, "external_event_id": external_event_id},
        )
        return ClaimResult(ACQUIRED, record.id)
    except IntegrityError:
        db.rollback()

    existing = db.execute(
        select(WebhookEvent).where(
            WebhookEvent.source == source,
            WebhookEvent.external_event_id == external_event_id,
        )
    ).scalar_one()

    if existing.processed:
        logger.info(
            "WEBHOOK_DEDUP_DUPLICATE",
            extra={"source": source, "external_event_id": external_event_id},
        )
        return ClaimResult(ALREADY_PROCESSED, existing.id)

    stale_before = now - timedelta(seconds=stale_after_seconds)
    reclaim = (
        update(WebhookEvent)
        .where(
            WebhookEvent.id == existing.id,
            WebhookEvent.processed.is_(False),
            or_(
                WebhookEvent.error.is_not(None),
                WebhookEvent.claimed_at.is_(None),
                WebhookEvent.claimed_at < stale_before,
            ),
        )
        .values(
            claimed_at=now,
            error=None,
            processed_at=None,
            attempts=WebhookEvent.attempts + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if db.execute(reclaim).rowcount == 1:
        db.commit()
        logger.info(
            "WEBHOOK_DEDUP_RECLAIMED",
            extra={"source": source, "external_event_id": external_event_id},
        )
        return ClaimResult(RECLAIMED, existing.id)

    db.rollback()
    logger.info(
        "WEBHOOK_DEDUP_IN_FLIGHT",
        extra={"source": source, "external_event_id": external_event_id},
    )
    return ClaimResult(ALREADY_PROCESSING, existing.id)


def mark_event_processed(db: Session, record_id: int, now: datetime) -> None:
    """processed=true, processed_at=now, error cleared. Caller commits."""
    db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.id == record_id)
        .values(processed=True, processed_at=now, error=None)
        .execution_options(synchronize_session=False)
    )


def mark_event_failed(db: Session, record_id: int, error: str, now: datetime) -> None:
    """Store the handler error and stamp processed_at; processed stays false. Caller commits."""
    db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.id == record_id)
        .values(processed=False, processed_at=now, error=error[:MAX_ERROR_LENGTH])
        .execution_options(synchronize_session=False)
    )
