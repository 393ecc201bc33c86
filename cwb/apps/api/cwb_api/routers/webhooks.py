"""Stripe webhook ingress.

Error taxonomy:
  (A) Missing/invalid signature, stale timestamp, non-JSON body → 400, nothing persisted
  (B) Our misconfig (STRIPE_WEBHOOK_SECRET unset)               → 400, nothing persisted
  Everything after signature verification is acknowledged with 200 so the
  processor does not retry-storm us; the outcome is in the body and in the
  webhook_events row:
    processed           transition applied
    skipped             unknown tenant/customer/subscription (recorded as processed)
    failed              handler error stored on the row; redelivery reclaims it
    already_processed   duplicate of a processed event, zero side effects
    already_processing  another delivery holds the claim
"""

import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from cwb_api.billing.errors import (
    AuthenticationFailure,
    NotFoundFailure,
    ValidationFailure,
)
from cwb_api.billing.events import parse_event
from cwb_api.billing.handlers import EventRouter, queue_followups
from cwb_api.billing.stripe_client import get_stripe_client, verify_stripe_event
from cwb_api.billing.webhook_dedup import (
    SOURCE_STRIPE,
    event_key,
    mark_event_failed,
    mark_event_processed,
    try_acquire_event,
)
from cwb_api.config.env import (
    get_stripe_webhook_secret,
    get_webhook_claim_stale_seconds,
    get_webhook_tolerance_seconds,
)
from cwb_api.context import event_id_var, request_id_var, tenant_id_var
from cwb_api.db.session import get_db
from cwb_api.observability.metrics import log_webhook_outcome
from cwb_api.pricing.plans import get_plan_table
from cwb_api.utils.clock import utcnow
from cwb_api.utils.sanitize import payload_hash_bytes, sanitize_str

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)

OUTCOME_PROCESSED = "processed"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"


# ============================================================================
# Webhook Problem Details helper
# ============================================================================


def _webhook_problem(
    request: Request,
    status: int,
    *,
    code: str,
    title: str,
    detail: str | None,
    payload_hash: str | None,
) -> JSONResponse:
    """Log once + return RFC 9457 Problem Details response with webhook extensions.

    Response extensions (beyond RFC 9457 base):
      provider, payload_hash, error_code  (safe; never contain raw payload/secrets)
    """
    request_id = request_id_var.get()
    instance = f"urn:cwb:trace:{request_id}" if request_id else str(request.url.path)

    logger.warning(
        code,
        extra={
            "event": f"webhook.{code.lower()}",
            "provider": SOURCE_STRIPE,
            "payload_hash": payload_hash,
            "error_code": code,
        },
    )

    content: dict = {
        "type": f"urn:cwb:webhook:{code.lower()}",
        "title": title,
        "status": status,
        "provider": SOURCE_STRIPE,
        "error_code": code,
        "instance": instance,
    }
    if detail is not None:
        content["detail"] = detail
    if payload_hash is not None:
        content["payload_hash"] = payload_hash

    return JSONResponse(
        status_code=status,
        content=content,
        headers={"Content-Type": "application/problem+json"},
    )


def _ack(outcome: str, event_id: str, error: Optional[str] = None) -> dict:
    body = {"received": True, "status": outcome, "eventId": event_id}
    if error is not None:
        body["error"] = error
    return body


# ============================================================================
# Stripe Webhook Handler
# ============================================================================


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
):
    """Stripe webhook handler.

    Signature verified before anything is persisted; one claim per event id;
    state committed before notifications are queued.
    """
    started = time.perf_counter()

    # ── Step 0: Raw body ingestion ───────────────────────────────────────────
    raw_body: bytes = await request.body()
    payload_hash = payload_hash_bytes(raw_body)

    # ── Step 1: Signing secret (B → 400) ─────────────────────────────────────
    try:
        secret = get_stripe_webhook_secret()
    except ValueError:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_PROVIDER_MISCONFIG",
            title="Webhook provider misconfiguration",
            detail="Webhook signing secret is not configured",
            payload_hash=payload_hash,
        )

    # ── Step 2: Signature verification (A → 400) ─────────────────────────────
    try:
        payload = verify_stripe_event(
            raw_body, stripe_signature, secret, get_webhook_tolerance_seconds()
        )
    except AuthenticationFailure as e:
        return _webhook_problem(
            request, 400,
            code=e.code,
            title="Webhook signature verification failed",
            detail=sanitize_str(e.message),
            payload_hash=payload_hash,
        )

    event_type = str(payload.get("type") or "unknown") if isinstance(payload, dict) else "unknown"
    key = event_key(payload, payload_hash)
    event_id_var.set(key)

    logger.info(
        "WEBHOOK_RECEIVED",
        extra={
            "provider": SOURCE_STRIPE,
            "event_type": event_type,
            "payload_hash": payload_hash,
            "payload_size": len(raw_body),
        },
    )

    # ── Step 3: Dedup gate ───────────────────────────────────────────────────
    now = utcnow()
    claim = try_acquire_event(
        db,
        source=SOURCE_STRIPE,
        external_event_id=key,
        event_type=event_type,
        payload=payload if isinstance(payload, dict) else {"body": payload},
        payload_hash=payload_hash,
        now=now,
        stale_after_seconds=get_webhook_claim_stale_seconds(),
    )
    if not claim.acquired:
        log_webhook_outcome(event_type, claim.outcome, (time.perf_counter() - started) * 1000)
        return _ack(claim.outcome, key)

    # ── Step 4: Parse + route ────────────────────────────────────────────────
    router_ = EventRouter(db, get_plan_table(), get_stripe_client, now)
    try:
        event = parse_event(payload)
        applied = router_.route(event.variant, event.event_type)
    except NotFoundFailure as e:
        db.rollback()
        mark_event_processed(db, claim.record_id, now)
        db.commit()
        logger.info(
            "WEBHOOK_REFERENCE_NOT_FOUND",
            extra={"event_type": event_type, "reason": e.message},
        )
        log_webhook_outcome(
            event_type, OUTCOME_SKIPPED, (time.perf_counter() - started) * 1000, type(e).__name__
        )
        return _ack(OUTCOME_SKIPPED, key)
    except Exception as e:
        db.rollback()
        error = sanitize_str(str(e)) or type(e).__name__
        mark_event_failed(db, claim.record_id, error, now)
        db.commit()
        if isinstance(e, ValidationFailure):
            logger.warning(
                "WEBHOOK_EVENT_INVALID",
                extra={"event_type": event_type, "error": error},
            )
        else:
            logger.error(
                "WEBHOOK_HANDLER_FAILED",
                exc_info=True,
                extra={"event_type": event_type, "error_class": type(e).__name__},
            )
        log_webhook_outcome(
            event_type, OUTCOME_FAILED, (time.perf_counter() - started) * 1000, type(e).__name__
        )
        return _ack(OUTCOME_FAILED, key, error=error)

    # ── Step 5: Commit state + mark processed (one transaction) ──────────────
    mark_event_processed(db, claim.record_id, now)
    db.commit()
    if applied.tenant_id:
        tenant_id_var.set(applied.tenant_id)

    # ── Step 6: Follow-up notifications (isolated) ───────────────────────────
    try:
        queued = queue_followups(db, applied, now)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning(
            "WEBHOOK_NOTIFICATION_ENQUEUE_FAILED",
            extra={
                "event_type": event_type,
                "error_class": type(e).__name__,
                "error": sanitize_str(str(e)),
            },
        )
    else:
        if queued:
            logger.info(
                "WEBHOOK_NOTIFICATIONS_QUEUED",
                extra={"event_type": event_type, "count": queued},
            )

    log_webhook_outcome(event_type, OUTCOME_PROCESSED, (time.perf_counter() - started) * 1000)
    return _ack(OUTCOME_PROCESSED, key)
