"""Observability metrics helpers for the billing lifecycle.

Metrics are emitted as structured log events and aggregated downstream.

Usage:
    from cwb_api.observability.metrics import log_webhook_outcome, log_trial_sweep

    log_webhook_outcome(event_type="invoice.payment_failed", outcome="processed", duration_ms=12.5)
    log_trial_sweep(found=3, expired=3, notified=2, errors=0, elapsed_ms=41)

HTTP request latency and status are already logged by the
http_completion_logging_middleware in main.py ("http.request.completed").
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


# ============================================================================
# Webhook Metrics
# ============================================================================


def log_webhook_outcome(
    event_type: str,
    outcome: str,
    duration_ms: float,
    error_class: Optional[str] = None,
) -> None:
    """Log the terminal outcome of one webhook delivery.

    Args:
        event_type: Processor event type (e.g. customer.subscription.updated)
        outcome: processed | skipped | failed | already_processed | already_processing
        duration_ms: Wall time spent inside the ingress
        error_class: Failure taxonomy class name when outcome is failed/skipped
    """
    log = logger.warning if outcome == "failed" else logger.info
    log(
        "billing.webhook.outcome",
        extra={
            "event": "billing.webhook.outcome",
            "event_type": event_type,
            "outcome": outcome,
            "duration_ms": round(duration_ms, 2),
            "error_class": error_class,
        },
    )


def log_subscription_transition(
    tenant_id: str,
    from_status: Optional[str],
    to_status: str,
    trigger: str,
) -> None:
    """Log a subscription status change.

    Args:
        tenant_id: Tenant identifier
        from_status: Previous status (None for a new row)
        to_status: New status
        trigger: Event type or scheduler name that caused it
    """
    logger.info(
        "billing.subscription.transition",
        extra={
            "event": "billing.subscription.transition",
            "tenant_id": tenant_id,
            "from_status": from_status,
            "to_status": to_status,
            "trigger": trigger,
        },
    )


# ============================================================================
# Scheduler Metrics
# ============================================================================


def log_trial_sweep(
    found: int,
    expired: int,
    notified: int,
    errors: int,
    elapsed_ms: int,
) -> None:
    """Log aggregate counters of one trial-expiry sweep."""
    log = logger.warning if errors else logger.info
    log(
        "billing.trial_sweep.completed",
        extra={
            "event": "billing.trial_sweep.completed",
            "found": found,
            "expired": expired,
            "notified": notified,
            "errors": errors,
            "elapsed_ms": elapsed_ms,
        },
    )
