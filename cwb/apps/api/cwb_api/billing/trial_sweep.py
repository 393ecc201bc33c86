"""Trial-expiry sweep.

Selects local trials (price_ref="trial") still marked trialing whose period
has ended, and per row:
  1. conditional UPDATE trialing → expired, committed on its own
  2. enqueue one "trial_ended" notification unless one is already pending/sent,
     in a second transaction

A failing step is rolled back, counted, and the sweep moves on. A failed
notice never undoes the expiry that preceded it. Re-running
is safe: expired rows are no longer selected, and the notification check
keeps a tenant from being told twice.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from cwb_api.billing.errors import SweepRowFailure
from cwb_api.config.env import get_app_base_url
from cwb_api.db.models import Subscription
from cwb_api.db.repo_audit import write_audit_log
from cwb_api.db.repo_subscriptions import SubscriptionRepository
from cwb_api.db.repo_tenants import TenantRepository
from cwb_api.notifications import queue
from cwb_api.observability.metrics import log_subscription_transition, log_trial_sweep
from cwb_api.utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    found: int = 0
    expired: int = 0
    emails_sent: int = 0
    errors: int = 0
    error_messages: list[str] = field(default_factory=list)
    elapsed_ms: int = 0

    def stats(self) -> dict[str, int]:
        return {
            "found": self.found,
            "expired": self.expired,
            "emailsSent": self.emails_sent,
            "errors": self.errors,
        }

    @property
    def message(self) -> str:
        return (
            f"Expired {self.expired} trials, sent {self.emails_sent} emails, "
            f"{self.errors} errors"
        )


def _expire_row(db: Session, subscription: Subscription, now: datetime) -> bool:
    """Conditionally expire one trial row and audit it. Caller commits."""
    expired = SubscriptionRepository(db).expire_if_trialing(subscription.id, now)
    if not expired:
        # A concurrent sweep or a processor event moved the row first
        return False

    write_audit_log(
        db,
        event_type="TRIAL_EXPIRED",
        tenant_id=subscription.tenant_id,
        actor="cron:expire-trials",
        related_entity_type="subscription",
        related_entity_id=subscription.external_subscription_ref,
        details={"period_end": str(subscription.current_period_end)},
    )
    return True


def _queue_trial_ended(db: Session, tenant_id: str, subscription_id: int, now: datetime) -> bool:
    """Queue the trial_ended notice unless one exists. Caller commits.

    Raises:
        SweepRowFailure: If the tenant has no contact address
    """
    if queue.has_notification(db, tenant_id, queue.TRIAL_ENDED):
        return False

    tenant = TenantRepository(db).get(tenant_id)
    if tenant is None or not tenant.email:
        raise SweepRowFailure(
            "no contact address for trial_ended notice",
            tenant_id=tenant_id,
            subscription_id=subscription_id,
        )

    base_url = get_app_base_url()
    queue.enqueue(
        db,
        tenant_id=tenant_id,
        destination=tenant.email,
        template_name=queue.TRIAL_ENDED,
        template_data={
            "userName": tenant.display_name or "there",
            "dashboardUrl": f"{base_url}/dashboard",
            "upgradeUrl": f"{base_url}/pricing",
        },
        scheduled_for=now,
    )
    return True


def _record_row_failure(
    db: Session, result: SweepResult, tenant_id: str, subscription_id: int, e: Exception, stage: str
) -> None:
    db.rollback()
    result.errors += 1
    result.error_messages.append(f"Tenant {tenant_id}: {e}")
    logger.error(
        "TRIAL_SWEEP_ROW_FAILED",
        exc_info=True,
        extra={"tenant_id": tenant_id, "subscription_id": subscription_id, "stage": stage},
    )


def run_trial_sweep(
    db: Session,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> SweepResult:
    """Expire every overdue local trial. Commits per row, expiry before notice."""
    started = time.monotonic()
    now = now or utcnow()
    result = SweepResult()

    candidates = SubscriptionRepository(db).find_expired_trials(now, limit=limit)
    result.found = len(candidates)
    # Plain values; ORM instances expire on each per-row commit
    rows = [(sub.id, sub.tenant_id) for sub in candidates]

    logger.info("TRIAL_SWEEP_STARTED", extra={"found": result.found, "now": now.isoformat()})

    for subscription_id, tenant_id in rows:
        try:
            subscription = db.get(Subscription, subscription_id)
            if subscription is None:
                continue
            expired = _expire_row(db, subscription, now)
            db.commit()
        except Exception as e:
            _record_row_failure(db, result, tenant_id, subscription_id, e, "expire")
            continue

        if not expired:
            continue
        result.expired += 1
        log_subscription_transition(tenant_id, "trialing", "expired", "trial_sweep")

        # The expiry above stays committed whatever happens to its notice
        try:
            notified = _queue_trial_ended(db, tenant_id, subscription_id, now)
            db.commit()
        except Exception as e:
            _record_row_failure(db, result, tenant_id, subscription_id, e, "notify")
            continue
        if notified:
            result.emails_sent += 1

    result.elapsed_ms = int((time.monotonic() - started) * 1000)
    log_trial_sweep(
        found=result.found,
        expired=result.expired,
        notified=result.emails_sent,
        errors=result.errors,
        elapsed_ms=result.elapsed_ms,
    )
    return result
