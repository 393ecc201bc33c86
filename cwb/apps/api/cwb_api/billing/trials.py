"""Local trial lifecycle: creation on onboarding completion and manual conversion.

Trials are never backed by a processor object. The row uses
price_ref="trial" and the synthetic reference trial_<tenant_id>, which makes
trial creation idempotent per tenant through the unique external reference.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cwb_api.billing.errors import NotFoundFailure, ValidationFailure
from cwb_api.config.env import get_app_base_url
from cwb_api.db.models import Subscription
from cwb_api.db.repo_audit import write_audit_log
from cwb_api.db.repo_subscriptions import SubscriptionRepository, trial_subscription_ref
from cwb_api.db.repo_tenants import TenantRepository
from cwb_api.notifications import queue
from cwb_api.observability.metrics import log_subscription_transition
from cwb_api.pricing.plans import PlanTable
from cwb_api.utils.clock import add_months

logger = logging.getLogger(__name__)


@dataclass
class TrialStart:
    subscription: Subscription
    created: bool
    reminders_queued: int = 0


def start_trial(
    db: Session,
    tenant_id: str,
    plans: PlanTable,
    now: datetime,
) -> TrialStart:
    """∅ → trialing. Caller commits.

    The trial row and its day-N reminder batch are added to the same
    transaction. A tenant that already has any subscription keeps it, and a
    call that loses the insert race to a concurrent one returns the winner's row.

    Raises:
        NotFoundFailure: If the tenant mirror does not exist
    """
    tenant = TenantRepository(db).get(tenant_id)
    if tenant is None:
        raise NotFoundFailure(f"tenant {tenant_id} not found")

    subscriptions = SubscriptionRepository(db)
    existing = subscriptions.get_current(tenant_id)
    if existing is not None:
        logger.info(
            "TRIAL_ALREADY_EXISTS",
            extra={"tenant_id": tenant_id, "status": existing.status},
        )
        return TrialStart(subscription=existing, created=False)

    period_end = now + timedelta(days=plans.trial_duration_days)
    try:
        with db.begin_nested():
            subscription = subscriptions.add(
                Subscription(
                    tenant_id=tenant_id,
                    external_subscription_ref=trial_subscription_ref(tenant_id),
                    price_ref=plans.trial_price_ref,
                    status="trialing",
                    current_period_start=now,
                    current_period_end=period_end,
                    cancel_at_period_end=False,
                    quota=plans.lowest_tier.quota,
                    created_at=now,
                    updated_at=now,
                )
            )
    except IntegrityError:
        # A concurrent onboarding call inserted trial_<tenant_id> first
        existing = subscriptions.get_by_external_ref(trial_subscription_ref(tenant_id))
        if existing is None:
            raise
        logger.info("TRIAL_START_RACE_LOST", extra={"tenant_id": tenant_id})
        return TrialStart(subscription=existing, created=False)

    reminders = 0
    if tenant.email:
        upgrade_url = f"{get_app_base_url()}/pricing"
        batch = [
            queue.NotificationRequest(
                tenant_id=tenant_id,
                destination=tenant.email,
                template_name=queue.trial_reminder_template(day),
                template_data={
                    "userName": tenant.display_name or "there",
                    "trialDay": day,
                    "daysLeft": max(plans.trial_duration_days - day, 0),
                    "trialEndsAt": period_end.isoformat(),
                    "upgradeUrl": upgrade_url,
                },
                scheduled_for=now + timedelta(days=day),
            )
            for day in plans.trial_reminder_days
        ]
        reminders = len(queue.enqueue_batch(db, batch))
    else:
        logger.warning("TRIAL_REMINDERS_SKIPPED_NO_EMAIL", extra={"tenant_id": tenant_id})

    write_audit_log(
        db,
        event_type="TRIAL_STARTED",
        tenant_id=tenant_id,
        actor="onboarding",
        related_entity_type="subscription",
        related_entity_id=subscription.external_subscription_ref,
        details={
            "quota": subscription.quota,
            "period_end": period_end.isoformat(),
            "reminders_queued": reminders,
        },
    )
    log_subscription_transition(tenant_id, None, "trialing", "onboarding")
    return TrialStart(subscription=subscription, created=True, reminders_queued=reminders)


def convert_trial(
    db: Session,
    tenant_id: str,
    price_ref: str,
    plans: PlanTable,
    now: datetime,
    actor: str,
) -> Subscription:
    """Manually convert a tenant's trial row into an active paid row. Caller commits.

    Raises:
        ValidationFailure: If price_ref is not in the plan table
        NotFoundFailure: If the tenant has no trial row
    """
    plan = plans.get(price_ref)
    if plan is None:
        raise ValidationFailure(f"unknown plan price: {price_ref}")

    subscriptions = SubscriptionRepository(db)
    trial = subscriptions.get_trial(tenant_id)
    if trial is None:
        raise NotFoundFailure(f"trial subscription for tenant {tenant_id} not found")

    from_status = trial.status
    trial.status = "active"
    trial.price_ref = plan.price_ref
    trial.external_subscription_ref = f"manual_{tenant_id}_{int(now.timestamp() * 1000)}"
    trial.quota = plan.quota
    trial.current_period_start = now
    trial.current_period_end = add_months(now, 1)
    trial.cancel_at_period_end = False
    trial.updated_at = now

    queue.cancel_pending(
        db,
        tenant_id,
        [queue.trial_reminder_template(day) for day in plans.trial_reminder_days]
        + [queue.TRIAL_ENDED],
        reason="canceled: trial converted",
    )
    write_audit_log(
        db,
        event_type="TRIAL_CONVERTED_MANUAL",
        tenant_id=tenant_id,
        actor=actor,
        related_entity_type="subscription",
        related_entity_id=trial.external_subscription_ref,
        details={
            "from_status": from_status,
            "price_ref": plan.price_ref,
            "plan": plan.display_name,
            "quota": plan.quota,
        },
    )
    db.flush()
    log_subscription_transition(tenant_id, from_status, "active", "admin_convert")
    return trial

