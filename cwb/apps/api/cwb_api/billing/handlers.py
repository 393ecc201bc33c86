"""Event router: load state → pure transition → apply to the store.

Nothing here commits. The webhook ingress owns the transaction: it commits
the state change, then writes follow-up notifications in a second
transaction (see queue_followups) so a notification failure can never roll
back a subscription transition.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from cwb_api.billing.errors import NotFoundFailure, TransientDependencyFailure
from cwb_api.billing.events import (
    CheckoutCompleted,
    EventVariant,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionDeleted,
    SubscriptionSnapshot,
    parse_subscription_object,
)
from cwb_api.billing.stripe_client import StripeBillingClient
from cwb_api.billing.transitions import (
    LINK_CUSTOMER,
    NOOP,
    NOT_FOUND,
    SET_STATUS,
    UPSERT,
    CurrentState,
    NotificationIntent,
    SubscriptionView,
    Transition,
    transition,
)
from cwb_api.config.env import get_app_base_url
from cwb_api.db.models import Subscription, Tenant
from cwb_api.db.repo_audit import write_audit_log
from cwb_api.db.repo_payments import PaymentRepository
from cwb_api.db.repo_subscriptions import SubscriptionRepository
from cwb_api.db.repo_tenants import TenantRepository
from cwb_api.notifications import queue
from cwb_api.observability.metrics import log_subscription_transition
from cwb_api.pricing.plans import PlanTable

logger = logging.getLogger(__name__)

ACTOR_WEBHOOK = "webhook:stripe"


@dataclass
class AppliedEvent:
    """Result of routing one event"""
    transition: Transition
    tenant_id: Optional[str] = None
    followups: list[NotificationIntent] = field(default_factory=list)


def _view(subscription: Optional[Subscription]) -> Optional[SubscriptionView]:
    if subscription is None:
        return None
    return SubscriptionView(
        external_ref=subscription.external_subscription_ref,
        status=subscription.status,
        price_ref=subscription.price_ref,
        quota=subscription.quota,
    )


class EventRouter:
    """Routes parsed processor events onto the subscription store."""

    def __init__(
        self,
        db: Session,
        plans: PlanTable,
        stripe_client_factory: Callable[[], StripeBillingClient],
        now: datetime,
    ):
        self.db = db
        self.plans = plans
        self.stripe_client_factory = stripe_client_factory
        self.now = now
        self.tenants = TenantRepository(db)
        self.subscriptions = SubscriptionRepository(db)
        self.payments = PaymentRepository(db)

    # ── State loading ────────────────────────────────────────────────────────

    def _resolve_tenant(
        self,
        customer_ref: Optional[str],
        tenant_hint: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[Tenant]:
        tenant = None
        if customer_ref:
            tenant = self.tenants.get_by_customer_ref(customer_ref)
        if tenant is None and tenant_hint:
            tenant = self.tenants.get(tenant_hint)
        if tenant is None and email:
            tenant = self.tenants.get_by_email(email)
        return tenant

    def _state_for_tenant(
        self, tenant: Optional[Tenant], subscription_ref: Optional[str] = None
    ) -> CurrentState:
        if tenant is None:
            return CurrentState()
        subscription = None
        if subscription_ref:
            subscription = self.subscriptions.get_by_external_ref(subscription_ref)
        if subscription is None and subscription_ref is None:
            subscription = self.subscriptions.get_current(tenant.tenant_id)
        return CurrentState(
            tenant_id=tenant.tenant_id,
            subscription=_view(subscription),
            has_trial_row=self.subscriptions.get_trial(tenant.tenant_id) is not None,
        )

    def load_state(self, event: EventVariant) -> CurrentState:
        if isinstance(event, SubscriptionSnapshot):
            tenant = self._resolve_tenant(event.customer_ref, event.tenant_hint)
            return self._state_for_tenant(tenant, event.subscription_ref)

        if isinstance(event, CheckoutCompleted):
            tenant = self._resolve_tenant(
                event.customer_ref, event.tenant_hint, event.customer_email
            )
            return self._state_for_tenant(tenant, event.subscription_ref)

        if isinstance(event, SubscriptionDeleted):
            subscription = self.subscriptions.get_by_external_ref(event.subscription_ref)
            if subscription is None:
                return CurrentState()
            return CurrentState(
                tenant_id=subscription.tenant_id,
                subscription=_view(subscription),
            )

        if isinstance(event, (PaymentSucceeded, PaymentFailed)):
            tenant = self._resolve_tenant(event.customer_ref)
            if tenant is not None and event.subscription_ref is None:
                # One-off invoice: the payment is recorded, no subscription moves
                return CurrentState(tenant_id=tenant.tenant_id)
            return self._state_for_tenant(tenant, event.subscription_ref)

        return CurrentState()

    # ── Application ──────────────────────────────────────────────────────────

    def route(self, event: EventVariant, event_type: str) -> AppliedEvent:
        """Apply one event. Raises NotFoundFailure for unknown references."""
        current = self.load_state(event)
        result = transition(current, event, self.plans)

        if result.action == NOT_FOUND:
            raise NotFoundFailure(result.reason)

        if result.payment is not None:
            self.payments.upsert(
                tenant_id=result.tenant_id,
                external_ref=result.payment.external_ref,
                subscription_ref=result.payment.subscription_ref,
                amount=result.payment.amount,
                currency=result.payment.currency,
                status=result.payment.status,
                now=self.now,
            )

        if result.action == LINK_CUSTOMER:
            return self._link_customer_and_sync(result, event_type)
        if result.action == UPSERT:
            self._apply_upsert(result, event_type)
        elif result.action == SET_STATUS:
            self._apply_status(result, event_type)
        elif result.action == NOOP:
            logger.info(
                "BILLING_EVENT_NOOP",
                extra={"event_type": event_type, "reason": result.reason},
            )

        return AppliedEvent(
            transition=result,
            tenant_id=result.tenant_id,
            followups=list(result.notifications),
        )

    def _link_customer_and_sync(self, result: Transition, event_type: str) -> AppliedEvent:
        if self.tenants.set_customer_ref_once(result.tenant_id, result.customer_ref):
            write_audit_log(
                self.db,
                event_type="CUSTOMER_LINKED",
                tenant_id=result.tenant_id,
                actor=ACTOR_WEBHOOK,
                related_entity_type="customer",
                related_entity_id=result.customer_ref,
                details={"trigger": event_type},
            )

        try:
            client = self.stripe_client_factory()
        except ValueError as e:
            raise TransientDependencyFailure(f"stripe client unavailable: {e}") from e
        raw_subscription = client.retrieve_subscription(result.subscription_ref)

        snapshot = parse_subscription_object(raw_subscription, event_type)
        if snapshot.tenant_hint is None:
            snapshot = snapshot.model_copy(update={"tenant_hint": result.tenant_id})
        return self.route(snapshot, event_type)

    def _apply_upsert(self, result: Transition, event_type: str) -> None:
        if result.delete_trial:
            deleted = self.subscriptions.delete_trial(result.tenant_id)
            queue.cancel_pending(
                self.db,
                result.tenant_id,
                [queue.trial_reminder_template(day) for day in self.plans.trial_reminder_days]
                + [queue.TRIAL_ENDED],
                reason="canceled: trial converted",
            )
            logger.info(
                "TRIAL_ROW_DELETED",
                extra={"tenant_id": result.tenant_id, "deleted": deleted},
            )

        subscription = self.subscriptions.upsert_by_external_ref(
            tenant_id=result.tenant_id,
            external_ref=result.subscription_ref,
            values=result.fields,
            now=self.now,
        )

        write_audit_log(
            self.db,
            event_type="TRIAL_CONVERTED" if result.delete_trial else "SUBSCRIPTION_UPSERTED",
            tenant_id=result.tenant_id,
            actor=ACTOR_WEBHOOK,
            related_entity_type="subscription",
            related_entity_id=result.subscription_ref,
            details={
                "trigger": event_type,
                "from_status": result.from_status,
                "to_status": result.to_status,
                "price_ref": subscription.price_ref,
                "quota": subscription.quota,
                "fallback_rule": result.fallback_rule,
            },
        )
        logger.info(
            "SUBSCRIPTION_UPSERTED",
            extra={
                "tenant_id": result.tenant_id,
                "subscription_ref": result.subscription_ref,
                "status": subscription.status,
                "quota": subscription.quota,
            },
        )
        if result.changes_status:
            log_subscription_transition(
                result.tenant_id, result.from_status, result.to_status, event_type
            )

    def _apply_status(self, result: Transition, event_type: str) -> None:
        subscription = self.subscriptions.get_by_external_ref(result.subscription_ref)
        if subscription is None:
            raise NotFoundFailure("customer/subscription not found")

        self.subscriptions.set_status(subscription, result.to_status, self.now)
        write_audit_log(
            self.db,
            event_type="SUBSCRIPTION_STATUS_CHANGED",
            tenant_id=result.tenant_id,
            actor=ACTOR_WEBHOOK,
            related_entity_type="subscription",
            related_entity_id=result.subscription_ref,
            details={
                "trigger": event_type,
                "from_status": result.from_status,
                "to_status": result.to_status,
                "reason": result.reason,
            },
        )
        if result.changes_status:
            log_subscription_transition(
                result.tenant_id, result.from_status, result.to_status, event_type
            )


def queue_followups(db: Session, applied: AppliedEvent, now: datetime) -> int:
    """Enqueue the notifications a committed transition asked for. Caller commits.

    Raises:
        TransientDependencyFailure: If the tenant has no contact address
    """
    if not applied.followups or applied.tenant_id is None:
        return 0

    tenant = TenantRepository(db).get(applied.tenant_id)
    if tenant is None or not tenant.email:
        raise TransientDependencyFailure(
            f"tenant {applied.tenant_id} has no contact address for notifications"
        )

    base_url = get_app_base_url()
    requests = [
        queue.NotificationRequest(
            tenant_id=tenant.tenant_id,
            destination=tenant.email,
            template_name=intent.template_name,
            template_data={
                "userName": tenant.display_name or "there",
                "billingUrl": f"{base_url}/dashboard/settings",
                **intent.template_data,
            },
            scheduled_for=now,
        )
        for intent in applied.followups
    ]
    queue.enqueue_batch(db, requests)
    return len(requests)
