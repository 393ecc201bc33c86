"""Subscription state machine as a pure function.

    transition(current, event, plans) -> Transition

``current`` is a read-only view of the local store relevant to the event;
the returned Transition says what to write. No I/O happens here, so every
rule can be tested without a database.

States: trialing, active, past_due, canceled, expired.
trialing → expired is never produced here (trial sweep only).
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from cwb_api.billing.errors import ValidationFailure
from cwb_api.billing.events import (
    CheckoutCompleted,
    EventVariant,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionDeleted,
    SubscriptionSnapshot,
    Unhandled,
)
from cwb_api.db.repo_subscriptions import TRIAL_PRICE_REF
from cwb_api.notifications.queue import PAYMENT_FAILED, SUBSCRIPTION_REACTIVATED
from cwb_api.pricing.plans import PlanTable

STATUSES = frozenset({"trialing", "active", "past_due", "canceled", "expired"})

# Processor statuses outside the local vocabulary
_PROCESSOR_STATUS_MAP = {
    "unpaid": "past_due",
    "incomplete": "past_due",
    "paused": "past_due",
    "incomplete_expired": "expired",
}

# Actions
NOOP = "noop"
NOT_FOUND = "not_found"
LINK_CUSTOMER = "link_customer"
UPSERT = "upsert"
SET_STATUS = "set_status"


def map_processor_status(processor_status: str) -> str:
    """Map a Stripe subscription status onto the local status set.

    Raises:
        ValidationFailure: For a status Stripe does not define
    """
    status = _PROCESSOR_STATUS_MAP.get(processor_status, processor_status)
    if status not in STATUSES:
        raise ValidationFailure(f"unknown processor subscription status: {processor_status!r}")
    return status


@dataclass(frozen=True)
class SubscriptionView:
    external_ref: str
    status: str
    price_ref: str
    quota: int


@dataclass(frozen=True)
class CurrentState:
    """What the store knows about the event's tenant/subscription."""
    tenant_id: Optional[str] = None
    subscription: Optional[SubscriptionView] = None
    has_trial_row: bool = False


@dataclass(frozen=True)
class NotificationIntent:
    template_name: str
    template_data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentWrite:
    external_ref: str
    subscription_ref: Optional[str]
    amount: int
    currency: str
    status: str


@dataclass(frozen=True)
class Transition:
    action: str
    reason: str
    tenant_id: Optional[str] = None
    subscription_ref: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    fields: dict[str, Any] = field(default_factory=dict)  # UPSERT column values
    customer_ref: Optional[str] = None  # LINK_CUSTOMER
    delete_trial: bool = False
    fallback_rule: Optional[str] = None
    payment: Optional[PaymentWrite] = None
    notifications: tuple[NotificationIntent, ...] = ()

    @property
    def changes_status(self) -> bool:
        return self.to_status is not None and self.to_status != self.from_status


def _snapshot(current: CurrentState, event: SubscriptionSnapshot, plans: PlanTable) -> Transition:
    if current.tenant_id is None:
        return Transition(
            action=NOT_FOUND,
            reason="customer/subscription not found",
            subscription_ref=event.subscription_ref,
        )

    resolved = plans.resolve(event.price_ref)
    status = map_processor_status(event.processor_status)
    from_status = current.subscription.status if current.subscription else None

    return Transition(
        action=UPSERT,
        reason="processor snapshot applied",
        tenant_id=current.tenant_id,
        subscription_ref=event.subscription_ref,
        from_status=from_status,
        to_status=status,
        fields={
            "price_ref": resolved.price_ref,
            "status": status,
            "current_period_start": event.current_period_start,
            "current_period_end": event.current_period_end,
            "cancel_at_period_end": event.cancel_at_period_end,
            "quota": resolved.quota,
        },
        delete_trial=current.has_trial_row,
        fallback_rule=resolved.fallback_rule,
    )


def _checkout(current: CurrentState, event: CheckoutCompleted) -> Transition:
    if not event.customer_ref or not event.subscription_ref:
        return Transition(
            action=NOOP,
            reason="checkout session without customer or subscription",
        )
    if current.tenant_id is None:
        return Transition(
            action=NOT_FOUND,
            reason="customer/subscription not found",
            subscription_ref=event.subscription_ref,
        )
    return Transition(
        action=LINK_CUSTOMER,
        reason="checkout completed",
        tenant_id=current.tenant_id,
        subscription_ref=event.subscription_ref,
        customer_ref=event.customer_ref,
    )


def _deleted(current: CurrentState, event: SubscriptionDeleted) -> Transition:
    if current.subscription is None:
        return Transition(
            action=NOT_FOUND,
            reason="customer/subscription not found",
            subscription_ref=event.subscription_ref,
        )
    return Transition(
        action=SET_STATUS,
        reason="subscription deleted",
        tenant_id=current.tenant_id,
        subscription_ref=event.subscription_ref,
        from_status=current.subscription.status,
        to_status="canceled",
    )


def _payment_succeeded(current: CurrentState, event: PaymentSucceeded) -> Transition:
    if current.tenant_id is None:
        return Transition(action=NOT_FOUND, reason="customer/subscription not found")

    payment = PaymentWrite(
        external_ref=event.payment_ref,
        subscription_ref=event.subscription_ref,
        amount=event.amount,
        currency=event.currency,
        status="succeeded",
    )
    sub = current.subscription
    if sub is None or sub.price_ref == TRIAL_PRICE_REF or sub.status != "past_due":
        return Transition(
            action=NOOP,
            reason="payment recorded",
            tenant_id=current.tenant_id,
            subscription_ref=event.subscription_ref,
            payment=payment,
        )

    return Transition(
        action=SET_STATUS,
        reason="payment recovered",
        tenant_id=current.tenant_id,
        subscription_ref=sub.external_ref,
        from_status="past_due",
        to_status="active",
        payment=payment,
        notifications=(
            NotificationIntent(
                template_name=SUBSCRIPTION_REACTIVATED,
                template_data={
                    "amount": event.amount / 100,
                    "currency": event.currency.upper(),
                },
            ),
        ),
    )


def _payment_failed(current: CurrentState, event: PaymentFailed) -> Transition:
    if current.tenant_id is None:
        return Transition(action=NOT_FOUND, reason="customer/subscription not found")

    payment = PaymentWrite(
        external_ref=event.payment_ref,
        subscription_ref=event.subscription_ref,
        amount=event.amount_due,
        currency=event.currency,
        status="failed",
    )
    sub = current.subscription
    # Local trial rows are moved by the sweep and conversions only
    if sub is None or sub.price_ref == TRIAL_PRICE_REF or sub.status not in ("active", "trialing"):
        return Transition(
            action=NOOP,
            reason="payment failure recorded",
            tenant_id=current.tenant_id,
            subscription_ref=event.subscription_ref,
            payment=payment,
        )

    return Transition(
        action=SET_STATUS,
        reason="payment failed",
        tenant_id=current.tenant_id,
        subscription_ref=sub.external_ref,
        from_status=sub.status,
        to_status="past_due",
        payment=payment,
        notifications=(
            NotificationIntent(
                template_name=PAYMENT_FAILED,
                template_data={
                    "amount": event.amount_due / 100,
                    "currency": event.currency.upper(),
                    "invoiceUrl": event.hosted_invoice_url,
                    "attemptCount": event.attempt_count,
                },
            ),
        ),
    )


def transition(
    current: CurrentState,
    event: EventVariant,
    plans: PlanTable,
) -> Transition:
    """Compute the store mutation for one event."""
    if isinstance(event, SubscriptionSnapshot):
        return _snapshot(current, event, plans)
    if isinstance(event, CheckoutCompleted):
        return _checkout(current, event)
    if isinstance(event, SubscriptionDeleted):
        return _deleted(current, event)
    if isinstance(event, PaymentSucceeded):
        return _payment_succeeded(current, event)
    if isinstance(event, PaymentFailed):
        return _payment_failed(current, event)
    if isinstance(event, Unhandled):
        return Transition(action=NOOP, reason=f"unhandled event type {event.event_type}")
    raise TypeError(f"unsupported event variant: {type(event).__name__}")
