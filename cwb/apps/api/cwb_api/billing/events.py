"""Typed processor events.

Raw Stripe event dicts are parsed once, at the ingress, into a tagged union of
pydantic variants. Handlers and the transition function never touch raw dicts.

Both the legacy and the current Stripe object layouts are accepted:
subscription period bounds at the top level or on the first subscription item,
invoice subscription at ``invoice.subscription`` or under
``invoice.parent.subscription_details``.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field

from cwb_api.billing.errors import ValidationFailure
from cwb_api.utils.clock import from_unix

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


class CheckoutCompleted(BaseModel):
    kind: Literal["checkout_completed"] = "checkout_completed"
    session_ref: str
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    tenant_hint: Optional[str] = None  # metadata.tenant_id or client_reference_id
    customer_email: Optional[str] = None


class SubscriptionSnapshot(BaseModel):
    """Full processor state of one subscription (created/updated events, API re-query)"""
    kind: Literal["subscription_snapshot"] = "subscription_snapshot"
    subscription_ref: str
    customer_ref: str
    price_ref: Optional[str] = None
    processor_status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    tenant_hint: Optional[str] = None


class SubscriptionDeleted(BaseModel):
    kind: Literal["subscription_deleted"] = "subscription_deleted"
    subscription_ref: str
    customer_ref: Optional[str] = None


class PaymentSucceeded(BaseModel):
    kind: Literal["payment_succeeded"] = "payment_succeeded"
    invoice_ref: str
    customer_ref: str
    subscription_ref: Optional[str] = None
    payment_ref: str
    amount: int
    currency: str


class PaymentFailed(BaseModel):
    kind: Literal["payment_failed"] = "payment_failed"
    invoice_ref: str
    customer_ref: str
    subscription_ref: Optional[str] = None
    payment_ref: str
    amount_due: int
    currency: str
    hosted_invoice_url: Optional[str] = None
    attempt_count: Optional[int] = None


class Unhandled(BaseModel):
    kind: Literal["unhandled"] = "unhandled"
    event_type: str


EventVariant = Annotated[
    Union[
        CheckoutCompleted,
        SubscriptionSnapshot,
        SubscriptionDeleted,
        PaymentSucceeded,
        PaymentFailed,
        Unhandled,
    ],
    Field(discriminator="kind"),
]


class ProcessorEvent(BaseModel):
    """Envelope: identity of the delivery plus the parsed variant"""
    event_id: str
    event_type: str
    created: Optional[datetime] = None
    livemode: bool = False
    variant: EventVariant


# ---------------------------------------------------------------------------
# Raw dict helpers
# ---------------------------------------------------------------------------


def _ref(value: Any) -> Optional[str]:
    """Stripe references are ids or expanded objects carrying an id."""
    if value is None:
        return None
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


def _first_item(obj: dict) -> dict:
    items = (obj.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _require(obj: dict, key: str, event_type: str) -> Any:
    value = obj.get(key)
    if value in (None, ""):
        raise ValidationFailure(f"{event_type}: missing required field '{key}'")
    return value


def parse_subscription_object(obj: dict, event_type: str = "subscription") -> SubscriptionSnapshot:
    """Build a snapshot from a Stripe subscription object (webhook or API)."""
    item = _first_item(obj)
    price = item.get("price") or obj.get("plan") or {}
    period_start = obj.get("current_period_start") or item.get("current_period_start")
    period_end = obj.get("current_period_end") or item.get("current_period_end")
    customer_ref = _ref(_require(obj, "customer", event_type))

    return SubscriptionSnapshot(
        subscription_ref=str(_require(obj, "id", event_type)),
        customer_ref=customer_ref,
        price_ref=_ref(price),
        processor_status=str(_require(obj, "status", event_type)),
        current_period_start=from_unix(period_start),
        current_period_end=from_unix(period_end),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end") or False),
        tenant_hint=(obj.get("metadata") or {}).get("tenant_id"),
    )


def _invoice_subscription_ref(invoice: dict) -> Optional[str]:
    direct = _ref(invoice.get("subscription"))
    if direct:
        return direct
    details = ((invoice.get("parent") or {}).get("subscription_details")) or {}
    return _ref(details.get("subscription"))


def _invoice_payment_ref(invoice: dict) -> str:
    # Payment intent when the API version still inlines it, else the invoice itself
    return _ref(invoice.get("payment_intent")) or str(invoice["id"])


def _parse_variant(event_type: str, obj: dict) -> EventVariant:
    if event_type == CHECKOUT_COMPLETED:
        metadata = obj.get("metadata") or {}
        details = obj.get("customer_details") or {}
        return CheckoutCompleted(
            session_ref=str(_require(obj, "id", event_type)),
            customer_ref=_ref(obj.get("customer")),
            subscription_ref=_ref(obj.get("subscription")),
            tenant_hint=metadata.get("tenant_id") or obj.get("client_reference_id"),
            customer_email=obj.get("customer_email") or details.get("email"),
        )

    if event_type in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED):
        return parse_subscription_object(obj, event_type)

    if event_type == SUBSCRIPTION_DELETED:
        return SubscriptionDeleted(
            subscription_ref=str(_require(obj, "id", event_type)),
            customer_ref=_ref(obj.get("customer")),
        )

    if event_type in (INVOICE_PAYMENT_SUCCEEDED, INVOICE_PAID):
        _require(obj, "id", event_type)
        return PaymentSucceeded(
            invoice_ref=str(obj["id"]),
            customer_ref=_ref(_require(obj, "customer", event_type)),
            subscription_ref=_invoice_subscription_ref(obj),
            payment_ref=_invoice_payment_ref(obj),
            amount=int(obj.get("amount_paid") or 0),
            currency=str(obj.get("currency") or "usd"),
        )

    if event_type == INVOICE_PAYMENT_FAILED:
        _require(obj, "id", event_type)
        return PaymentFailed(
            invoice_ref=str(obj["id"]),
            customer_ref=_ref(_require(obj, "customer", event_type)),
            subscription_ref=_invoice_subscription_ref(obj),
            payment_ref=_invoice_payment_ref(obj),
            amount_due=int(obj.get("amount_due") or 0),
            currency=str(obj.get("currency") or "usd"),
            hosted_invoice_url=obj.get("hosted_invoice_url"),
            attempt_count=obj.get("attempt_count"),
        )

    return Unhandled(event_type=event_type)


def parse_event(payload: dict) -> ProcessorEvent:
    """Parse a verified Stripe event dict.

    Raises:
        ValidationFailure: If the envelope or the object lacks required fields
    """
    if not isinstance(payload, dict):
        raise ValidationFailure("event payload is not a JSON object")

    event_id = payload.get("id")
    event_type = payload.get("type")
    if not event_id or not event_type:
        raise ValidationFailure("event is missing 'id' or 'type'")

    obj = (payload.get("data") or {}).get("object")
    if not isinstance(obj, dict):
        raise ValidationFailure(f"{event_type}: missing data.object")

    return ProcessorEvent(
        event_id=str(event_id),
        event_type=str(event_type),
        created=from_unix(payload.get("created")),
        livemode=bool(payload.get("livemode") or False),
        variant=_parse_variant(str(event_type), obj),
    )
