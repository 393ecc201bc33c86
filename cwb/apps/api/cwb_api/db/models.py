"""SQLAlchemy ORM Models for CWB."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BIGINT,
    BOOLEAN,
    INTEGER,
    JSON,
    TEXT,
    TIMESTAMP,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# BIGINT primary keys on PostgreSQL; SQLite only autoincrements INTEGER PRIMARY KEY
PK_BIGINT = BIGINT().with_variant(INTEGER(), "sqlite")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class Tenant(Base):
    """Tenant mirror owned by the identity service.

    Only external_customer_ref is written by the billing engine, and only once.
    """

    __tablename__ = "tenants"

    tenant_id: Mapped[str] = mapped_column(TEXT, primary_key=True)
    display_name: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    email: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    external_customer_ref: Mapped[Optional[str]] = mapped_column(
        TEXT, nullable=True, unique=True
    )  # Stripe customer id (cus_...)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (Index("idx_tenants_email", "email"),)


class Subscription(Base):
    """Subscription model - canonical billing state per tenant.

    Trials are local rows (price_ref="trial", external_subscription_ref="trial_<tenant>").
    Paid rows mirror the processor subscription and are upserted by external ref.
    """

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(PK_BIGINT, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    external_subscription_ref: Mapped[str] = mapped_column(TEXT, nullable=False)
    price_ref: Mapped[str] = mapped_column(TEXT, nullable=False)
    status: Mapped[str] = mapped_column(TEXT, nullable=False)
    # trialing | active | past_due | canceled | expired
    current_period_start: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    current_period_end: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    cancel_at_period_end: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    quota: Mapped[int] = mapped_column(INTEGER, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("external_subscription_ref", name="uq_subscriptions_external_ref"),
        Index("idx_subscriptions_tenant_created", "tenant_id", "created_at"),
        Index("idx_subscriptions_status_period_end", "status", "current_period_end"),
    )


class WebhookEvent(Base):
    """WebhookEvent model - audit trail and idempotency key for processor events.

    Never deleted. (source, external_event_id) is unique.
    """

    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(PK_BIGINT, primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(TEXT, nullable=False)  # stripe
    external_event_id: Mapped[str] = mapped_column(TEXT, nullable=False)  # evt_...
    event_type: Mapped[str] = mapped_column(TEXT, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    payload_hash: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    processed: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    error: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    attempts: Mapped[int] = mapped_column(INTEGER, nullable=False, default=1)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    received_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("source", "external_event_id", name="uq_webhook_events_source_event"),
        Index("idx_webhook_events_received", "received_at"),
        Index("idx_webhook_events_unprocessed", "processed", "received_at"),
    )


class Payment(Base):
    """Payment model - upserted per invoice event, never deleted."""

    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(PK_BIGINT, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    external_payment_ref: Mapped[str] = mapped_column(TEXT, nullable=False)  # pi_...
    external_subscription_ref: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    amount: Mapped[int] = mapped_column(BIGINT, nullable=False)  # minor units
    currency: Mapped[str] = mapped_column(TEXT, nullable=False)
    status: Mapped[str] = mapped_column(TEXT, nullable=False)  # succeeded | failed
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("external_payment_ref", name="uq_payments_external_ref"),
        Index("idx_payments_tenant", "tenant_id"),
    )


class NotificationQueueEntry(Base):
    """Notification outbox row, drained by the external delivery worker."""

    __tablename__ = "notification_queue"

    id: Mapped[int] = mapped_column(PK_BIGINT, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    destination: Mapped[str] = mapped_column(TEXT, nullable=False)
    template_name: Mapped[str] = mapped_column(TEXT, nullable=False)
    template_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    scheduled_for: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="pending")
    # pending | sent | failed
    attempts: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_notification_queue_due", "status", "scheduled_for"),
        Index("idx_notification_queue_tenant_template", "tenant_id", "template_name"),
    )


class BillingAuditLog(Base):
    """BillingAuditLog model - append-only trail of billing state changes."""

    __tablename__ = "billing_audit_logs"

    id: Mapped[int] = mapped_column(PK_BIGINT, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(TEXT, nullable=False)
    # SUBSCRIPTION_UPSERTED, SUBSCRIPTION_CANCELED, TRIAL_STARTED, TRIAL_EXPIRED, ...
    tenant_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    related_entity_type: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    related_entity_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    actor: Mapped[str] = mapped_column(TEXT, nullable=False)  # webhook:stripe, cron, admin
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_billing_audit_logs_tenant", "tenant_id"),
        Index("idx_billing_audit_logs_created", "created_at"),
    )
