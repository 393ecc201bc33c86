"""
End-to-end tests for POST /webhooks/stripe.

Tests:
1. Signature failures are rejected before anything is persisted
2. Duplicate deliveries are acknowledged with zero side effects
3. Trial → paid upgrade deletes the trial row and cancels its reminders
4. Dunning: payment failed → past_due → payment recovered → active
5. Unknown references are skipped, malformed events fail and are retried
6. checkout.session.completed links the customer and syncs the subscription
"""

import json
import time
from unittest.mock import MagicMock, patch

from sqlalchemy import func, select

from billing_helpers import (
    NOW,
    invoice_object,
    sign_payload,
    stripe_event,
    subscription_object,
)
from cwb_api.billing.errors import TransientDependencyFailure
from cwb_api.db.models import (
    BillingAuditLog,
    NotificationQueueEntry,
    Payment,
    Subscription,
    Tenant,
    WebhookEvent,
)
from cwb_api.notifications import queue
from cwb_api.pricing.plans import UNKNOWN_PRICE_FALLBACK_RULE


def _count(db_session, model) -> int:
    return db_session.execute(select(func.count()).select_from(model)).scalar_one()


def _subscriptions(db_session, tenant_id="tenant_a") -> list[Subscription]:
    db_session.expire_all()
    return list(
        db_session.execute(
            select(Subscription).where(Subscription.tenant_id == tenant_id)
        ).scalars()
    )


def _templates(db_session, tenant_id="tenant_a") -> list[str]:
    return [entry.template_name for entry in queue.list_for_tenant(db_session, tenant_id)]


# ============================================================================
# Signature verification
# ============================================================================


def test_wrong_secret_is_rejected_and_nothing_persisted(post_event, db_session):
    event = stripe_event("evt_sig", "customer.subscription.updated", subscription_object())
    body = json.dumps(event)
    response = post_event(event, signature=sign_payload(body, secret="whsec_other"))

    assert response.status_code == 400
    assert response.headers["content-type"].startswith("application/problem+json")
    assert response.json()["error_code"] == "WEBHOOK_SIGNATURE_INVALID"
    assert _count(db_session, WebhookEvent) == 0


def test_missing_signature_header(client, db_session):
    response = client.post(
        "/webhooks/stripe",
        content=b'{"id": "evt_1"}',
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["error_code"] == "WEBHOOK_MISSING_SIGNATURE"
    assert _count(db_session, WebhookEvent) == 0


def test_stale_signature_timestamp_is_rejected(post_event, db_session):
    event = stripe_event("evt_old", "customer.subscription.updated", subscription_object())
    body = json.dumps(event)
    stale = sign_payload(body, timestamp=int(time.time()) - 3600)

    response = post_event(event, signature=stale)

    assert response.status_code == 400
    assert _count(db_session, WebhookEvent) == 0


def test_missing_signing_secret_is_a_misconfig(post_event, db_session, monkeypatch):
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET")

    response = post_event(stripe_event("evt_cfg", "invoice.paid", invoice_object()))

    assert response.status_code == 400
    assert response.json()["error_code"] == "WEBHOOK_PROVIDER_MISCONFIG"
    assert _count(db_session, WebhookEvent) == 0


# ============================================================================
# Idempotency
# ============================================================================


def test_duplicate_delivery_has_no_second_effect(post_event, db_session, make_tenant):
    make_tenant(customer_ref="cus_123")
    event = stripe_event(
        "evt_dup", "customer.subscription.updated", subscription_object(price_ref="price_starter")
    )

    first = post_event(event)
    second = post_event(event)

    assert first.json() == {"received": True, "status": "processed", "eventId": "evt_dup"}
    assert second.status_code == 200
    assert second.json()["status"] == "already_processed"
    assert _count(db_session, WebhookEvent) == 1
    assert len(_subscriptions(db_session)) == 1
    audit_rows = db_session.execute(
        select(func.count()).select_from(BillingAuditLog).where(
            BillingAuditLog.event_type == "SUBSCRIPTION_UPSERTED"
        )
    ).scalar_one()
    assert audit_rows == 1


# ============================================================================
# Subscription snapshots
# ============================================================================


def test_trial_upgrade_replaces_trial_row(post_event, db_session, make_tenant, make_subscription):
    make_tenant(customer_ref="cus_123")
    make_subscription()
    for day in (7, 11, 14):
        queue.enqueue(
            db_session,
            tenant_id="tenant_a",
            destination="owner@example.test",
            template_name=queue.trial_reminder_template(day),
            template_data={},
            scheduled_for=NOW,
        )
    db_session.commit()

    response = post_event(
        stripe_event("evt_upgrade", "customer.subscription.created", subscription_object())
    )

    assert response.json()["status"] == "processed"
    rows = _subscriptions(db_session)
    assert len(rows) == 1
    paid = rows[0]
    assert paid.external_subscription_ref == "sub_123"
    assert paid.status == "active"
    assert paid.price_ref == "price_professional"
    assert paid.quota == 20

    reminders = queue.list_for_tenant(db_session, "tenant_a")
    assert {entry.status for entry in reminders} == {queue.STATUS_FAILED}
    assert all(entry.last_error == "canceled: trial converted" for entry in reminders)


def test_unknown_price_falls_back_to_lowest_tier(post_event, db_session, make_tenant):
    make_tenant(customer_ref="cus_123")

    post_event(
        stripe_event(
            "evt_new_price",
            "customer.subscription.updated",
            subscription_object(price_ref="price_brand_new"),
        )
    )

    (row,) = _subscriptions(db_session)
    assert row.price_ref == "price_brand_new"
    assert row.quota == 5
    audit = db_session.execute(
        select(BillingAuditLog).where(BillingAuditLog.event_type == "SUBSCRIPTION_UPSERTED")
    ).scalar_one()
    assert audit.details["fallback_rule"] == UNKNOWN_PRICE_FALLBACK_RULE


def test_tenant_resolved_from_metadata(post_event, db_session, make_tenant):
    make_tenant(tenant_id="tenant_meta")

    response = post_event(
        stripe_event(
            "evt_meta",
            "customer.subscription.updated",
            subscription_object(customer_ref="cus_unlinked", tenant_id="tenant_meta"),
        )
    )

    assert response.json()["status"] == "processed"
    assert len(_subscriptions(db_session, "tenant_meta")) == 1


def test_subscription_deleted_cancels(post_event, db_session, make_tenant, make_subscription):
    make_tenant(customer_ref="cus_123")
    make_subscription(price_ref="price_starter", status="active", external_ref="sub_123")

    response = post_event(
        stripe_event(
            "evt_del",
            "customer.subscription.deleted",
            subscription_object(status="canceled"),
        )
    )

    assert response.json()["status"] == "processed"
    (row,) = _subscriptions(db_session)
    assert row.status == "canceled"


# ============================================================================
# Invoices
# ============================================================================


def test_dunning_round_trip(post_event, db_session, make_tenant, make_subscription):
    make_tenant(customer_ref="cus_123")
    make_subscription(price_ref="price_professional", status="active", external_ref="sub_123", quota=20)

    failed = post_event(
        stripe_event(
            "evt_fail",
            "invoice.payment_failed",
            invoice_object(attempt_count=1, hosted_invoice_url="https://pay.example.test/in_123"),
        )
    )
    assert failed.json()["status"] == "processed"
    assert _subscriptions(db_session)[0].status == "past_due"

    recovered = post_event(stripe_event("evt_paid", "invoice.payment_succeeded", invoice_object()))
    assert recovered.json()["status"] == "processed"
    assert _subscriptions(db_session)[0].status == "active"

    assert sorted(_templates(db_session)) == [queue.PAYMENT_FAILED, queue.SUBSCRIPTION_REACTIVATED]
    payment = db_session.execute(select(Payment)).scalar_one()
    assert payment.external_payment_ref == "pi_123"
    assert payment.status == "succeeded"


def test_payment_success_on_active_subscription_only_records_payment(
    post_event, db_session, make_tenant, make_subscription
):
    make_tenant(customer_ref="cus_123")
    make_subscription(price_ref="price_starter", status="active", external_ref="sub_123")

    post_event(stripe_event("evt_renewal", "invoice.paid", invoice_object(payment_ref="pi_renewal")))

    assert _subscriptions(db_session)[0].status == "active"
    assert _count(db_session, Payment) == 1
    assert _templates(db_session) == []


def test_one_off_invoices_leave_the_trial_alone(post_event, db_session, make_tenant, make_subscription):
    make_tenant(customer_ref="cus_123")
    make_subscription()

    failed = post_event(
        stripe_event(
            "evt_oneoff_fail",
            "invoice.payment_failed",
            invoice_object(invoice_ref="in_oneoff", subscription_ref=None, payment_ref="pi_oneoff_1"),
        )
    )
    paid = post_event(
        stripe_event(
            "evt_oneoff_paid",
            "invoice.payment_succeeded",
            invoice_object(invoice_ref="in_oneoff", subscription_ref=None, payment_ref="pi_oneoff_2"),
        )
    )

    assert failed.json()["status"] == "processed"
    assert paid.json()["status"] == "processed"
    (trial,) = _subscriptions(db_session)
    assert (trial.price_ref, trial.status) == ("trial", "trialing")
    assert _count(db_session, Payment) == 2
    assert _templates(db_session) == []


def test_notification_failure_does_not_roll_back_state(
    post_event, db_session, make_tenant, make_subscription
):
    make_tenant(customer_ref="cus_123", email=None)
    make_subscription(price_ref="price_starter", status="active", external_ref="sub_123")

    response = post_event(stripe_event("evt_nomail", "invoice.payment_failed", invoice_object()))

    assert response.json()["status"] == "processed"
    assert _subscriptions(db_session)[0].status == "past_due"
    assert _count(db_session, NotificationQueueEntry) == 0
    db_session.expire_all()
    assert db_session.execute(select(WebhookEvent)).scalar_one().processed is True


# ============================================================================
# Skips and failures
# ============================================================================


def test_unknown_customer_is_skipped(post_event, db_session):
    response = post_event(
        stripe_event("evt_ghost", "customer.subscription.updated", subscription_object(customer_ref="cus_ghost"))
    )

    assert response.status_code == 200
    assert response.json()["status"] == "skipped"
    db_session.expire_all()
    row = db_session.execute(select(WebhookEvent)).scalar_one()
    assert row.processed is True
    assert row.error is None
    assert _count(db_session, Subscription) == 0


def test_malformed_event_fails_and_is_retried_on_redelivery(post_event, db_session, make_tenant):
    make_tenant(customer_ref="cus_123")
    event = stripe_event(
        "evt_bad", "customer.subscription.updated", {"id": "sub_123", "status": "active"}
    )

    first = post_event(event)

    assert first.status_code == 200
    assert first.json()["status"] == "failed"
    assert first.json()["error"]
    db_session.expire_all()
    row = db_session.execute(select(WebhookEvent)).scalar_one()
    assert row.processed is False
    assert row.error

    second = post_event(event)

    assert second.json()["status"] == "failed"
    db_session.expire_all()
    assert db_session.execute(select(WebhookEvent)).scalar_one().attempts == 2


def test_unhandled_event_type_is_acknowledged(post_event, db_session):
    response = post_event(stripe_event("evt_misc", "customer.created", {"id": "cus_9"}))

    assert response.json()["status"] == "processed"
    db_session.expire_all()
    assert db_session.execute(select(WebhookEvent)).scalar_one().event_type == "customer.created"


# ============================================================================
# Checkout
# ============================================================================


def test_checkout_completed_links_customer_and_syncs(post_event, db_session, make_tenant, make_subscription):
    make_tenant()
    make_subscription()
    stripe_client = MagicMock()
    stripe_client.retrieve_subscription.return_value = subscription_object(
        subscription_ref="sub_co", customer_ref="cus_co", price_ref="price_enterprise"
    )

    with patch("cwb_api.routers.webhooks.get_stripe_client", return_value=stripe_client):
        response = post_event(
            stripe_event(
                "evt_checkout",
                "checkout.session.completed",
                {
                    "id": "cs_1",
                    "customer": "cus_co",
                    "subscription": "sub_co",
                    "client_reference_id": "tenant_a",
                },
            )
        )

    assert response.json()["status"] == "processed"
    stripe_client.retrieve_subscription.assert_called_once_with("sub_co")
    db_session.expire_all()
    assert db_session.get(Tenant, "tenant_a").external_customer_ref == "cus_co"
    (row,) = _subscriptions(db_session)
    assert row.external_subscription_ref == "sub_co"
    assert row.quota == 100


def test_checkout_retrieve_failure_is_retryable(post_event, db_session, make_tenant):
    make_tenant()
    stripe_client = MagicMock()
    stripe_client.retrieve_subscription.side_effect = TransientDependencyFailure("timeout")

    with patch("cwb_api.routers.webhooks.get_stripe_client", return_value=stripe_client):
        response = post_event(
            stripe_event(
                "evt_checkout_fail",
                "checkout.session.completed",
                {"id": "cs_2", "customer": "cus_co", "subscription": "sub_co", "client_reference_id": "tenant_a"},
            )
        )

    assert response.json()["status"] == "failed"
    db_session.expire_all()
    # Customer link was rolled back with the rest of the event
    assert db_session.get(Tenant, "tenant_a").external_customer_ref is None
    assert db_session.execute(select(WebhookEvent)).scalar_one().processed is False


def test_duplicate_recovery_event_reactivates_once(
    post_event, db_session, make_tenant, make_subscription
):
    make_tenant(customer_ref="cus_123")
    make_subscription(price_ref="price_starter", status="past_due", external_ref="sub_123")
    event = stripe_event("evt_recover", "invoice.payment_succeeded", invoice_object())

    assert post_event(event).json()["status"] == "processed"
    assert post_event(event).json()["status"] == "already_processed"

    assert _subscriptions(db_session)[0].status == "active"
    assert _templates(db_session) == [queue.SUBSCRIPTION_REACTIVATED]
