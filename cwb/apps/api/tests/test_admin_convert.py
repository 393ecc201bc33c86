"""Tests for POST /admin/trials/convert (manual trial conversion)."""

from sqlalchemy import select

from billing_helpers import NOW, TEST_ADMIN_TOKEN
from cwb_api.db.models import BillingAuditLog, Subscription
from cwb_api.notifications import queue

ADMIN_HEADERS = {"X-Admin-Token": TEST_ADMIN_TOKEN}


def _convert(client, tenant_id="tenant_a", price_ref="price_professional", headers=None):
    return client.post(
        "/admin/trials/convert",
        json={"tenantId": tenant_id, "priceRef": price_ref},
        headers=ADMIN_HEADERS if headers is None else headers,
    )


def test_wrong_admin_token(client, make_tenant, make_subscription):
    make_tenant()
    make_subscription()

    response = _convert(client, headers={"X-Admin-Token": "nope"})

    assert response.status_code == 401


def test_missing_admin_token_header_is_422(client):
    response = _convert(client, headers={})

    assert response.status_code == 422


def test_unknown_price_is_400(client, make_tenant, make_subscription):
    make_tenant()
    make_subscription()

    response = _convert(client, price_ref="price_bogus")

    assert response.status_code == 400
    assert "price_bogus" in response.json()["detail"]


def test_tenant_without_trial_is_404(client, make_tenant):
    make_tenant()

    response = _convert(client)

    assert response.status_code == 404


def test_convert_trial(client, db_session, make_tenant, make_subscription):
    make_tenant()
    make_subscription()
    queue.enqueue(
        db_session,
        tenant_id="tenant_a",
        destination="owner@example.test",
        template_name=queue.trial_reminder_template(11),
        template_data={},
        scheduled_for=NOW,
    )
    db_session.commit()

    response = _convert(client, price_ref="price_enterprise")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["tenantId"] == "tenant_a"
    assert body["plan"] == "Enterprise"
    assert body["quota"] == 100
    assert body["status"] == "active"
    assert body["subscriptionRef"].startswith("manual_tenant_a_")

    db_session.expire_all()
    row = db_session.execute(select(Subscription)).scalar_one()
    assert row.price_ref == "price_enterprise"
    assert row.external_subscription_ref == body["subscriptionRef"]

    (reminder,) = queue.list_for_tenant(db_session, "tenant_a")
    assert reminder.status == queue.STATUS_FAILED

    audit = db_session.execute(
        select(BillingAuditLog).where(BillingAuditLog.event_type == "TRIAL_CONVERTED_MANUAL")
    ).scalar_one()
    assert audit.actor.startswith("admin:")
    assert audit.details["quota"] == 100


def test_converted_trial_is_not_converted_twice(client, make_tenant, make_subscription):
    make_tenant()
    make_subscription()

    assert _convert(client).status_code == 200
    assert _convert(client).status_code == 404
