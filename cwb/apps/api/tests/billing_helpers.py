"""Shared constants and Stripe payload builders for the API tests."""

import hashlib
import hmac
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

TEST_WEBHOOK_SECRET = "whsec_test_secret"
TEST_CRON_SECRET = "cron-test-secret"
TEST_INTERNAL_TOKEN = "internal-test-token"
TEST_ADMIN_TOKEN = "admin-test-token"

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def sign_payload(payload: str, secret: str = TEST_WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header: t=<ts>,v1=HMAC_SHA256(secret, "<ts>.<payload>")."""
    ts = timestamp if timestamp is not None else int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"t={ts},v1={signature}"


def stripe_event(event_id: str, event_type: str, obj: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(NOW.timestamp()),
        "livemode": False,
        "data": {"object": obj},
    }


def subscription_object(
    subscription_ref: Optional[str] = "sub_123",
    customer_ref: str = "cus_123",
    price_ref: str = "price_professional",
    status: str = "active",
    period_start: datetime = NOW,
    period_end: Optional[datetime] = None,
    tenant_id: Optional[str] = None,
) -> dict[str, Any]:
    period_end = period_end or period_start + timedelta(days=30)
    return {
        "id": subscription_ref,
        "object": "subscription",
        "customer": customer_ref,
        "status": status,
        "cancel_at_period_end": False,
        "current_period_start": int(period_start.timestamp()),
        "current_period_end": int(period_end.timestamp()),
        "items": {"data": [{"price": {"id": price_ref}}]},
        "metadata": {"tenant_id": tenant_id} if tenant_id else {},
    }


def invoice_object(
    invoice_ref: str = "in_123",
    customer_ref: str = "cus_123",
    subscription_ref: Optional[str] = "sub_123",
    payment_ref: str = "pi_123",
    amount: int = 2000,
    **extra: Any,
) -> dict[str, Any]:
    return {
        "id": invoice_ref,
        "object": "invoice",
        "customer": customer_ref,
        "subscription": subscription_ref,
        "payment_intent": payment_ref,
        "amount_paid": amount,
        "amount_due": amount,
        "currency": "usd",
        **extra,
    }

