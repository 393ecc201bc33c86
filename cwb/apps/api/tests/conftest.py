"""Pytest configuration and fixtures."""

import sys
from pathlib import Path
# Inject sys.path for reliable pytest imports
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # => .../apps/api
sys.path.insert(0, str(Path(__file__).resolve().parent))  # => .../apps/api/tests

import json
import os
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

# The app builds its engine at import time; point it at SQLite before importing
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("CWB_JSON_LOGS", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from cwb_api.db.models import Base, Subscription, Tenant
from cwb_api.db.session import get_db
from cwb_api.main import app
from billing_helpers import (
    NOW,
    TEST_ADMIN_TOKEN,
    TEST_CRON_SECRET,
    TEST_INTERNAL_TOKEN,
    TEST_WEBHOOK_SECRET,
    sign_payload,
)


@pytest.fixture(autouse=True)
def billing_env(monkeypatch):
    """Secrets every endpoint needs; individual tests delete what they exercise."""
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)
    monkeypatch.setenv("CRON_SECRET", TEST_CRON_SECRET)
    monkeypatch.setenv("INTERNAL_API_TOKEN", TEST_INTERNAL_TOKEN)
    monkeypatch.setenv("ADMIN_TOKEN", TEST_ADMIN_TOKEN)
    monkeypatch.setenv("APP_BASE_URL", "https://app.example.test")
    monkeypatch.delenv("CWB_ENV", raising=False)


@pytest.fixture(scope="function")
def db_session() -> Session:
    """Fresh in-memory SQLite database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = SessionLocal()

    try:
        yield session
        session.rollback()
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def client(db_session: Session) -> TestClient:
    """TestClient whose requests share the test's session."""

    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_db, None)


# ============================================================================
# Store helpers
# ============================================================================


@pytest.fixture
def make_tenant(db_session: Session) -> Callable[..., Tenant]:
    def _make(
        tenant_id: str = "tenant_a",
        email: Optional[str] = "owner@example.test",
        display_name: Optional[str] = "Ada",
        customer_ref: Optional[str] = None,
    ) -> Tenant:
        tenant = Tenant(
            tenant_id=tenant_id,
            email=email,
            display_name=display_name,
            external_customer_ref=customer_ref,
        )
        db_session.add(tenant)
        db_session.commit()
        return tenant

    return _make


@pytest.fixture
def make_subscription(db_session: Session) -> Callable[..., Subscription]:
    def _make(
        tenant_id: str = "tenant_a",
        external_ref: Optional[str] = None,
        price_ref: str = "trial",
        status: str = "trialing",
        quota: int = 5,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
    ) -> Subscription:
        period_start = period_start or NOW - timedelta(days=1)
        subscription = Subscription(
            tenant_id=tenant_id,
            external_subscription_ref=external_ref or f"trial_{tenant_id}",
            price_ref=price_ref,
            status=status,
            quota=quota,
            current_period_start=period_start,
            current_period_end=period_end or period_start + timedelta(days=14),
            cancel_at_period_end=False,
            created_at=created_at or period_start,
            updated_at=created_at or period_start,
        )
        db_session.add(subscription)
        db_session.commit()
        return subscription

    return _make


@pytest.fixture
def post_event(client: TestClient) -> Callable[..., Any]:
    """POST a signed Stripe event to the webhook ingress."""

    def _post(event: dict[str, Any], signature: Optional[str] = None):
        body = json.dumps(event)
        return client.post(
            "/webhooks/stripe",
            content=body,
            headers={
                "Content-Type": "application/json",
                "Stripe-Signature": signature if signature is not None else sign_payload(body),
            },
        )

    return _post
