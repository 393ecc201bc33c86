"""Subscription store repository."""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from cwb_api.db.models import Subscription
from cwb_api.db.upsert import insert_for

logger = logging.getLogger(__name__)

TRIAL_PRICE_REF = "trial"


def trial_subscription_ref(tenant_id: str) -> str:
    """Synthetic external reference for a tenant's local trial row."""
    return f"trial_{tenant_id}"


class SubscriptionRepository:
    """Repository for the subscriptions table."""

    def __init__(self, session: Session):
        self.session = session

    def get_current(self, tenant_id: str) -> Optional[Subscription]:
        """Return the tenant's current subscription.

        Current = most recently created row (ties broken by id). This is the only
        place that defines "current"; callers must not re-derive it.
        """
        stmt = (
            select(Subscription)
            .where(Subscription.tenant_id == tenant_id)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def get_by_external_ref(self, external_ref: str) -> Optional[Subscription]:
        stmt = select(Subscription).where(Subscription.external_subscription_ref == external_ref)
        return self.session.execute(stmt).scalar_one_or_none()

    def list_for_tenant(self, tenant_id: str) -> list[Subscription]:
        stmt = (
            select(Subscription)
            .where(Subscription.tenant_id == tenant_id)
            .order_by(Subscription.created_at.asc(), Subscription.id.asc())
        )
        return list(self.session.execute(stmt).scalars().all())

    def get_trial(self, tenant_id: str) -> Optional[Subscription]:
        stmt = (
            select(Subscription)
            .where(
                Subscription.tenant_id == tenant_id,
                Subscription.price_ref == TRIAL_PRICE_REF,
            )
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def add(self, subscription: Subscription) -> Subscription:
        self.session.add(subscription)
        self.session.flush()
        return subscription

    def delete_trial(self, tenant_id: str) -> int:
        """Delete the tenant's local trial row(s). Returns rows deleted."""
        stmt = (
            delete(Subscription)
            .where(
                Subscription.tenant_id == tenant_id,
                Subscription.price_ref == TRIAL_PRICE_REF,
            )
            .execution_options(synchronize_session="fetch")
        )
        return self.session.execute(stmt).rowcount

    def upsert_by_external_ref(
        self,
        *,
        tenant_id: str,
        external_ref: str,
        values: dict[str, Any],
        now: datetime,
    ) -> Subscription:
        """Insert or overwrite the row keyed by external_subscription_ref.

        Every field comes from ``values`` (the processor snapshot); nothing is
        merged with the previous local row.
        """
        table = Subscription.__table__
        row = {
            "tenant_id": tenant_id,
            "external_subscription_ref": external_ref,
            "created_at": now,
            "updated_at": now,
            **values,
        }
        stmt = insert_for(self.session, table).values(**row)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.external_subscription_ref],
            set_={key: stmt.excluded[key] for key in (*values.keys(), "tenant_id", "updated_at")},
        )
        self.session.execute(stmt)

        refreshed = select(Subscription).where(
            Subscription.external_subscription_ref == external_ref
        ).execution_options(populate_existing=True)
        return self.session.execute(refreshed).scalar_one()

    def set_status(self, subscription: Subscription, status: str, now: datetime) -> None:
        subscription.status = status
        subscription.updated_at = now
        self.session.flush()

    def find_expired_trials(self, now: datetime, limit: Optional[int] = None) -> list[Subscription]:
        """Local trials still marked trialing whose period has ended."""
        stmt = (
            select(Subscription)
            .where(
                Subscription.status == "trialing",
                Subscription.price_ref == TRIAL_PRICE_REF,
                Subscription.current_period_end < now,
            )
            .order_by(Subscription.current_period_end.asc(), Subscription.id.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.execute(stmt).scalars().all())

    def expire_if_trialing(self, subscription_id: int, now: datetime) -> bool:
        """Conditionally flip trialing → expired.

        Returns:
            True if this call performed the transition, False if the row had
            already left the trialing state.
        """
        stmt = (
            update(Subscription)
            .where(Subscription.id == subscription_id, Subscription.status == "trialing")
            .values(status="expired", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1
