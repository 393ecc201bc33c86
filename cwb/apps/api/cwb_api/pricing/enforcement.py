"""
Entitlement checks: may a tenant occupy one more competitor slot?

Read-only. The decision is computed from the tenant's current subscription
plus a caller-supplied resource counter; nothing is reserved, so the caller
performs the gated action and usage grows only after it succeeds.
"""

import logging
import math
from datetime import datetime
from enum import Enum
from typing import Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from cwb_api.db.models import Subscription
from cwb_api.db.repo_subscriptions import TRIAL_PRICE_REF, SubscriptionRepository
from cwb_api.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = frozenset({"trialing", "active"})


class EntitlementReason(str, Enum):
    """Machine-readable deny reasons"""
    NO_SUBSCRIPTION = "NO_SUBSCRIPTION"
    TRIAL_EXPIRED = "TRIAL_EXPIRED"
    SUBSCRIPTION_CANCELED = "SUBSCRIPTION_CANCELED"
    SUBSCRIPTION_INACTIVE = "SUBSCRIPTION_INACTIVE"
    LIMIT_REACHED = "LIMIT_REACHED"


_STATUS_MESSAGES = {
    "canceled": "Your subscription has been canceled. Please reactivate to continue.",
    "past_due": "Your payment is past due. Please update your payment method to continue.",
    "expired": "Your subscription has expired. Please renew to continue.",
}


class ResourceCounter(Protocol):
    """Current number of monitored competitors for a tenant"""

    def count(self, tenant_id: str) -> int: ...


class FixedCount:
    """ResourceCounter over an already-known usage value"""

    def __init__(self, current: int):
        self.current = current

    def count(self, tenant_id: str) -> int:
        return self.current


class EntitlementDecision(BaseModel):
    """Result of an entitlement query, serialized with camelCase keys"""
    model_config = ConfigDict(populate_by_name=True)

    allowed: bool
    error_code: Optional[EntitlementReason] = Field(None, serialization_alias="errorCode")
    message: Optional[str] = None
    limit: Optional[int] = None
    current: Optional[int] = None
    remaining: Optional[int] = None

    def to_response(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SubscriptionSummary(BaseModel):
    """Display view of the current subscription"""
    is_active: bool = Field(..., serialization_alias="isActive")
    error_code: Optional[EntitlementReason] = Field(None, serialization_alias="errorCode")
    message: Optional[str] = None
    status: Optional[str] = None
    price_ref: Optional[str] = Field(None, serialization_alias="priceRef")
    quota: Optional[int] = None
    current_period_start: Optional[datetime] = Field(None, serialization_alias="currentPeriodStart")
    current_period_end: Optional[datetime] = Field(None, serialization_alias="currentPeriodEnd")
    cancel_at_period_end: Optional[bool] = Field(None, serialization_alias="cancelAtPeriodEnd")
    is_trial: Optional[bool] = Field(None, serialization_alias="isTrial")
    days_remaining: Optional[int] = Field(None, serialization_alias="daysRemaining")

    def to_response(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class EntitlementDeniedError(Exception):
    """Raised by require_entitlement(); rendered as 403 problem+json"""

    def __init__(self, decision: EntitlementDecision):
        self.decision = decision
        super().__init__(decision.message or str(decision.error_code))


class EntitlementChecker:
    """
    Entitlement decision procedure:
    1. No subscription → NO_SUBSCRIPTION
    2. Trialing past period end (wall clock, independent of the sweep) → TRIAL_EXPIRED
    3. Status outside {trialing, active} → SUBSCRIPTION_CANCELED / SUBSCRIPTION_INACTIVE
    4. usage >= quota → LIMIT_REACHED
    5. Otherwise allowed with limit/current/remaining
    """

    def __init__(self, session: Session, counter: ResourceCounter):
        self.subscriptions = SubscriptionRepository(session)
        self.counter = counter

    def _status_denial(
        self, subscription: Optional[Subscription], now: datetime
    ) -> Optional[EntitlementDecision]:
        if subscription is None:
            return EntitlementDecision(
                allowed=False,
                error_code=EntitlementReason.NO_SUBSCRIPTION,
                message="No subscription found. Please upgrade to continue.",
            )

        if subscription.status == "trialing":
            period_end = as_utc(subscription.current_period_end)
            if period_end is not None and now > period_end:
                return EntitlementDecision(
                    allowed=False,
                    error_code=EntitlementReason.TRIAL_EXPIRED,
                    message="Your free trial has ended. Please upgrade to continue monitoring competitors.",
                )

        if subscription.status not in ACTIVE_STATUSES:
            reason = (
                EntitlementReason.SUBSCRIPTION_CANCELED
                if subscription.status == "canceled"
                else EntitlementReason.SUBSCRIPTION_INACTIVE
            )
            return EntitlementDecision(
                allowed=False,
                error_code=reason,
                message=_STATUS_MESSAGES.get(
                    subscription.status,
                    "Your subscription is not active. Please contact support.",
                ),
            )
        return None

    def check(self, tenant_id: str, now: Optional[datetime] = None) -> EntitlementDecision:
        """May tenant_id add one more monitored competitor?"""
        now = now or utcnow()
        subscription = self.subscriptions.get_current(tenant_id)

        denial = self._status_denial(subscription, now)
        if denial is not None:
            logger.info(
                "ENTITLEMENT_DENIED",
                extra={"tenant_id": tenant_id, "error_code": denial.error_code.value},
            )
            return denial

        current = self.counter.count(tenant_id)
        limit = subscription.quota

        if current >= limit:
            logger.info(
                "ENTITLEMENT_DENIED",
                extra={
                    "tenant_id": tenant_id,
                    "error_code": EntitlementReason.LIMIT_REACHED.value,
                    "limit": limit,
                    "current": current,
                },
            )
            return EntitlementDecision(
                allowed=False,
                error_code=EntitlementReason.LIMIT_REACHED,
                message=(
                    f"You have reached your competitor limit of {limit}. "
                    "Upgrade your plan to add more competitors."
                ),
                limit=limit,
                current=current,
                remaining=0,
            )

        return EntitlementDecision(
            allowed=True,
            limit=limit,
            current=current,
            remaining=limit - current,
        )

    def summary(self, tenant_id: str, now: Optional[datetime] = None) -> SubscriptionSummary:
        """Current subscription view with days remaining for trials."""
        now = now or utcnow()
        subscription = self.subscriptions.get_current(tenant_id)

        denial = self._status_denial(subscription, now)
        if denial is not None:
            return SubscriptionSummary(
                is_active=False,
                error_code=denial.error_code,
                message=denial.message,
                status=subscription.status if subscription else None,
            )

        period_end = as_utc(subscription.current_period_end)
        days_remaining = None
        if subscription.status == "trialing" and period_end is not None:
            days_remaining = math.ceil((period_end - now).total_seconds() / 86400)

        return SubscriptionSummary(
            is_active=True,
            status=subscription.status,
            price_ref=subscription.price_ref,
            quota=subscription.quota,
            current_period_start=as_utc(subscription.current_period_start),
            current_period_end=period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            is_trial=subscription.price_ref == TRIAL_PRICE_REF,
            days_remaining=days_remaining,
        )


def require_entitlement(
    session: Session,
    tenant_id: str,
    counter: ResourceCounter,
    now: Optional[datetime] = None,
) -> EntitlementDecision:
    """Gate helper for request handlers.

    Raises:
        EntitlementDeniedError: If the decision is a denial
    """
    decision = EntitlementChecker(session, counter).check(tenant_id, now=now)
    if not decision.allowed:
        raise EntitlementDeniedError(decision)
    return decision
