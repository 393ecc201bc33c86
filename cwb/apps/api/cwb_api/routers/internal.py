"""Internal endpoints: cron trigger, onboarding hook, entitlement read.

WARNING: These endpoints are NOT for public use.
- /internal/cron/*     protected by Authorization: Bearer CRON_SECRET
- everything else      protected by Authorization: Bearer INTERNAL_API_TOKEN
"""

import logging
import secrets
import time
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from cwb_api.billing.errors import NotFoundFailure
from cwb_api.billing.trial_sweep import run_trial_sweep
from cwb_api.billing.trials import start_trial
from cwb_api.config.env import get_cron_secret, get_internal_api_token
from cwb_api.context import request_id_var, tenant_id_var
from cwb_api.db.repo_tenants import TenantRepository
from cwb_api.db.session import get_db
from cwb_api.pricing.enforcement import EntitlementChecker, FixedCount
from cwb_api.pricing.plans import get_plan_table
from cwb_api.schemas import TrialStartRequest, TrialStartResponse
from cwb_api.utils.clock import as_utc, utcnow

router = APIRouter(prefix="/internal", tags=["internal"])
logger = logging.getLogger(__name__)


# ============================================================================
# Helpers
# ============================================================================


def _verify_bearer(
    authorization: Optional[str],
    get_expected: Callable[[], str],
    audience: str,
) -> None:
    """Constant-time bearer check.

    Raises:
        HTTPException 401: Missing or wrong token
        HTTPException 500: Expected secret not configured
    """
    try:
        expected = get_expected()
    except ValueError as e:
        logger.error(f"{audience} secret not configured: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"{audience} secret not configured on server",
        )

    provided = ""
    if authorization and authorization.startswith("Bearer "):
        provided = authorization[len("Bearer "):]

    if not provided or not secrets.compare_digest(provided, expected):
        logger.warning(
            "Invalid internal token attempt",
            extra={
                "event": f"internal.{audience}.auth_failed",
                "request_id": request_id_var.get(),
            },
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    _verify_bearer(authorization, get_cron_secret, "cron")


def require_internal_token(authorization: Optional[str] = Header(None)) -> None:
    _verify_bearer(authorization, get_internal_api_token, "internal")


# ============================================================================
# Cron: trial expiry sweep
# ============================================================================


@router.api_route(
    "/cron/expire-trials",
    methods=["GET", "POST"],
    dependencies=[Depends(require_cron_secret)],
)
def expire_trials(db: Session = Depends(get_db)):
    """Run one trial-expiry sweep (hourly scheduler target).

    Per-row failures are reported in the stats; only a failure of the sweep
    itself (e.g. the candidate query) yields a 500.
    """
    started = time.perf_counter()
    now = utcnow()
    try:
        result = run_trial_sweep(db, now=now)
    except Exception as e:
        db.rollback()
        logger.error("TRIAL_SWEEP_FAILED", exc_info=True, extra={"error_class": type(e).__name__})
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "status": "error",
                "message": "Trial expiration sweep failed",
                "timestamp": now.isoformat(),
                "elapsedMs": int((time.perf_counter() - started) * 1000),
            },
        )

    body = {
        "status": "success",
        "message": result.message,
        "timestamp": now.isoformat(),
        "stats": result.stats(),
        "elapsedMs": result.elapsed_ms,
    }
    if result.error_messages:
        body["errorMessages"] = result.error_messages
    return body


# ============================================================================
# Onboarding completion → trial start
# ============================================================================


@router.post(
    "/tenants/{tenant_id}/trial",
    dependencies=[Depends(require_internal_token)],
)
def start_tenant_trial(
    tenant_id: str,
    body: Optional[TrialStartRequest] = None,
    db: Session = Depends(get_db),
):
    """Upsert the tenant mirror and start its local trial.

    201 when the trial row was created, 200 when the tenant already had a
    subscription (returned unchanged).
    """
    tenant_id_var.set(tenant_id)
    body = body or TrialStartRequest()
    TenantRepository(db).ensure(tenant_id, email=body.email, display_name=body.display_name)

    try:
        outcome = start_trial(db, tenant_id, get_plan_table(), utcnow())
    except NotFoundFailure as e:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    db.commit()

    subscription = outcome.subscription
    period_end = as_utc(subscription.current_period_end)
    response = TrialStartResponse(
        tenant_id=tenant_id,
        created=outcome.created,
        status=subscription.status,
        price_ref=subscription.price_ref,
        quota=subscription.quota,
        trial_ends_at=period_end.isoformat() if period_end else None,
        reminders_queued=outcome.reminders_queued,
    )
    return JSONResponse(
        status_code=status.HTTP_201_CREATED if outcome.created else status.HTTP_200_OK,
        content=response.model_dump(by_alias=True),
    )


# ============================================================================
# Entitlement read
# ============================================================================


@router.get(
    "/tenants/{tenant_id}/entitlement",
    dependencies=[Depends(require_internal_token)],
)
def read_entitlement(
    tenant_id: str,
    current: int = Query(0, ge=0, description="Competitors the tenant tracks right now"),
    db: Session = Depends(get_db),
):
    """Entitlement decision for one more competitor, plus the subscription summary."""
    tenant_id_var.set(tenant_id)
    now = utcnow()
    checker = EntitlementChecker(db, FixedCount(current))
    decision = checker.check(tenant_id, now=now)
    summary = checker.summary(tenant_id, now=now)
    return {
        "tenantId": tenant_id,
        "decision": decision.to_response(),
        "subscription": summary.to_response(),
    }
