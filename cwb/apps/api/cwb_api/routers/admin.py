"""Admin endpoints for billing support.

WARNING: These endpoints are for authorized operators only.
- Protected by ADMIN_TOKEN header
- All actions are audit logged
"""

import logging
import os
import secrets

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from cwb_api.billing.errors import NotFoundFailure, ValidationFailure
from cwb_api.billing.trials import convert_trial
from cwb_api.context import request_id_var, tenant_id_var
from cwb_api.db.session import get_db
from cwb_api.pricing.plans import get_plan_table
from cwb_api.schemas import ConvertTrialRequest, ConvertTrialResponse
from cwb_api.utils.clock import as_utc, utcnow

router = APIRouter(prefix="/admin", tags=["admin"])
logger = logging.getLogger(__name__)


# ============================================================================
# Helpers
# ============================================================================


def _get_admin_token() -> str:
    """Get admin token from environment.

    Raises:
        RuntimeError: If ADMIN_TOKEN not set
    """
    token = os.getenv("ADMIN_TOKEN")
    if not token:
        raise RuntimeError(
            "ADMIN_TOKEN not set. Configure ADMIN_TOKEN environment variable."
        )
    return token


def _verify_admin_token(provided_token: str) -> None:
    """Verify admin token using constant-time comparison.

    Raises:
        HTTPException 401: If token is invalid
        HTTPException 500: If ADMIN_TOKEN not configured
    """
    try:
        expected_token = _get_admin_token()
    except RuntimeError as e:
        logger.error(f"Admin token not configured: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Admin token not configured on server",
        )

    if not secrets.compare_digest(provided_token, expected_token):
        logger.warning(
            "Invalid admin token attempt",
            extra={
                "event": "admin.auth_failed",
                "request_id": request_id_var.get(),
            },
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid X-Admin-Token",
            headers={"WWW-Authenticate": "Header"},
        )


def _get_client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


# ============================================================================
# Endpoints
# ============================================================================


@router.post("/trials/convert", response_model=ConvertTrialResponse, response_model_by_alias=True)
def convert_tenant_trial(
    payload: ConvertTrialRequest,
    request: Request,
    x_admin_token: str = Header(..., alias="X-Admin-Token"),
    db: Session = Depends(get_db),
) -> ConvertTrialResponse:
    """Manually convert a tenant's trial to a paid plan.

    ADMIN ONLY. For customers paying outside the processor checkout.

    Raises:
        HTTPException 400: Unknown plan price
        HTTPException 401: Invalid admin token
        HTTPException 404: Tenant has no trial subscription
    """
    _verify_admin_token(x_admin_token)
    tenant_id_var.set(payload.tenant_id)

    actor = f"admin:{_get_client_ip(request)}"
    try:
        subscription = convert_trial(
            db,
            payload.tenant_id,
            payload.price_ref,
            get_plan_table(),
            utcnow(),
            actor=actor,
        )
    except ValidationFailure as e:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except NotFoundFailure as e:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    db.commit()

    plan = get_plan_table().get(subscription.price_ref)
    logger.info(
        "Trial converted manually",
        extra={
            "event": "admin.trial.convert",
            "actor": actor,
            "price_ref": subscription.price_ref,
        },
    )
    return ConvertTrialResponse(
        tenant_id=payload.tenant_id,
        subscription_ref=subscription.external_subscription_ref,
        price_ref=subscription.price_ref,
        plan=plan.display_name,
        quota=subscription.quota,
        status=subscription.status,
        current_period_end=as_utc(subscription.current_period_end).isoformat(),
    )
