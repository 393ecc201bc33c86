"""Pydantic schemas for API requests/responses."""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============================================================================
# RFC 9457 Problem Details
# ============================================================================


class ProblemDetail(BaseModel):
    """RFC 9457 Problem Details for HTTP API errors.

    RFC 9457: detail can be either a string or a structured object (dict).
    """

    type: str = Field(..., description="URI reference identifying the problem type")
    title: str = Field(..., description="Short, human-readable summary")
    status: int = Field(..., description="HTTP status code")
    detail: str | dict[str, Any] = Field(..., description="Human-readable explanation or structured error details")
    instance: Optional[str] = Field(None, description="URI reference identifying the specific occurrence")


# ============================================================================
# POST /internal/tenants/{tenant_id}/trial
# ============================================================================


class TrialStartRequest(BaseModel):
    """Onboarding completion: refresh the tenant mirror and start its trial."""

    model_config = ConfigDict(populate_by_name=True)

    email: Optional[str] = Field(None, max_length=320, description="Notification destination")
    display_name: Optional[str] = Field(
        None, alias="displayName", max_length=200, description="Name used in notifications"
    )

    @field_validator("email")
    @classmethod
    def _email_shape(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip()
        if "@" not in value or value.startswith("@") or value.endswith("@"):
            raise ValueError("email must look like an address")
        return value


class TrialStartResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str = Field(..., serialization_alias="tenantId")
    created: bool
    status: str
    price_ref: str = Field(..., serialization_alias="priceRef")
    quota: int
    trial_ends_at: Optional[str] = Field(None, serialization_alias="trialEndsAt")
    reminders_queued: int = Field(0, serialization_alias="remindersQueued")


# ============================================================================
# POST /admin/trials/convert
# ============================================================================


class ConvertTrialRequest(BaseModel):
    """Manual trial conversion (support tooling)."""

    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str = Field(..., alias="tenantId", min_length=1, max_length=128)
    price_ref: str = Field(..., alias="priceRef", min_length=1, max_length=128)


class ConvertTrialResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    tenant_id: str = Field(..., serialization_alias="tenantId")
    subscription_ref: str = Field(..., serialization_alias="subscriptionRef")
    price_ref: str = Field(..., serialization_alias="priceRef")
    plan: str
    quota: int
    status: str
    current_period_end: str = Field(..., serialization_alias="currentPeriodEnd")
