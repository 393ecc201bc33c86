"""Billing failure taxonomy.

  AuthenticationFailure       bad/missing webhook signature → 400, nothing persisted
  ValidationFailure           malformed/incomplete event → recorded with error, acknowledged
  NotFoundFailure             unknown tenant/customer/subscription → logged, skipped, acknowledged
  TransientDependencyFailure  side effect (notification, processor lookup) failed → isolated, logged
  SweepRowFailure             one trial row failed during a sweep → counted, batch continues
"""

from typing import Optional


class BillingError(Exception):
    """Base class; ``code`` is the stable log/event code."""

    code = "BILLING_ERROR"

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class AuthenticationFailure(BillingError):
    code = "WEBHOOK_SIGNATURE_INVALID"


class ValidationFailure(BillingError):
    code = "WEBHOOK_INVALID_PAYLOAD"


class NotFoundFailure(BillingError):
    code = "BILLING_REFERENCE_NOT_FOUND"


class TransientDependencyFailure(BillingError):
    code = "BILLING_DEPENDENCY_FAILED"


class SweepRowFailure(BillingError):
    code = "TRIAL_SWEEP_ROW_FAILED"

    def __init__(self, message: str, *, tenant_id: str, subscription_id: int):
        super().__init__(message)
        self.tenant_id = tenant_id
        self.subscription_id = subscription_id
