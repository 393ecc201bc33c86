"""Stripe integration: webhook signature verification and subscription re-query.

Verification uses the stripe SDK (timestamped HMAC-SHA256 over
``"{t}.{payload}"`` with replay tolerance). Re-query is used only when a
checkout session completes and the subscription snapshot has to be fetched.
"""

import json
import logging
from typing import Optional

import stripe

from cwb_api.billing.errors import AuthenticationFailure, TransientDependencyFailure
from cwb_api.config.env import get_stripe_api_timeout_seconds, get_stripe_secret_key

logger = logging.getLogger(__name__)


def verify_stripe_event(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance: int,
) -> dict:
    """Verify the Stripe-Signature header and return the decoded event dict.

    Raises:
        AuthenticationFailure: Missing/invalid signature, stale timestamp, or
            a body that is not UTF-8 JSON
    """
    if not signature_header:
        raise AuthenticationFailure("missing Stripe-Signature header", code="WEBHOOK_MISSING_SIGNATURE")

    try:
        stripe.Webhook.construct_event(raw_body, signature_header, secret, tolerance=tolerance)
    except stripe.SignatureVerificationError as e:
        raise AuthenticationFailure(f"signature verification failed: {e}") from e
    except ValueError as e:
        raise AuthenticationFailure("payload is not valid JSON", code="WEBHOOK_INVALID_JSON") from e

    # Plain dict for handlers; the SDK's StripeObject is not needed past verification
    return json.loads(raw_body)


def _as_plain_dict(stripe_object: stripe.StripeObject) -> dict:
    # Recursive on every SDK: to_dict_recursive until v12, to_dict after
    if hasattr(stripe_object, "to_dict_recursive"):
        return stripe_object.to_dict_recursive()
    return stripe_object.to_dict()


class StripeBillingClient:
    """Stripe API client for read-only subscription lookups.

    API key: STRIPE_SECRET_KEY. Every call is bounded by
    STRIPE_API_TIMEOUT_SECONDS and never retried here; the webhook
    redelivery is the retry.
    """

    def __init__(self, api_key: Optional[str] = None, timeout: Optional[float] = None):
        self.api_key = api_key or get_stripe_secret_key()
        self.timeout = timeout or get_stripe_api_timeout_seconds()

        stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout)
        stripe.max_network_retries = 0

    def retrieve_subscription(self, subscription_ref: str) -> dict:
        """Fetch a subscription object as a plain dict.

        Raises:
            TransientDependencyFailure: On any Stripe API or network error
        """
        try:
            subscription = stripe.Subscription.retrieve(subscription_ref, api_key=self.api_key)
        except stripe.StripeError as e:
            logger.warning(
                "STRIPE_SUBSCRIPTION_RETRIEVE_FAILED",
                extra={
                    "subscription_ref": subscription_ref,
                    "error_class": type(e).__name__,
                    "http_status": getattr(e, "http_status", None),
                },
            )
            raise TransientDependencyFailure(
                f"could not retrieve subscription {subscription_ref}: {type(e).__name__}"
            ) from e

        result = _as_plain_dict(subscription)
        logger.info(
            "STRIPE_SUBSCRIPTION_RETRIEVED",
            extra={"subscription_ref": subscription_ref, "status": result.get("status")},
        )
        return result


# Global client instance (singleton)
_stripe_client: Optional[StripeBillingClient] = None


def get_stripe_client() -> StripeBillingClient:
    """Get global Stripe client instance (singleton).

    Raises:
        ValueError: If STRIPE_SECRET_KEY is not configured
    """
    global _stripe_client
    if _stripe_client is None:
        _stripe_client = StripeBillingClient()
    return _stripe_client
