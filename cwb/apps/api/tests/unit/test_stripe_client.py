"""Unit tests for Stripe signature verification and the subscription lookup client."""

import json
from unittest.mock import patch

import pytest
import stripe

from billing_helpers import TEST_WEBHOOK_SECRET, sign_payload
from cwb_api.billing.errors import AuthenticationFailure, TransientDependencyFailure
from cwb_api.billing.stripe_client import StripeBillingClient, verify_stripe_event

BODY = json.dumps({"id": "evt_1", "type": "invoice.paid", "data": {"object": {}}})


def test_valid_signature_returns_event_dict():
    event = verify_stripe_event(BODY.encode(), sign_payload(BODY), TEST_WEBHOOK_SECRET, 300)

    assert event["id"] == "evt_1"
    assert isinstance(event, dict)


def test_missing_header():
    with pytest.raises(AuthenticationFailure) as exc_info:
        verify_stripe_event(BODY.encode(), None, TEST_WEBHOOK_SECRET, 300)

    assert exc_info.value.code == "WEBHOOK_MISSING_SIGNATURE"


@pytest.mark.parametrize("header", ["garbage", "t=1,v1=deadbeef"])
def test_bad_signature(header):
    with pytest.raises(AuthenticationFailure) as exc_info:
        verify_stripe_event(BODY.encode(), header, TEST_WEBHOOK_SECRET, 300)

    assert exc_info.value.code == "WEBHOOK_SIGNATURE_INVALID"


def test_tampered_body():
    header = sign_payload(BODY)
    tampered = BODY.replace("evt_1", "evt_2")

    with pytest.raises(AuthenticationFailure):
        verify_stripe_event(tampered.encode(), header, TEST_WEBHOOK_SECRET, 300)


def test_signed_non_json_body():
    body = "not json"

    with pytest.raises(AuthenticationFailure) as exc_info:
        verify_stripe_event(body.encode(), sign_payload(body), TEST_WEBHOOK_SECRET, 300)

    assert exc_info.value.code == "WEBHOOK_INVALID_JSON"


def test_client_requires_secret_key(monkeypatch):
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)

    with pytest.raises(ValueError, match="STRIPE_SECRET_KEY"):
        StripeBillingClient()


def test_retrieve_subscription_returns_plain_dict():
    client = StripeBillingClient(api_key="sk_test_123", timeout=2)
    payload = {
        "id": "sub_1",
        "object": "subscription",
        "status": "active",
        "items": {"data": [{"id": "si_1", "price": {"id": "price_professional"}}]},
    }
    remote = stripe.StripeObject.construct_from(payload, "sk_test_123")

    with patch.object(stripe.Subscription, "retrieve", return_value=remote) as retrieve:
        result = client.retrieve_subscription("sub_1")

    retrieve.assert_called_once_with("sub_1", api_key="sk_test_123")
    assert result == payload
    assert type(result) is dict
    assert type(result["items"]["data"][0]["price"]) is dict


def test_retrieve_subscription_wraps_stripe_errors():
    client = StripeBillingClient(api_key="sk_test_123", timeout=2)

    with patch.object(
        stripe.Subscription, "retrieve", side_effect=stripe.APIConnectionError("timed out")
    ):
        with pytest.raises(TransientDependencyFailure, match="sub_1"):
            client.retrieve_subscription("sub_1")
