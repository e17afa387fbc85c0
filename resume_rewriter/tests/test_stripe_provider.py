"""
Test Stripe provider: error mapping, webhook verification and event parsing.

Stripe API calls are patched; nothing leaves the process.
"""
from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest
import stripe

from resume_rewriter.features.billing.provider import BillingProviderError, BillingWebhookError
from resume_rewriter.features.billing.stripe_provider import StripeProvider


START_TS = 1738368000  # 2025-02-01T00:00:00Z
END_TS = 1740960000  # 2025-03-03T00:00:00Z


@pytest.fixture
def provider():
    return StripeProvider(secret_key="sk_test_123", webhook_secret="whsec_test_123", timeout=5)


def test_requires_secret_key():
    with pytest.raises(BillingProviderError):
        StripeProvider(secret_key=None)


def test_create_checkout_session(provider):
    with patch("stripe.checkout.Session.create") as create:
        create.return_value = Mock(id="cs_1", url="https://checkout.stripe.com/c/cs_1")
        session = provider.create_checkout_session({"mode": "payment", "line_items": []})

    assert session.session_id == "cs_1"
    assert session.url == "https://checkout.stripe.com/c/cs_1"
    assert session.mode == "payment"
    create.assert_called_once_with(mode="payment", line_items=[])


def test_connection_error_is_retryable(provider):
    with patch("stripe.checkout.Session.create", side_effect=stripe.APIConnectionError("timed out")):
        with pytest.raises(BillingProviderError) as exc_info:
            provider.create_checkout_session({"mode": "payment"})

    assert exc_info.value.retryable is True
    assert exc_info.value.status_code == 502


def test_rejected_request_is_not_retryable(provider):
    error = stripe.InvalidRequestError("No such price", "line_items")
    with patch("stripe.checkout.Session.create", side_effect=error):
        with pytest.raises(BillingProviderError) as exc_info:
            provider.create_checkout_session({"mode": "payment"})

    assert exc_info.value.retryable is False


def test_retrieve_subscription_reads_item_periods(provider):
    subscription = {
        "id": "sub_1",
        "customer": "cus_1",
        "status": "active",
        "items": {"data": [{"current_period_start": START_TS, "current_period_end": END_TS}]},
    }
    with patch("stripe.Subscription.retrieve", return_value=subscription):
        window = provider.retrieve_subscription("sub_1")

    assert window.period_start == datetime(2025, 2, 1, tzinfo=timezone.utc)
    assert window.period_end == datetime(2025, 3, 3, tzinfo=timezone.utc)
    assert window.cancel_at_period_end is False


def test_cancel_at_period_end(provider):
    subscription = {"id": "sub_1", "status": "active", "cancel_at_period_end": True, "current_period_end": END_TS}
    with patch("stripe.Subscription.modify", return_value=subscription) as modify:
        window = provider.cancel_at_period_end("sub_1")

    modify.assert_called_once_with("sub_1", cancel_at_period_end=True)
    assert window.cancel_at_period_end is True


def test_retrieve_checkout_session(provider):
    session = {
        "id": "cs_1",
        "status": "complete",
        "payment_status": "paid",
        "mode": "payment",
        "customer": "cus_1",
        "subscription": None,
        "client_reference_id": "user_alice",
        "metadata": {"userId": "user_alice", "planId": "starter-plan"},
    }
    with patch("stripe.checkout.Session.retrieve", return_value=session):
        state = provider.retrieve_checkout_session("cs_1")

    assert state.is_paid is True
    assert state.metadata["planId"] == "starter-plan"


def test_webhook_missing_signature_header(provider):
    with pytest.raises(BillingWebhookError):
        provider.handle_webhook({}, b"{}")


def test_webhook_bad_signature(provider):
    error = stripe.SignatureVerificationError("No signatures found", "t=1,v1=bad")
    with patch("stripe.Webhook.construct_event", side_effect=error):
        with pytest.raises(BillingWebhookError) as exc_info:
            provider.handle_webhook({"stripe-signature": "t=1,v1=bad"}, b"{}")

    assert exc_info.value.status_code == 400


def test_webhook_malformed_payload(provider):
    with patch("stripe.Webhook.construct_event", side_effect=ValueError("Expecting value")):
        with pytest.raises(BillingWebhookError):
            provider.handle_webhook({"stripe-signature": "t=1,v1=abc"}, b"not json")


def test_webhook_without_configured_secret():
    provider = StripeProvider(secret_key="sk_test_123", webhook_secret=None)
    provider.webhook_secret = None
    with pytest.raises(BillingWebhookError):
        provider.handle_webhook({"stripe-signature": "t=1,v1=abc"}, b"{}")


def test_parse_one_time_checkout(provider):
    event = {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_1",
                "mode": "payment",
                "payment_status": "paid",
                "status": "complete",
                "customer": "cus_1",
                "subscription": None,
                "client_reference_id": "user_alice",
                "metadata": {"userId": "user_alice", "planId": "starter-plan", "credits": "3"},
            }
        },
    }
    with patch("stripe.Webhook.construct_event", return_value=event):
        result = provider.handle_webhook({"stripe-signature": "t=1,v1=abc"}, b"{}")

    assert result.event_id == "evt_1"
    assert result.user_id == "user_alice"
    assert result.plan_id == "starter-plan"
    assert result.payment_status == "paid"
    assert result.subscription_id is None
    assert result.current_period_end is None


def test_parse_subscription_checkout_fetches_period(provider):
    event = {
        "id": "evt_2",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "mode": "subscription",
                "payment_status": "paid",
                "customer": "cus_1",
                "subscription": "sub_1",
                "client_reference_id": "user_alice",
                "metadata": {"planId": "pro-plan"},
            }
        },
    }
    subscription = {"id": "sub_1", "status": "active", "current_period_start": START_TS, "current_period_end": END_TS}
    with patch("stripe.Subscription.retrieve", return_value=subscription):
        result = provider._parse_event(event)

    # userId falls back to client_reference_id
    assert result.user_id == "user_alice"
    assert result.subscription_id == "sub_1"
    assert result.current_period_end == datetime(2025, 3, 3, tzinfo=timezone.utc)


def test_parse_subscription_updated(provider):
    event = {
        "id": "evt_3",
        "type": "customer.subscription.updated",
        "data": {
            "object": {
                "id": "sub_1",
                "customer": "cus_1",
                "status": "past_due",
                "cancel_at_period_end": True,
                "current_period_start": START_TS,
                "current_period_end": END_TS,
                "metadata": {"userId": "user_alice", "planId": "pro-plan"},
            }
        },
    }
    result = provider._parse_event(event)

    assert result.subscription_id == "sub_1"
    assert result.status == "past_due"
    assert result.cancel_at_period_end is True
    assert result.current_period_start == datetime(2025, 2, 1, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "invoice",
    [
        {"subscription": "sub_1", "status": "open"},
        {"parent": {"subscription_details": {"subscription": "sub_1"}}, "status": "open"},
    ],
)
def test_parse_invoice_payment_failed(provider, invoice):
    event = {"id": "evt_4", "type": "invoice.payment_failed", "data": {"object": invoice}}

    result = provider._parse_event(event)

    assert result.subscription_id == "sub_1"
