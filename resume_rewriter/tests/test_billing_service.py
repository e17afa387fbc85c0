"""
Test billing service with mocked Stripe provider (no real API calls).
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import select

from resume_rewriter.core.config import settings
from resume_rewriter.core.database import billing_events, get_db_session
from resume_rewriter.core.errors import (
    BillingDisabledError,
    ConflictError,
    NotFoundError,
    PlanNotFoundError,
    ValidationError,
)
from resume_rewriter.features.billing import service
from resume_rewriter.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
    CheckoutSession,
    CheckoutSessionState,
    SubscriptionWindow,
)
from resume_rewriter.features.billing.reconciler import confirm_payment
from resume_rewriter.features.billing.service import (
    billing_enabled,
    build_checkout_params,
    cancel_subscription,
    confirm_checkout,
    process_webhook_event,
    start_checkout,
)
from resume_rewriter.features.entitlements import store
from resume_rewriter.features.plans.service import get_plan
from resume_rewriter.features.usage import meter
from resume_rewriter.models.entitlement import EntitlementStatus, ProviderReference


PERIOD_START = datetime(2025, 2, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2025, 3, 3, tzinfo=timezone.utc)


def _webhook_result(event_type, event_id="evt_1", **overrides):
    values = dict(
        event_id=event_id,
        event_type=event_type,
        user_id=None,
        plan_id=None,
        customer_id=None,
        subscription_id=None,
        status=None,
        mode=None,
        payment_status=None,
        current_period_start=None,
        current_period_end=None,
        cancel_at_period_end=False,
        metadata={},
    )
    values.update(overrides)
    return BillingWebhookResult(**values)


def _event_row(event_id):
    with get_db_session() as session:
        return session.execute(
            select(billing_events).where(billing_events.c.stripe_event_id == event_id)
        ).first()


# Checkout


def test_billing_disabled_without_secret_key():
    assert billing_enabled() is False
    with pytest.raises(BillingDisabledError):
        start_checkout("user_alice", "starter-plan")


def test_lifetime_plan_checks_out_in_payment_mode():
    params = build_checkout_params(
        get_plan("starter-plan"), "user_alice", "alice@example.com", "https://ok", "https://cancel"
    )

    assert params["mode"] == "payment"
    price_data = params["line_items"][0]["price_data"]
    assert price_data["unit_amount"] == 900
    assert price_data["currency"] == "usd"
    assert "recurring" not in price_data
    assert "subscription_data" not in params
    assert params["metadata"] == {"userId": "user_alice", "planId": "starter-plan", "credits": "3"}
    assert params["customer_email"] == "alice@example.com"


def test_recurring_plan_checks_out_in_subscription_mode():
    params = build_checkout_params(get_plan("annual-plan"), "user_alice", None, "https://ok", "https://cancel")

    assert params["mode"] == "subscription"
    price_data = params["line_items"][0]["price_data"]
    assert price_data["recurring"] == {"interval": "year"}
    assert price_data["unit_amount"] == 14900
    assert params["subscription_data"]["metadata"]["planId"] == "annual-plan"
    assert "customer_email" not in params


def test_start_checkout_uses_stored_price(alice, mock_stripe_provider):
    mock_stripe_provider.create_checkout_session.return_value = CheckoutSession(
        session_id="cs_test_1", url="https://checkout.stripe.com/c/cs_test_1", mode="payment"
    )

    session = start_checkout(alice, "starter", email="alice@example.com")

    assert session.session_id == "cs_test_1"
    params = mock_stripe_provider.create_checkout_session.call_args[0][0]
    assert params["line_items"][0]["price_data"]["unit_amount"] == 900
    assert "plan=starter-plan" in params["success_url"]
    assert "{CHECKOUT_SESSION_ID}" in params["success_url"]
    assert params["cancel_url"].endswith("/pricing?payment=cancelled")
    # Checkout never writes an entitlement
    assert store.find_by_user(alice) is None


def test_start_checkout_unknown_plan(alice, mock_stripe_provider):
    with pytest.raises(PlanNotFoundError):
        start_checkout(alice, "gold-plan")
    mock_stripe_provider.create_checkout_session.assert_not_called()


def test_start_checkout_provider_failure_propagates(alice, mock_stripe_provider):
    mock_stripe_provider.create_checkout_session.side_effect = BillingProviderError("Stripe down")

    with pytest.raises(BillingProviderError):
        start_checkout(alice, "pro-plan")


# Client confirmation


def test_confirm_without_session_id(alice):
    summary = confirm_checkout(alice, "starter-plan")

    assert summary.plan_id == "starter-plan"
    assert meter.get_status(alice).remaining == 3


def test_confirm_requires_session_when_configured(alice, monkeypatch):
    monkeypatch.setattr(settings, "CONFIRM_REQUIRES_SESSION", True)

    with pytest.raises(ValidationError):
        confirm_checkout(alice, "starter-plan")
    assert store.find_by_user(alice) is None


def _paid_session(user_id, plan_id, **overrides):
    values = dict(
        session_id="cs_test_1",
        status="complete",
        payment_status="paid",
        mode="subscription",
        customer_id="cus_1",
        subscription_id="sub_1",
        client_reference_id=user_id,
        metadata={"userId": user_id, "planId": plan_id, "credits": "30"},
    )
    values.update(overrides)
    return CheckoutSessionState(**values)


def test_confirm_with_session_uses_provider_period(alice, mock_stripe_provider):
    mock_stripe_provider.retrieve_checkout_session.return_value = _paid_session(alice, "pro-plan")
    mock_stripe_provider.retrieve_subscription.return_value = SubscriptionWindow(
        subscription_id="sub_1",
        customer_id="cus_1",
        status="active",
        period_start=PERIOD_START,
        period_end=PERIOD_END,
    )

    summary = confirm_checkout(alice, "pro-plan", session_id="cs_test_1")

    assert summary.current_period_end == PERIOD_END
    entitlement = store.find_by_user(alice)
    assert entitlement.stripe_subscription_id == "sub_1"
    assert entitlement.stripe_customer_id == "cus_1"


@pytest.mark.parametrize(
    "overrides",
    [
        {"payment_status": "unpaid"},
        {"metadata": {"userId": "user_bob", "planId": "pro-plan"}, "client_reference_id": "user_bob"},
        {"metadata": {"userId": "user_alice", "planId": "starter-plan"}},
    ],
)
def test_confirm_with_session_rejects_mismatch(alice, mock_stripe_provider, overrides):
    mock_stripe_provider.retrieve_checkout_session.return_value = _paid_session(alice, "pro-plan", **overrides)

    with pytest.raises(ValidationError):
        confirm_checkout(alice, "pro-plan", session_id="cs_test_1")
    assert store.find_by_user(alice) is None


# Webhooks


def test_webhook_requires_billing():
    with pytest.raises(BillingDisabledError):
        process_webhook_event({}, b"{}")


def test_webhook_invalid_signature_changes_nothing(alice, mock_stripe_provider):
    mock_stripe_provider.handle_webhook.side_effect = BillingWebhookError("Invalid signature")

    with pytest.raises(BillingWebhookError):
        process_webhook_event({"stripe-signature": "bad"}, b"{}")

    assert store.find_by_user(alice) is None
    assert _event_row("evt_1") is None


def test_webhook_checkout_completed_activates_plan(alice, mock_stripe_provider):
    mock_stripe_provider.handle_webhook.return_value = _webhook_result(
        "checkout.session.completed",
        user_id=alice,
        plan_id="pro-plan",
        customer_id="cus_1",
        subscription_id="sub_1",
        mode="subscription",
        payment_status="paid",
        current_period_start=PERIOD_START,
        current_period_end=PERIOD_END,
    )

    process_webhook_event({"stripe-signature": "t=1,v1=abc"}, b'{"id": "evt_1"}')

    entitlement = store.find_active_by_user(alice)
    assert entitlement.plan_id == "pro-plan"
    assert entitlement.current_period_end == PERIOD_END
    assert entitlement.stripe_subscription_id == "sub_1"
    row = _event_row("evt_1")
    assert row.processed is True
    assert row.error is None


def test_webhook_redelivery_is_skipped(alice, mock_stripe_provider):
    mock_stripe_provider.handle_webhook.return_value = _webhook_result(
        "checkout.session.completed",
        user_id=alice,
        plan_id="starter-plan",
        mode="payment",
        payment_status="paid",
    )

    with patch.object(service, "confirm_payment", wraps=confirm_payment) as confirm:
        process_webhook_event({"stripe-signature": "sig"}, b"{}")
        meter.try_consume(alice)
        process_webhook_event({"stripe-signature": "sig"}, b"{}")

    assert confirm.call_count == 1
    # The duplicate did not zero the counter again
    assert store.find_by_user(alice).usage_count == 1


def test_webhook_failure_is_retried_on_redelivery(alice, mock_stripe_provider):
    mock_stripe_provider.handle_webhook.return_value = _webhook_result(
        "checkout.session.completed",
        user_id=alice,
        plan_id="starter-plan",
        mode="payment",
        payment_status="paid",
    )

    with patch.object(service, "confirm_payment", side_effect=RuntimeError("db down")):
        with pytest.raises(RuntimeError):
            process_webhook_event({"stripe-signature": "sig"}, b"{}")

    row = _event_row("evt_1")
    assert row.processed is False
    assert "db down" in row.error

    process_webhook_event({"stripe-signature": "sig"}, b"{}")

    assert _event_row("evt_1").processed is True
    assert store.find_active_by_user(alice).plan_id == "starter-plan"


def test_webhook_unpaid_checkout_grants_nothing(alice, mock_stripe_provider):
    mock_stripe_provider.handle_webhook.return_value = _webhook_result(
        "checkout.session.completed",
        user_id=alice,
        plan_id="starter-plan",
        mode="payment",
        payment_status="unpaid",
    )

    process_webhook_event({"stripe-signature": "sig"}, b"{}")

    assert store.find_by_user(alice) is None
    assert _event_row("evt_1").processed is True


def _linked_subscription(user_id):
    reference = ProviderReference(
        customer_id="cus_1", subscription_id="sub_1", period_start=PERIOD_START, period_end=PERIOD_END
    )
    confirm_payment(user_id, "pro-plan", provider_reference=reference, now=PERIOD_START)


def test_webhook_subscription_lifecycle(alice, mock_stripe_provider):
    _linked_subscription(alice)
    renewed_end = PERIOD_END + timedelta(days=30)

    mock_stripe_provider.handle_webhook.return_value = _webhook_result(
        "customer.subscription.updated",
        event_id="evt_update",
        subscription_id="sub_1",
        status="active",
        current_period_start=PERIOD_END,
        current_period_end=renewed_end,
        cancel_at_period_end=True,
    )
    process_webhook_event({"stripe-signature": "sig"}, b"{}")
    entitlement = store.find_by_user(alice)
    assert entitlement.current_period_end == renewed_end
    assert entitlement.cancel_at_period_end is True

    mock_stripe_provider.handle_webhook.return_value = _webhook_result(
        "invoice.payment_failed", event_id="evt_invoice", subscription_id="sub_1"
    )
    process_webhook_event({"stripe-signature": "sig"}, b"{}")
    assert store.find_by_user(alice).status == EntitlementStatus.PAST_DUE

    mock_stripe_provider.handle_webhook.return_value = _webhook_result(
        "customer.subscription.deleted", event_id="evt_delete", subscription_id="sub_1", status="canceled"
    )
    process_webhook_event({"stripe-signature": "sig"}, b"{}")
    assert store.find_by_user(alice).status == EntitlementStatus.CANCELLED


def test_webhook_unhandled_event_is_recorded(mock_stripe_provider):
    mock_stripe_provider.handle_webhook.return_value = _webhook_result("customer.created", event_id="evt_x")

    result = process_webhook_event({"stripe-signature": "sig"}, b"{}")

    assert result.event_id == "evt_x"
    assert _event_row("evt_x").processed is True


# Cancellation


def test_cancel_provider_managed_subscription(alice, mock_stripe_provider):
    _linked_subscription(alice)

    summary = cancel_subscription(alice)

    mock_stripe_provider.cancel_at_period_end.assert_called_once_with("sub_1")
    assert summary.cancel_at_period_end is True
    assert store.find_by_user(alice).status == EntitlementStatus.ACTIVE


def test_cancel_locally_managed_subscription(alice):
    confirm_payment(alice, "pro-plan")

    summary = cancel_subscription(alice)

    assert summary.cancel_at_period_end is True
    assert store.find_by_user(alice).cancel_at_period_end is True


def test_cancel_lifetime_plan_is_rejected(alice):
    confirm_payment(alice, "starter-plan")

    with pytest.raises(ConflictError):
        cancel_subscription(alice)


def test_cancel_without_subscription(alice):
    with pytest.raises(NotFoundError):
        cancel_subscription(alice)


def test_switch_to_lifetime_stops_old_subscription(alice, mock_stripe_provider):
    _linked_subscription(alice)

    summary = confirm_checkout(alice, "unlimited-plan")

    mock_stripe_provider.cancel_at_period_end.assert_called_once_with("sub_1")
    assert summary.plan_id == "unlimited-plan"
    assert store.find_by_user(alice).stripe_subscription_id is None


def test_switch_keeps_plan_when_old_subscription_cancel_fails(alice, mock_stripe_provider):
    _linked_subscription(alice)
    mock_stripe_provider.cancel_at_period_end.side_effect = BillingProviderError("Stripe timed out")

    summary = confirm_checkout(alice, "starter-plan")

    assert summary.plan_id == "starter-plan"
    assert store.find_by_user(alice).plan_id == "starter-plan"


def test_reconfirming_same_subscription_keeps_it(alice, mock_stripe_provider):
    _linked_subscription(alice)
    mock_stripe_provider.handle_webhook.return_value = _webhook_result(
        "checkout.session.completed",
        event_id="evt_again",
        user_id=alice,
        plan_id="pro-plan",
        customer_id="cus_1",
        subscription_id="sub_1",
        payment_status="paid",
        current_period_start=PERIOD_START,
        current_period_end=PERIOD_END,
    )

    process_webhook_event({"stripe-signature": "t=1,v1=ok"}, b'{"id": "evt_again"}')

    mock_stripe_provider.cancel_at_period_end.assert_not_called()
    assert store.find_by_user(alice).stripe_subscription_id == "sub_1"
