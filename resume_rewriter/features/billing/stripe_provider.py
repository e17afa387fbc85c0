"""
Stripe billing provider implementation.

Implements BillingProvider protocol using the Stripe API.
Handles checkout sessions, subscription lookups, webhook signature
verification and event parsing.
"""
import os
from typing import Dict, Any, Optional
import stripe

from resume_rewriter.core.clock import from_timestamp
from resume_rewriter.core.config import settings
from resume_rewriter.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
    CheckoutSession,
    CheckoutSessionState,
    SubscriptionWindow,
)


CHECKOUT_COMPLETED_EVENTS = (
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
)


def _to_provider_error(action: str, exc: Exception) -> BillingProviderError:
    """Connection failures, rate limits and provider 5xx are retryable; anything else is not."""
    retryable = isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError))
    status = getattr(exc, "http_status", None)
    if isinstance(exc, stripe.APIError) or (status is not None and status >= 500):
        retryable = True
    return BillingProviderError(f"Stripe {action} failed: {exc}", retryable=retryable)


def _subscription_period(data: Dict[str, Any]) -> tuple:
    """
    Period bounds of a subscription object. Newer API versions report them
    per subscription item rather than on the subscription.
    """
    start = data.get("current_period_start")
    end = data.get("current_period_end")
    if end is None:
        items = (data.get("items") or {}).get("data") or []
        if items:
            start = items[0].get("current_period_start")
            end = items[0].get("current_period_end")
    return from_timestamp(start), from_timestamp(end)


def _invoice_subscription_id(data: Dict[str, Any]) -> Optional[str]:
    subscription_id = data.get("subscription")
    if subscription_id:
        return subscription_id if isinstance(subscription_id, str) else subscription_id.get("id")
    parent = data.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return details.get("subscription")


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY env var)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET env var)
            timeout: Per-request timeout in seconds (defaults to STRIPE_TIMEOUT_SECONDS)
        """
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY") or settings.STRIPE_SECRET_KEY
        self.webhook_secret = (
            webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET") or settings.STRIPE_WEBHOOK_SECRET
        )
        self.timeout = timeout or settings.STRIPE_TIMEOUT_SECONDS

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured", retryable=False)

        stripe.api_key = self.secret_key
        stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout)

    def create_checkout_session(self, params: Dict[str, Any]) -> CheckoutSession:
        """Create Stripe checkout session from fully built parameters."""
        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            raise _to_provider_error("checkout session creation", e)
        return CheckoutSession(session_id=session.id, url=session.url, mode=params["mode"])

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionState:
        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.StripeError as e:
            raise _to_provider_error("checkout session lookup", e)
        return CheckoutSessionState(
            session_id=session.get("id"),
            status=session.get("status"),
            payment_status=session.get("payment_status"),
            mode=session.get("mode"),
            customer_id=session.get("customer"),
            subscription_id=session.get("subscription"),
            client_reference_id=session.get("client_reference_id"),
            metadata=dict(session.get("metadata") or {}),
        )

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionWindow:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            raise _to_provider_error("subscription lookup", e)
        return self._window(subscription)

    def cancel_at_period_end(self, subscription_id: str) -> SubscriptionWindow:
        try:
            subscription = stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
        except stripe.StripeError as e:
            raise _to_provider_error("subscription cancellation", e)
        return self._window(subscription)

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            event = stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        return self._parse_event(event)

    def _window(self, subscription: Dict[str, Any]) -> SubscriptionWindow:
        period_start, period_end = _subscription_period(subscription)
        return SubscriptionWindow(
            subscription_id=subscription.get("id"),
            customer_id=subscription.get("customer"),
            status=subscription.get("status"),
            period_start=period_start,
            period_end=period_end,
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end", False)),
        )

    def _parse_event(self, event: Dict[str, Any]) -> BillingWebhookResult:
        """Parse Stripe event into normalized BillingWebhookResult."""
        event_type = event["type"]
        event_id = event["id"]
        data = event.get("data", {}).get("object", {})
        metadata = dict(data.get("metadata") or {})

        user_id = metadata.get("userId")
        plan_id = metadata.get("planId")
        customer_id = data.get("customer")
        subscription_id = None
        status = None
        mode = None
        payment_status = None
        period_start = None
        period_end = None
        cancel_at_period_end = False

        if event_type in CHECKOUT_COMPLETED_EVENTS:
            user_id = user_id or data.get("client_reference_id")
            subscription_id = data.get("subscription")
            mode = data.get("mode")
            payment_status = data.get("payment_status")
            status = data.get("status")

            # Recurring purchases take their window from the subscription itself
            if mode == "subscription" and subscription_id:
                window = self.retrieve_subscription(subscription_id)
                period_start = window.period_start
                period_end = window.period_end
                status = window.status

        elif event_type.startswith("customer.subscription."):
            subscription_id = data.get("id")
            status = data.get("status")
            period_start, period_end = _subscription_period(data)
            cancel_at_period_end = bool(data.get("cancel_at_period_end", False))

        elif event_type.startswith("invoice."):
            subscription_id = _invoice_subscription_id(data)
            status = data.get("status")

        return BillingWebhookResult(
            event_id=event_id,
            event_type=event_type,
            user_id=user_id,
            plan_id=plan_id,
            customer_id=customer_id,
            subscription_id=subscription_id,
            status=status,
            mode=mode,
            payment_status=payment_status,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=cancel_at_period_end,
            metadata=metadata,
        )
