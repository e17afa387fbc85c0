"""
Billing provider protocol.

Defines the interface for billing providers (Stripe, etc.).
This allows swapping providers without changing business logic.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime

from resume_rewriter.core.errors import ProviderUnavailableError, SignatureInvalidError


# Checkout sessions that represent money actually received
PAID_STATUSES = ("paid", "no_payment_required")


@dataclass
class CheckoutSession:
    """Provider-hosted checkout the browser is redirected to."""
    session_id: str
    url: str
    mode: str  # payment | subscription


@dataclass
class CheckoutSessionState:
    """Checkout session as reported back by the provider."""
    session_id: str
    status: Optional[str]
    payment_status: Optional[str]
    mode: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    client_reference_id: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status in PAID_STATUSES


@dataclass
class SubscriptionWindow:
    """Provider-reported billing period of a recurring subscription."""
    subscription_id: str
    customer_id: Optional[str]
    status: Optional[str]
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    cancel_at_period_end: bool = False


@dataclass
class BillingWebhookResult:
    """Result of processing a billing webhook."""
    event_id: str
    event_type: str
    user_id: Optional[str]
    plan_id: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    status: Optional[str]  # provider status: active, canceled, past_due, etc.
    mode: Optional[str]
    payment_status: Optional[str]
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    metadata: Dict[str, Any]


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Checkout session creation and lookup
    - Subscription period lookup and cancellation
    - Webhook signature verification and parsing
    """

    def create_checkout_session(self, params: Dict[str, Any]) -> CheckoutSession:
        """
        Create a hosted checkout session.

        Args:
            params: Fully built session parameters (line items, mode,
                redirect URLs, metadata)

        Raises:
            BillingProviderError: If session creation fails
        """
        ...

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionState:
        """
        Look up a checkout session by id.

        Raises:
            BillingProviderError: If the lookup fails
        """
        ...

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionWindow:
        """
        Look up a recurring subscription's current period.

        Raises:
            BillingProviderError: If the lookup fails
        """
        ...

    def cancel_at_period_end(self, subscription_id: str) -> SubscriptionWindow:
        """
        Stop renewal after the current period.

        Raises:
            BillingProviderError: If the update fails
        """
        ...

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """
        Verify webhook signature and parse event.

        Args:
            headers: HTTP headers (must include signature header)
            body: Raw webhook body (for signature verification)

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...


class BillingProviderError(ProviderUnavailableError):
    """Provider call failed. `retryable` is False for requests the provider rejected outright."""

    def __init__(self, message: str, *, retryable: bool = True, **kwargs):
        super().__init__(message, **kwargs)
        self.retryable = retryable


class BillingWebhookError(SignatureInvalidError):
    """Webhook signature or payload rejected; no state was changed."""
    pass
