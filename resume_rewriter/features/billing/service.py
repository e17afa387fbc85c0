"""
Billing service orchestrator.

Business logic that coordinates:
- Checkout session creation (prices taken from the stored plan only)
- Client-side payment confirmation
- Webhook processing and event deduplication
- Subscription cancellation

All Stripe-specific code is in stripe_provider.py; entitlement writes go
through reconciler.py.
"""
import os
import hashlib
import logging
from typing import Optional, Dict, Any
from datetime import datetime
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from resume_rewriter.core.clock import utc_now
from resume_rewriter.core.config import settings
from resume_rewriter.core.database import get_db_session, billing_events
from resume_rewriter.core.errors import (
    BillingDisabledError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from resume_rewriter.core.logging import log_event
from resume_rewriter.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    BillingWebhookResult,
    CheckoutSession,
    PAID_STATUSES,
)
from resume_rewriter.features.billing.reconciler import (
    apply_provider_subscription_update,
    confirm_payment,
    mark_cancelled,
    mark_past_due,
)
from resume_rewriter.features.billing.stripe_provider import (
    CHECKOUT_COMPLETED_EVENTS,
    StripeProvider,
)
from resume_rewriter.features.entitlements import store
from resume_rewriter.features.entitlements.service import summarize
from resume_rewriter.features.plans.service import get_plan, require_active_plan
from resume_rewriter.models.entitlement import EntitlementSummary, ProviderReference
from resume_rewriter.models.plan import Plan


logger = logging.getLogger(__name__)

# CAS attempts when flagging a locally managed row for cancellation
CANCEL_ATTEMPTS = 2


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(os.getenv("STRIPE_SECRET_KEY") or settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        return None


def _require_provider() -> BillingProvider:
    provider = get_provider()
    if provider is None:
        raise BillingDisabledError("Billing is not configured")
    return provider


def success_url_for(plan: Plan) -> str:
    # {CHECKOUT_SESSION_ID} is filled in by Stripe on redirect
    return f"{settings.APP_URL}/dashboard?payment=success&plan={plan.plan_id}&session_id={{CHECKOUT_SESSION_ID}}"


def cancel_url_for() -> str:
    return f"{settings.APP_URL}/pricing?payment=cancelled"


def build_checkout_params(
    plan: Plan,
    user_id: str,
    email: Optional[str],
    success_url: str,
    cancel_url: str,
) -> Dict[str, Any]:
    """
    Checkout session parameters for `plan`.

    The charged amount is always the stored price_cents; nothing the client
    sends reaches the line items. Lifetime plans are one-time payments, the
    rest are subscriptions renewing on the plan interval.
    """
    mode = "subscription" if plan.is_recurring else "payment"

    product_data: Dict[str, Any] = {"name": plan.name}
    if plan.description:
        product_data["description"] = plan.description

    price_data: Dict[str, Any] = {
        "currency": plan.currency.lower(),
        "product_data": product_data,
        "unit_amount": plan.price_cents,
    }
    if plan.is_recurring:
        price_data["recurring"] = {"interval": plan.interval.value}

    metadata = {
        "userId": user_id,
        "planId": plan.plan_id,
        "credits": str(plan.monthly_limit),
    }

    params: Dict[str, Any] = {
        "mode": mode,
        "payment_method_types": ["card"],
        "line_items": [{"price_data": price_data, "quantity": 1}],
        "success_url": success_url,
        "cancel_url": cancel_url,
        "client_reference_id": user_id,
        "metadata": metadata,
    }
    if email:
        params["customer_email"] = email
    if plan.is_recurring:
        # Subscription lifecycle events carry the same identifiers
        params["subscription_data"] = {"metadata": dict(metadata)}
    return params


def start_checkout(user_id: str, plan_id: str, email: Optional[str] = None) -> CheckoutSession:
    """
    Start a provider-hosted checkout for a plan.

    No entitlement is written here; access is granted on confirmation.

    Raises:
        PlanNotFoundError: unknown or inactive plan
        BillingDisabledError: Stripe not configured
        BillingProviderError: session creation failed
    """
    plan = require_active_plan(plan_id)
    provider = _require_provider()

    params = build_checkout_params(plan, user_id, email, success_url_for(plan), cancel_url_for())
    session = provider.create_checkout_session(params)

    logger.info(
        "billing.checkout_started",
        extra={"user_id": user_id, "plan_id": plan.plan_id, "mode": session.mode, "session_id": session.session_id},
    )
    return session


def verify_checkout_session(user_id: str, plan: Plan, session_id: str) -> ProviderReference:
    """
    Check a client-reported checkout session against the provider.

    Raises:
        ValidationError: session unpaid, or for another user or plan
    """
    provider = _require_provider()
    state = provider.retrieve_checkout_session(session_id)

    owner = state.metadata.get("userId") or state.client_reference_id
    if owner != user_id:
        raise ValidationError("Checkout session does not belong to this user")
    if state.metadata.get("planId") != plan.plan_id:
        raise ValidationError("Checkout session is for a different plan")
    if not state.is_paid:
        raise ValidationError("Checkout session is not paid")

    if plan.is_recurring and state.subscription_id:
        window = provider.retrieve_subscription(state.subscription_id)
        return ProviderReference(
            customer_id=state.customer_id,
            subscription_id=state.subscription_id,
            period_start=window.period_start,
            period_end=window.period_end,
        )
    return ProviderReference(customer_id=state.customer_id, subscription_id=state.subscription_id)


def _activate(
    user_id: str,
    plan_id: str,
    provider_reference: Optional[ProviderReference] = None,
    now: Optional[datetime] = None,
) -> EntitlementSummary:
    """Confirm the plan and stop renewal of any provider subscription it replaced."""
    previous = store.find_by_user(user_id)
    summary = confirm_payment(user_id, plan_id, provider_reference=provider_reference, now=now)

    replaced_id = previous.stripe_subscription_id if previous else None
    if replaced_id:
        current = store.find_by_user(user_id)
        if current is None or current.stripe_subscription_id != replaced_id:
            _cancel_replaced_subscription(user_id, replaced_id)
    return summary


def _cancel_replaced_subscription(user_id: str, subscription_id: str) -> None:
    provider = get_provider()
    if provider is None:
        logger.warning(
            "billing.orphaned_provider_subscription",
            extra={"user_id": user_id, "stripe_subscription_id": subscription_id},
        )
        return
    try:
        provider.cancel_at_period_end(subscription_id)
    except BillingProviderError as e:
        # The new plan is already active; the old subscription needs a manual cancel
        logger.warning(
            "billing.orphaned_provider_subscription",
            extra={"user_id": user_id, "stripe_subscription_id": subscription_id, "error": str(e)},
        )
        return
    logger.info(
        "billing.replaced_subscription_cancelled",
        extra={"user_id": user_id, "stripe_subscription_id": subscription_id},
    )


def confirm_checkout(
    user_id: str,
    plan_id: str,
    session_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> EntitlementSummary:
    """
    Client-side confirmation after the checkout redirect.

    With a session id the payment is verified with the provider first.
    A provider subscription replaced by the new plan is set to stop renewing.
    """
    plan = require_active_plan(plan_id)

    reference = None
    if session_id:
        reference = verify_checkout_session(user_id, plan, session_id)
    elif settings.CONFIRM_REQUIRES_SESSION:
        raise ValidationError("sessionId is required to confirm payment")

    return _activate(user_id, plan.plan_id, provider_reference=reference, now=now)


def _apply_webhook_result(result: BillingWebhookResult) -> None:
    """Apply state changes based on event type."""
    if result.event_type in CHECKOUT_COMPLETED_EVENTS:
        if result.payment_status not in PAID_STATUSES:
            # Delayed payment methods confirm later via async_payment_succeeded
            logger.info(
                "billing.checkout_unpaid",
                extra={"event_id": result.event_id, "payment_status": result.payment_status},
            )
            return
        if not (result.user_id and result.plan_id):
            logger.warning(
                "billing.webhook_missing_metadata",
                extra={"event_id": result.event_id, "event_type": result.event_type},
            )
            return
        _activate(
            result.user_id,
            result.plan_id,
            provider_reference=ProviderReference(
                customer_id=result.customer_id,
                subscription_id=result.subscription_id,
                period_start=result.current_period_start,
                period_end=result.current_period_end,
            ),
        )

    elif result.event_type == "customer.subscription.updated" and result.subscription_id:
        apply_provider_subscription_update(
            result.subscription_id,
            result.status,
            period_start=result.current_period_start,
            period_end=result.current_period_end,
            cancel_at_period_end=result.cancel_at_period_end,
        )

    elif result.event_type == "customer.subscription.deleted" and result.subscription_id:
        mark_cancelled(result.subscription_id)

    elif result.event_type == "invoice.payment_failed" and result.subscription_id:
        mark_past_due(result.subscription_id)

    else:
        logger.info(
            "billing.webhook_ignored",
            extra={"event_id": result.event_id, "event_type": result.event_type},
        )


def process_webhook_event(headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
    """
    Process billing webhook event (idempotent).

    1. Verify signature (before any state change)
    2. Check idempotency (skip if already processed)
    3. Apply state changes
    4. Mark as processed

    An event whose processing failed stays unprocessed so the provider's
    redelivery retries it.

    Raises:
        BillingDisabledError: Stripe not configured
        BillingWebhookError: If signature invalid or payload malformed
    """
    provider = _require_provider()

    # Verify and parse webhook
    result = provider.handle_webhook(headers, body)

    payload_hash = hashlib.sha256(body).hexdigest()

    with get_db_session() as session:
        existing = session.execute(
            select(billing_events.c.processed).where(
                billing_events.c.stripe_event_id == result.event_id
            )
        ).first()

        if existing and existing.processed:
            logger.info(
                "billing.webhook_duplicate",
                extra={"event_id": result.event_id, "event_type": result.event_type},
            )
            return result

        if not existing:
            try:
                session.execute(
                    insert(billing_events).values(
                        stripe_event_id=result.event_id,
                        event_type=result.event_type,
                        payload_hash=payload_hash,
                        processed=False,
                    )
                )
            except IntegrityError:
                # Another delivery of this event is being handled
                session.rollback()
                return result

    try:
        _apply_webhook_result(result)

        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == result.event_id)
                .values(processed=True, processed_at=utc_now(), error=None)
            )
    except Exception as e:
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == result.event_id)
                .values(error=str(e))
            )
        log_event(
            "error",
            "billing.webhook_failed",
            user_id=result.user_id,
            plan_id=result.plan_id,
            event_type=result.event_type,
            error_code=type(e).__name__,
            extra={"event_id": result.event_id, "error": e},
        )
        raise

    log_event(
        "info",
        "billing.webhook_processed",
        user_id=result.user_id,
        plan_id=result.plan_id,
        event_type=result.event_type,
        extra={"event_id": result.event_id},
    )
    return result


def cancel_subscription(user_id: str) -> EntitlementSummary:
    """
    Stop renewal at the end of the current period.

    Access continues until current_period_end; lifetime plans cannot be
    cancelled.

    Raises:
        NotFoundError: no active subscription
        ConflictError: plan is a one-time purchase
    """
    entitlement = store.find_active_by_user(user_id)
    if entitlement is None:
        raise NotFoundError("No active subscription")
    plan = get_plan(entitlement.plan_id)
    if plan is None or not plan.is_recurring:
        raise ConflictError("Lifetime plans cannot be cancelled")

    if entitlement.is_provider_managed:
        provider = _require_provider()
        provider.cancel_at_period_end(entitlement.stripe_subscription_id)
        updated = apply_provider_subscription_update(
            entitlement.stripe_subscription_id, None, cancel_at_period_end=True
        )
        entitlement = updated or entitlement
    else:
        for _ in range(CANCEL_ATTEMPTS):
            if store.set_cancel_at_period_end(entitlement, True):
                break
            entitlement = store.find_active_by_user(user_id)
            if entitlement is None:
                raise NotFoundError("No active subscription")
        else:
            raise ConflictError("Subscription changed concurrently, retry")
        entitlement = store.find_by_user(user_id)

    logger.info(
        "billing.cancel_requested",
        extra={"user_id": user_id, "plan_id": plan.plan_id, "period_end": entitlement.current_period_end},
    )
    return summarize(entitlement, plan)
