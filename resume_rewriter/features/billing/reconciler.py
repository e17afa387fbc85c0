"""
resume_rewriter/features/billing/reconciler.py

Payment reconciler.

Turns "payment succeeded" (from the client redirect or from a provider
webhook) into an active entitlement, and applies provider lifecycle updates
(renewal, cancellation, failed payment) to the linked row.

Confirmation has set semantics: it writes the same plan, window and zeroed
counter no matter how many times the same payment is reported, so webhook
redelivery and a racing client confirmation are both safe.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple

from resume_rewriter.core.clock import normalize_now
from resume_rewriter.features.entitlements import store
from resume_rewriter.features.entitlements.service import summarize
from resume_rewriter.features.plans.service import require_active_plan
from resume_rewriter.models.entitlement import (
    Entitlement,
    EntitlementStatus,
    EntitlementSummary,
    LIFETIME_PERIOD_END,
    ProviderReference,
)
from resume_rewriter.models.plan import Plan, PlanInterval


logger = logging.getLogger(__name__)

PERIOD_DAYS = {
    PlanInterval.MONTH: 30,
    PlanInterval.YEAR: 365,
}

# Stripe subscription status -> entitlement status. Unlisted statuses
# (incomplete, paused) leave the stored status alone.
PROVIDER_STATUS_MAP = {
    "active": EntitlementStatus.ACTIVE,
    "trialing": EntitlementStatus.ACTIVE,
    "past_due": EntitlementStatus.PAST_DUE,
    "unpaid": EntitlementStatus.PAST_DUE,
    "canceled": EntitlementStatus.CANCELLED,
    "incomplete_expired": EntitlementStatus.EXPIRED,
}


def map_provider_status(provider_status: Optional[str]) -> Optional[EntitlementStatus]:
    if not provider_status:
        return None
    return PROVIDER_STATUS_MAP.get(provider_status)


def compute_period_window(
    plan: Plan,
    now: datetime,
    provider_reference: Optional[ProviderReference] = None,
) -> Tuple[datetime, datetime]:
    """
    Billing window for a fresh activation.

    Lifetime plans end at LIFETIME_PERIOD_END. Recurring plans use the
    provider-reported window when one is known, else a local 30/365 day one.
    """
    if not plan.is_recurring:
        return now, LIFETIME_PERIOD_END

    if provider_reference is not None and provider_reference.period_end is not None:
        return provider_reference.period_start or now, provider_reference.period_end

    return now, now + timedelta(days=PERIOD_DAYS[plan.interval])


def confirm_payment(
    user_id: str,
    plan_id: str,
    provider_reference: Optional[ProviderReference] = None,
    now: Optional[datetime] = None,
) -> EntitlementSummary:
    """
    Activate `plan_id` for the user after a successful payment.

    Replaces whatever entitlement the user had (plan switch) with a fresh
    window and usage_count=0.

    Raises:
        PlanNotFoundError: unknown or inactive plan
    """
    now = normalize_now(now)
    plan = require_active_plan(plan_id)
    period_start, period_end = compute_period_window(plan, now, provider_reference)

    entitlement = store.upsert_active(
        user_id,
        plan.plan_id,
        period_start=period_start,
        period_end=period_end,
        recurring=plan.is_recurring,
        provider_reference=provider_reference,
        now=now,
    )

    logger.info(
        "billing.confirmed",
        extra={
            "user_id": user_id,
            "plan_id": plan.plan_id,
            "subscription_id": entitlement.id,
            "period_end": period_end,
            "provider_subscription": bool(entitlement.stripe_subscription_id),
        },
    )
    return summarize(entitlement, plan)


def apply_provider_subscription_update(
    subscription_id: str,
    provider_status: Optional[str],
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
    cancel_at_period_end: Optional[bool] = None,
) -> Optional[Entitlement]:
    """
    Mirror a provider subscription change onto the linked entitlement.

    A renewal only moves the period forward; the counter is zeroed lazily by
    the usage meter once the old window has passed. Returns None when no row
    is linked to the subscription.
    """
    values = {}
    status = map_provider_status(provider_status)
    if status is not None:
        values["status"] = status.value
    if period_start is not None:
        values["current_period_start"] = period_start
    if period_end is not None:
        values["current_period_end"] = period_end
    if cancel_at_period_end is not None:
        values["cancel_at_period_end"] = cancel_at_period_end

    if not values:
        return store.find_by_provider_subscription(subscription_id)

    entitlement = store.update_by_provider_subscription(subscription_id, **values)
    if entitlement is None:
        logger.warning(
            "billing.subscription_unlinked",
            extra={"subscription_id": subscription_id, "provider_status": provider_status},
        )
        return None

    logger.info(
        "billing.subscription_updated",
        extra={
            "user_id": entitlement.user_id,
            "subscription_id": subscription_id,
            "status": entitlement.status.value,
            "period_end": entitlement.current_period_end,
            "cancel_at_period_end": entitlement.cancel_at_period_end,
        },
    )
    return entitlement


def mark_cancelled(subscription_id: str) -> Optional[Entitlement]:
    """Provider deleted the subscription."""
    return apply_provider_subscription_update(subscription_id, "canceled")


def mark_past_due(subscription_id: str) -> Optional[Entitlement]:
    """Renewal charge failed."""
    return apply_provider_subscription_update(subscription_id, "past_due")
