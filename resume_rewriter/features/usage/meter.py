"""
resume_rewriter/features/usage/meter.py

Usage meter.

Answers "can this user spend one optimization credit right now?" and records
that they did. Period rollover is lazy: the first read after usage_reset_at
zeroes the counter and moves usage_reset_at to current_period_end. All writes
are compare-and-set against the row version (see entitlements.store), so two
handlers racing for the last credit cannot both win.
"""

import logging
from datetime import datetime
from typing import Optional, Tuple

from resume_rewriter.core.clock import normalize_now
from resume_rewriter.features.entitlements import store
from resume_rewriter.features.plans.service import get_plan
from resume_rewriter.models.entitlement import Entitlement, EntitlementStatus
from resume_rewriter.models.plan import Plan, UNLIMITED_CREDITS
from resume_rewriter.models.usage import ConsumeResult, DenialReason, UsageStatus


logger = logging.getLogger(__name__)

# A lost CAS on increment is retried once against the re-read row
CONSUME_ATTEMPTS = 2
# Bound on re-reads while settling lazy reset / expiry
STATE_READ_ATTEMPTS = 3


def reset_due(entitlement: Entitlement, now: datetime) -> bool:
    """
    True when the usage window has rolled over.

    A reset only moves forward: if the period end is not beyond the stored
    reset time (a provider-managed period that has lapsed and awaits renewal)
    there is nothing to reset to.
    """
    reset_at = entitlement.usage_reset_at
    period_end = entitlement.current_period_end
    if reset_at is None or period_end is None:
        return False
    return now > reset_at and period_end > reset_at


def has_lapsed(entitlement: Entitlement, plan: Plan, now: datetime) -> bool:
    """
    True when a paid window is over and nothing will renew it: locally
    computed windows, and provider subscriptions set to cancel at period end.
    """
    if not plan.is_recurring or entitlement.current_period_end is None:
        return False
    if now <= entitlement.current_period_end:
        return False
    return not entitlement.is_provider_managed or entitlement.cancel_at_period_end


def remaining_credits(usage_count: int, limit: int) -> int:
    return max(0, limit - usage_count)


def _settle(user_id: str, now: datetime) -> Optional[Tuple[Entitlement, Plan]]:
    """
    Load the active entitlement and its plan, applying expiry and lazy reset.

    Returns None when the user has no usable entitlement.
    """
    for _ in range(STATE_READ_ATTEMPTS):
        entitlement = store.find_active_by_user(user_id)
        if entitlement is None:
            return None

        plan = get_plan(entitlement.plan_id)
        if plan is None:
            logger.error(
                "usage.plan_missing",
                extra={"user_id": user_id, "plan_id": entitlement.plan_id, "subscription_id": entitlement.id},
            )
            return None

        if has_lapsed(entitlement, plan, now):
            if store.transition_status(entitlement, EntitlementStatus.EXPIRED):
                logger.info(
                    "usage.expired",
                    extra={"user_id": user_id, "plan_id": plan.plan_id, "period_end": entitlement.current_period_end},
                )
                return None
            continue

        if reset_due(entitlement, now):
            if not store.reset_usage(entitlement, entitlement.current_period_end):
                continue
            logger.info(
                "usage.reset",
                extra={
                    "user_id": user_id,
                    "plan_id": plan.plan_id,
                    "previous_count": entitlement.usage_count,
                    "reset_at": entitlement.current_period_end,
                },
            )
            entitlement = entitlement.model_copy(
                update={
                    "usage_count": 0,
                    "usage_reset_at": entitlement.current_period_end,
                    "version": entitlement.version + 1,
                }
            )

        return entitlement, plan

    # Persistent write contention: fall back to the row as stored, which can
    # only overstate usage
    entitlement = store.find_active_by_user(user_id)
    if entitlement is None:
        return None
    plan = get_plan(entitlement.plan_id)
    return (entitlement, plan) if plan else None


def _status_from(entitlement: Entitlement, plan: Plan) -> UsageStatus:
    if plan.is_unlimited:
        remaining = UNLIMITED_CREDITS
    else:
        remaining = remaining_credits(entitlement.usage_count, plan.monthly_limit)
    return UsageStatus(
        has_entitlement=True,
        usage_count=entitlement.usage_count,
        limit=plan.monthly_limit,
        remaining=remaining,
        unlimited=plan.is_unlimited,
        reset_at=entitlement.usage_reset_at,
        plan_id=plan.plan_id,
        plan_name=plan.name,
    )


def get_status(user_id: str, now: Optional[datetime] = None) -> UsageStatus:
    """
    Current credit position for the user.

    Side effect: at most one write, and only when a lazy reset or expiry is
    due.
    """
    now = normalize_now(now)
    settled = _settle(user_id, now)
    if settled is None:
        return UsageStatus.none()
    return _status_from(*settled)


def try_consume(user_id: str, now: Optional[datetime] = None) -> ConsumeResult:
    """
    Spend one credit if the user has one.

    Returns a granted result, or a denial with NO_ENTITLEMENT or
    LIMIT_EXCEEDED. A lost race is retried once against the re-read row and
    reported as LIMIT_EXCEEDED if it is lost again.
    """
    now = normalize_now(now)
    last_status: Optional[UsageStatus] = None

    for attempt in range(CONSUME_ATTEMPTS):
        settled = _settle(user_id, now)
        if settled is None:
            return ConsumeResult(granted=False, reason=DenialReason.NO_ENTITLEMENT)

        entitlement, plan = settled
        status = _status_from(entitlement, plan)
        last_status = status

        if plan.is_unlimited:
            return ConsumeResult(
                granted=True,
                subscription_id=entitlement.id,
                remaining=UNLIMITED_CREDITS,
                limit=plan.monthly_limit,
                plan_id=plan.plan_id,
                unlimited=True,
                reset_at=entitlement.usage_reset_at,
                counted=False,
            )

        if status.remaining <= 0:
            return ConsumeResult(
                granted=False,
                reason=DenialReason.LIMIT_EXCEEDED,
                subscription_id=entitlement.id,
                remaining=0,
                limit=plan.monthly_limit,
                reset_at=entitlement.usage_reset_at,
            )

        if store.increment_usage(entitlement):
            logger.info(
                "usage.consumed",
                extra={"user_id": user_id, "plan_id": plan.plan_id, "usage_count": entitlement.usage_count + 1},
            )
            return ConsumeResult(
                granted=True,
                subscription_id=entitlement.id,
                remaining=status.remaining - 1,
                limit=plan.monthly_limit,
                plan_id=plan.plan_id,
                reset_at=entitlement.usage_reset_at,
                counted=True,
            )

        logger.warning(
            "usage.consume_conflict",
            extra={"user_id": user_id, "subscription_id": entitlement.id, "attempt": attempt + 1},
        )

    refreshed = get_status(user_id, now)
    if refreshed.has_entitlement:
        last_status = refreshed
    return ConsumeResult(
        granted=False,
        reason=DenialReason.LIMIT_EXCEEDED,
        remaining=last_status.remaining if last_status else 0,
        limit=last_status.limit if last_status else 0,
        reset_at=last_status.reset_at if last_status else None,
    )


def _same_window(entitlement: Entitlement, plan: Plan, grant: ConsumeResult) -> bool:
    return (
        entitlement.id == grant.subscription_id
        and plan.plan_id == grant.plan_id
        and entitlement.usage_reset_at == grant.reset_at
    )


def release(user_id: str, grant: ConsumeResult, now: Optional[datetime] = None) -> bool:
    """
    Hand back a credit granted by try_consume when the work it paid for
    failed. Only applies to the window the grant was charged in: same row,
    same plan, same usage_reset_at. A plan switch, renewal or rollover since
    the grant starts a new window and the credit is not returned. Never
    below zero.
    """
    if not grant.granted or not grant.counted:
        return False

    now = normalize_now(now)
    for _ in range(CONSUME_ATTEMPTS):
        settled = _settle(user_id, now)
        if settled is None:
            return False
        entitlement, plan = settled
        if not _same_window(entitlement, plan, grant):
            logger.info(
                "usage.release_skipped",
                extra={"user_id": user_id, "subscription_id": entitlement.id, "plan_id": plan.plan_id},
            )
            return False
        if entitlement.usage_count <= 0:
            return False
        if store.decrement_usage(entitlement):
            logger.info("usage.released", extra={"user_id": user_id, "subscription_id": entitlement.id})
            return True
    return False
