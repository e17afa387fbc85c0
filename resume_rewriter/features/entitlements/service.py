"""Read-side views over the entitlement store."""

import logging
from typing import Optional

from resume_rewriter.features.entitlements import store
from resume_rewriter.features.plans.service import get_plan
from resume_rewriter.models.entitlement import Entitlement, EntitlementSummary
from resume_rewriter.models.plan import Plan


logger = logging.getLogger(__name__)


def summarize(entitlement: Entitlement, plan: Plan) -> EntitlementSummary:
    return EntitlementSummary(
        subscription_id=entitlement.id,
        plan_id=plan.plan_id,
        plan_name=plan.name,
        status=entitlement.status,
        credit_allowance=plan.monthly_limit,
        unlimited=plan.is_unlimited,
        usage_count=entitlement.usage_count,
        current_period_start=entitlement.current_period_start,
        current_period_end=entitlement.current_period_end,
        cancel_at_period_end=entitlement.cancel_at_period_end,
        usage_reset_at=entitlement.usage_reset_at,
    )


def get_current_summary(user_id: str) -> Optional[EntitlementSummary]:
    """The user's active entitlement joined with its plan, or None."""
    entitlement = store.find_active_by_user(user_id)
    if entitlement is None:
        return None
    plan = get_plan(entitlement.plan_id)
    if plan is None:
        logger.error(
            "entitlement.plan_missing",
            extra={"user_id": user_id, "plan_id": entitlement.plan_id},
        )
        return None
    return summarize(entitlement, plan)
