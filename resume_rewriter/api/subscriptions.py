"""
Subscription API routes.

- GET  /api/subscriptions/plans: Active plans, cheapest first
- GET  /api/subscriptions/current: Caller's active subscription
- GET  /api/subscriptions/usage: Credit position (anonymous callers see none)
- POST /api/subscriptions/checkout: Create Stripe checkout session
- POST /api/subscriptions/confirm-payment: Activate plan after checkout redirect
- POST /api/subscriptions/webhook: Handle Stripe webhooks
- POST /api/subscriptions/cancel: Stop renewal at period end
"""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Request

from resume_rewriter.api.schemas import CamelModel, CamelRequest
from resume_rewriter.core.auth import get_current_user_id, get_optional_user_id
from resume_rewriter.features.billing.service import (
    cancel_subscription,
    confirm_checkout,
    process_webhook_event,
    start_checkout,
)
from resume_rewriter.features.entitlements.service import get_current_summary
from resume_rewriter.features.plans.service import list_active_plans
from resume_rewriter.features.usage.meter import get_status
from resume_rewriter.features.users.service import get_user
from resume_rewriter.models.entitlement import EntitlementSummary
from resume_rewriter.models.plan import Plan


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


class PlanOut(CamelModel):
    id: str
    plan_type: str
    name: str
    description: Optional[str] = None
    price: float
    price_cents: int
    currency: str
    interval: str
    monthly_limit: int
    unlimited: bool
    features: List[str]

    @classmethod
    def from_plan(cls, plan: Plan) -> "PlanOut":
        return cls(
            id=plan.plan_id,
            plan_type=plan.plan_type,
            name=plan.name,
            description=plan.description,
            price=float(plan.price),
            price_cents=plan.price_cents,
            currency=plan.currency,
            interval=plan.interval.value,
            monthly_limit=plan.monthly_limit,
            unlimited=plan.is_unlimited,
            features=plan.features,
        )


class PlansResponse(CamelModel):
    plans: List[PlanOut]


class SubscriptionOut(CamelModel):
    id: str
    plan_id: str
    plan_name: str
    status: str
    monthly_limit: int
    unlimited: bool
    usage_count: int
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool
    usage_reset_at: Optional[datetime] = None

    @classmethod
    def from_summary(cls, summary: EntitlementSummary) -> "SubscriptionOut":
        return cls(
            id=summary.subscription_id,
            plan_id=summary.plan_id,
            plan_name=summary.plan_name,
            status=summary.status.value,
            monthly_limit=summary.credit_allowance,
            unlimited=summary.unlimited,
            usage_count=summary.usage_count,
            current_period_start=summary.current_period_start,
            current_period_end=summary.current_period_end,
            cancel_at_period_end=summary.cancel_at_period_end,
            usage_reset_at=summary.usage_reset_at,
        )


class CurrentSubscriptionResponse(CamelModel):
    subscription: Optional[SubscriptionOut] = None


class UsageResponse(CamelModel):
    has_subscription: bool
    usage_count: int = 0
    monthly_limit: int = 0
    remaining: int = 0
    unlimited: bool = False
    reset_date: Optional[datetime] = None
    plan_name: Optional[str] = None


class CheckoutRequest(CamelRequest):
    plan_id: str


class CheckoutResponse(CamelModel):
    checkout_url: str
    session_id: str


class ConfirmPaymentRequest(CamelRequest):
    plan_id: str
    session_id: Optional[str] = None


class ConfirmedPlan(CamelModel):
    id: str
    name: str
    monthly_limit: int


class ConfirmPaymentResponse(CamelModel):
    success: bool
    plan: ConfirmedPlan
    message: str


class CancelResponse(CamelModel):
    message: str
    subscription: SubscriptionOut


@router.get("/plans", response_model=PlansResponse)
def get_plans():
    """Active plans sorted by price. No auth required."""
    return PlansResponse(plans=[PlanOut.from_plan(plan) for plan in list_active_plans()])


@router.get("/current", response_model=CurrentSubscriptionResponse)
def get_current(user_id: str = Depends(get_current_user_id)):
    """
    Caller's active subscription, or null.

    Lookup failures are logged and reported as no subscription.
    """
    try:
        summary = get_current_summary(user_id)
    except Exception:
        logger.error("subscriptions.current_failed", exc_info=True, extra={"user_id": user_id})
        summary = None
    return CurrentSubscriptionResponse(
        subscription=SubscriptionOut.from_summary(summary) if summary else None
    )


@router.get("/usage", response_model=UsageResponse)
def get_usage(user_id: Optional[str] = Depends(get_optional_user_id)):
    """
    Credit position for the caller.

    Anonymous callers and lookup failures get hasSubscription=false so the
    dashboard can always render.
    """
    if not user_id:
        return UsageResponse(has_subscription=False)

    try:
        status = get_status(user_id)
    except Exception:
        logger.error("subscriptions.usage_failed", exc_info=True, extra={"user_id": user_id})
        return UsageResponse(has_subscription=False)

    if not status.has_entitlement:
        return UsageResponse(has_subscription=False)

    return UsageResponse(
        has_subscription=True,
        usage_count=status.usage_count,
        monthly_limit=status.limit,
        remaining=status.remaining,
        unlimited=status.unlimited,
        reset_date=status.reset_at,
        plan_name=status.plan_name,
    )


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(body: CheckoutRequest, user_id: str = Depends(get_current_user_id)):
    """
    Create Stripe checkout session.

    Errors:
        404: Unknown or inactive plan
        503: Billing disabled (STRIPE_SECRET_KEY not set)
        502: Stripe API error
    """
    user = get_user(user_id)
    session = start_checkout(user_id, body.plan_id, email=user.email if user else None)
    return CheckoutResponse(checkout_url=session.url, session_id=session.session_id)


@router.post("/confirm-payment", response_model=ConfirmPaymentResponse)
def confirm_payment_route(body: ConfirmPaymentRequest, user_id: str = Depends(get_current_user_id)):
    """
    Activate the purchased plan after the checkout redirect.

    Safe to call more than once, and safe to race the webhook.
    Without a sessionId nothing proves the caller paid, so production requires
    CONFIRM_REQUIRES_SESSION.
    """
    summary = confirm_checkout(user_id, body.plan_id, session_id=body.session_id)
    return ConfirmPaymentResponse(
        success=True,
        plan=ConfirmedPlan(
            id=summary.plan_id,
            name=summary.plan_name,
            monthly_limit=summary.credit_allowance,
        ),
        message=f"{summary.plan_name} plan activated",
    )


@router.post("/webhook")
async def handle_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Signature is verified against STRIPE_WEBHOOK_SECRET before anything is
    written; events are deduplicated by Stripe event id.

    Errors:
        400: Invalid signature or payload
        503: Billing disabled
    """
    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    result = process_webhook_event(headers, body)
    return {"received": True, "eventId": result.event_id}


@router.post("/cancel", response_model=CancelResponse)
def cancel(user_id: str = Depends(get_current_user_id)):
    """Stop renewal; access continues until the current period ends."""
    summary = cancel_subscription(user_id)
    return CancelResponse(
        message="Subscription will cancel at the end of the current period",
        subscription=SubscriptionOut.from_summary(summary),
    )
