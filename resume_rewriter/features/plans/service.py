"""
resume_rewriter/features/plans/service.py

Plan catalog service.

Handles:
- Plan seeding (starter, pro, annual, unlimited)
- Active plan listing for the pricing page
- Plan resolution by id or plan type
"""

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select, insert, or_
from sqlalchemy.engine import Row

from resume_rewriter.core.database import get_db_session, subscription_plans
from resume_rewriter.core.errors import PlanNotFoundError
from resume_rewriter.models.plan import Plan, PlanInterval, UNLIMITED_CREDITS


# Default catalog; an admin process owns prices after the first seed
DEFAULT_PLANS = {
    "starter-plan": {
        "plan_type": "starter",
        "name": "Starter",
        "description": "Three resume optimizations, pay once.",
        "price_cents": 900,
        "currency": "USD",
        "interval": PlanInterval.LIFETIME,
        "monthly_limit": 3,
        "features": ["ATS optimization", "Job matching", "PDF export"],
    },
    "pro-plan": {
        "plan_type": "pro",
        "name": "Pro",
        "description": "Thirty optimizations every month.",
        "price_cents": 1900,
        "currency": "USD",
        "interval": PlanInterval.MONTH,
        "monthly_limit": 30,
        "features": ["Everything in Starter", "Keyword enhancement", "Priority processing"],
    },
    "annual-plan": {
        "plan_type": "annual",
        "name": "Pro Annual",
        "description": "Four hundred optimizations per year.",
        "price_cents": 14900,
        "currency": "USD",
        "interval": PlanInterval.YEAR,
        "monthly_limit": 400,
        "features": ["Everything in Pro", "Two months free"],
    },
    "unlimited-plan": {
        "plan_type": "unlimited",
        "name": "Lifetime Unlimited",
        "description": "Unlimited optimizations forever.",
        "price_cents": 9900,
        "currency": "USD",
        "interval": PlanInterval.LIFETIME,
        "monthly_limit": UNLIMITED_CREDITS,
        "features": ["Everything in Pro", "Unlimited optimizations"],
    },
}


def _row_to_plan(row: Row) -> Plan:
    return Plan(
        plan_id=row.plan_id,
        plan_type=row.plan_type,
        name=row.name,
        description=row.description,
        price_cents=row.price_cents,
        currency=row.currency,
        interval=PlanInterval(row.interval),
        monthly_limit=row.monthly_limit,
        features=list(row.features or []),
        active=bool(row.active),
        created_at=row.created_at,
    )


def seed_plans() -> None:
    """
    Seed default plans into database (idempotent).

    Existing rows are left untouched so admin price changes survive.
    """
    now = datetime.now(timezone.utc)

    with get_db_session() as session:
        for plan_id, config in DEFAULT_PLANS.items():
            existing = session.execute(
                select(subscription_plans.c.plan_id).where(subscription_plans.c.plan_id == plan_id)
            ).first()
            if existing:
                continue

            session.execute(
                insert(subscription_plans).values(
                    plan_id=plan_id,
                    plan_type=config["plan_type"],
                    name=config["name"],
                    description=config["description"],
                    price_cents=config["price_cents"],
                    currency=config["currency"],
                    interval=config["interval"].value,
                    monthly_limit=config["monthly_limit"],
                    features=config["features"],
                    active=True,
                    created_at=now,
                    updated_at=now,
                )
            )


def list_active_plans() -> List[Plan]:
    """Active plans, cheapest first."""
    with get_db_session() as session:
        rows = session.execute(
            select(subscription_plans)
            .where(subscription_plans.c.active == True)  # noqa: E712
            .order_by(subscription_plans.c.price_cents, subscription_plans.c.plan_id)
        ).all()
        return [_row_to_plan(row) for row in rows]


def get_plan(plan_id: str) -> Optional[Plan]:
    """Get plan by ID, active or not."""
    with get_db_session() as session:
        row = session.execute(
            select(subscription_plans).where(subscription_plans.c.plan_id == plan_id)
        ).first()
        return _row_to_plan(row) if row else None


def find_plan(plan_ref: str) -> Optional[Plan]:
    """
    Resolve an active plan from either its id ("starter-plan") or its
    plan type ("starter").
    """
    if not plan_ref:
        return None
    plan_type = plan_ref[:-len("-plan")] if plan_ref.endswith("-plan") else plan_ref

    with get_db_session() as session:
        rows = session.execute(
            select(subscription_plans)
            .where(
                or_(
                    subscription_plans.c.plan_id == plan_ref,
                    subscription_plans.c.plan_type == plan_type,
                )
            )
            .where(subscription_plans.c.active == True)  # noqa: E712
        ).all()

    if not rows:
        return None
    # Exact id match wins over a plan-type match
    for row in rows:
        if row.plan_id == plan_ref:
            return _row_to_plan(row)
    return _row_to_plan(rows[0])


def require_active_plan(plan_ref: str) -> Plan:
    """
    Resolve an active plan or fail.

    Raises:
        PlanNotFoundError: unknown or inactive plan
    """
    plan = find_plan(plan_ref)
    if plan is None:
        raise PlanNotFoundError(plan_ref)
    return plan
