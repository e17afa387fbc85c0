"""
resume_rewriter/features/entitlements/store.py

Entitlement store.

Durable CRUD beneath the usage meter and the payment reconciler. Every
mutation of a row bumps its `version`; writes keyed on a previously read
version are compare-and-set and report whether they applied, so concurrent
handlers never lose updates without an in-process lock.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import select, insert, update, and_
from sqlalchemy.engine import Row
from sqlalchemy.exc import IntegrityError

from resume_rewriter.core.clock import as_utc, utc_now
from resume_rewriter.core.database import get_db_session, user_subscriptions
from resume_rewriter.models.entitlement import (
    Entitlement,
    EntitlementStatus,
    ProviderReference,
)


logger = logging.getLogger(__name__)

# Insert races on uq_user_subscriptions_user_id fall back to update this many times
UPSERT_ATTEMPTS = 2


def _row_to_entitlement(row: Row) -> Entitlement:
    return Entitlement(
        id=row.id,
        user_id=row.user_id,
        plan_id=row.plan_id,
        status=EntitlementStatus(row.status),
        current_period_start=as_utc(row.current_period_start),
        current_period_end=as_utc(row.current_period_end),
        cancel_at_period_end=bool(row.cancel_at_period_end),
        usage_count=row.usage_count,
        usage_reset_at=as_utc(row.usage_reset_at),
        stripe_customer_id=row.stripe_customer_id,
        stripe_subscription_id=row.stripe_subscription_id,
        version=row.version,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def find_by_user(user_id: str) -> Optional[Entitlement]:
    """The user's entitlement row regardless of status."""
    with get_db_session() as session:
        row = session.execute(
            select(user_subscriptions).where(user_subscriptions.c.user_id == user_id)
        ).first()
        return _row_to_entitlement(row) if row else None


def find_active_by_user(user_id: str) -> Optional[Entitlement]:
    with get_db_session() as session:
        row = session.execute(
            select(user_subscriptions).where(
                and_(
                    user_subscriptions.c.user_id == user_id,
                    user_subscriptions.c.status == EntitlementStatus.ACTIVE.value,
                )
            )
        ).first()
        return _row_to_entitlement(row) if row else None


def find_by_provider_subscription(subscription_id: str) -> Optional[Entitlement]:
    with get_db_session() as session:
        row = session.execute(
            select(user_subscriptions).where(
                user_subscriptions.c.stripe_subscription_id == subscription_id
            )
        ).first()
        return _row_to_entitlement(row) if row else None


def _activation_values(
    plan_id: str,
    period_start: datetime,
    period_end: datetime,
    now: datetime,
    provider_reference: Optional[ProviderReference],
    recurring: bool,
) -> Dict[str, Any]:
    values: Dict[str, Any] = {
        "plan_id": plan_id,
        "status": EntitlementStatus.ACTIVE.value,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "cancel_at_period_end": False,
        "usage_count": 0,
        "usage_reset_at": period_end,
        "updated_at": now,
    }
    if provider_reference is not None:
        if provider_reference.customer_id:
            values["stripe_customer_id"] = provider_reference.customer_id
        if provider_reference.subscription_id:
            values["stripe_subscription_id"] = provider_reference.subscription_id
    if not recurring:
        # A one-time plan is no longer governed by any provider subscription
        values["stripe_subscription_id"] = None
    return values


def upsert_active(
    user_id: str,
    plan_id: str,
    *,
    period_start: datetime,
    period_end: datetime,
    recurring: bool,
    provider_reference: Optional[ProviderReference] = None,
    now: Optional[datetime] = None,
) -> Entitlement:
    """
    Activate the user's single entitlement row with a fresh window and a
    zeroed counter (insert or update, one transaction).

    Set semantics: applying the same activation twice yields the same row
    state apart from version/updated_at.
    """
    now = now or utc_now()
    values = _activation_values(plan_id, period_start, period_end, now, provider_reference, recurring)

    for attempt in range(UPSERT_ATTEMPTS):
        try:
            with get_db_session() as session:
                existing = session.execute(
                    select(user_subscriptions.c.id)
                    .where(user_subscriptions.c.user_id == user_id)
                    .with_for_update()
                ).first()

                if existing:
                    session.execute(
                        update(user_subscriptions)
                        .where(user_subscriptions.c.id == existing.id)
                        .values(version=user_subscriptions.c.version + 1, **values)
                    )
                    entitlement_id = existing.id
                else:
                    entitlement_id = str(uuid4())
                    session.execute(
                        insert(user_subscriptions).values(
                            id=entitlement_id,
                            user_id=user_id,
                            version=0,
                            created_at=now,
                            **values,
                        )
                    )

                row = session.execute(
                    select(user_subscriptions).where(user_subscriptions.c.id == entitlement_id)
                ).first()
                return _row_to_entitlement(row)
        except IntegrityError:
            # Another handler inserted the row first; the next pass updates it
            if attempt + 1 >= UPSERT_ATTEMPTS:
                raise
            logger.info(
                "entitlement.upsert_conflict",
                extra={"user_id": user_id, "plan_id": plan_id, "attempt": attempt + 1},
            )


def compare_and_set(entitlement: Entitlement, **values: Any) -> bool:
    """
    Apply `values` only if the row still has the version read into
    `entitlement`. Returns False when another writer got there first.
    """
    values.setdefault("updated_at", utc_now())
    with get_db_session() as session:
        result = session.execute(
            update(user_subscriptions)
            .where(
                and_(
                    user_subscriptions.c.id == entitlement.id,
                    user_subscriptions.c.version == entitlement.version,
                )
            )
            .values(version=entitlement.version + 1, **values)
        )
        return result.rowcount == 1


def increment_usage(entitlement: Entitlement) -> bool:
    return compare_and_set(entitlement, usage_count=entitlement.usage_count + 1)


def decrement_usage(entitlement: Entitlement) -> bool:
    if entitlement.usage_count <= 0:
        return False
    return compare_and_set(entitlement, usage_count=entitlement.usage_count - 1)


def reset_usage(entitlement: Entitlement, reset_at: Optional[datetime]) -> bool:
    return compare_and_set(entitlement, usage_count=0, usage_reset_at=reset_at)


def transition_status(entitlement: Entitlement, status: EntitlementStatus) -> bool:
    return compare_and_set(entitlement, status=status.value)


def set_cancel_at_period_end(entitlement: Entitlement, flag: bool = True) -> bool:
    return compare_and_set(entitlement, cancel_at_period_end=flag)


def update_by_provider_subscription(subscription_id: str, **values: Any) -> Optional[Entitlement]:
    """
    Apply provider-reported state to the row linked to `subscription_id`.

    The provider is authoritative for its own subscription, so this write is
    unconditional (it still bumps the version so in-flight CAS writers
    re-read).
    """
    values.setdefault("updated_at", utc_now())
    with get_db_session() as session:
        result = session.execute(
            update(user_subscriptions)
            .where(user_subscriptions.c.stripe_subscription_id == subscription_id)
            .values(version=user_subscriptions.c.version + 1, **values)
        )
        if result.rowcount == 0:
            return None
        row = session.execute(
            select(user_subscriptions).where(
                user_subscriptions.c.stripe_subscription_id == subscription_id
            )
        ).first()
        return _row_to_entitlement(row) if row else None
