"""
resume_rewriter/models/entitlement.py

Entitlement record and the summaries derived from it.

Constraint: each user owns at most one entitlement row, so at most one is
active at a time.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


# Period end stored for lifetime plans instead of a computed window.
LIFETIME_PERIOD_END = datetime(2099, 12, 31, tzinfo=timezone.utc)


class EntitlementStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PAST_DUE = "past_due"


class Entitlement(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    plan_id: str
    status: EntitlementStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    usage_count: int = Field(default=0, ge=0)
    usage_reset_at: Optional[datetime] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == EntitlementStatus.ACTIVE

    @property
    def is_provider_managed(self) -> bool:
        """Renewals for this row arrive from the payment provider."""
        return bool(self.stripe_subscription_id)


class EntitlementSummary(BaseModel):
    """What a caller needs to render the current plan."""
    model_config = ConfigDict(frozen=True)

    subscription_id: str
    plan_id: str
    plan_name: str
    status: EntitlementStatus
    credit_allowance: int
    unlimited: bool
    usage_count: int
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    usage_reset_at: Optional[datetime] = None


class ProviderReference(BaseModel):
    """Payment-provider identifiers and, for recurring plans, its period window."""
    model_config = ConfigDict(frozen=True)

    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
