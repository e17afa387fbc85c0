"""
resume_rewriter/models/plan.py

Plan catalog entry.

Plans carry price, billing interval and credit allowance. Prices are held in
minor units (cents) so the charged amount never goes through float math.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


# Credit allowance sentinel for plans that never run out.
UNLIMITED_CREDITS = -1


class PlanInterval(str, Enum):
    MONTH = "month"
    YEAR = "year"
    LIFETIME = "lifetime"


class Plan(BaseModel):
    """
    Plan represents a purchasable tier.

    Examples:
    - starter-plan (lifetime, 3 credits)
    - pro-plan (month, 30 credits)
    - unlimited-plan (lifetime, unlimited)
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    plan_type: str
    name: str
    description: Optional[str] = None
    price_cents: int = Field(ge=0)
    currency: str = "USD"
    interval: PlanInterval
    monthly_limit: int = Field(ge=UNLIMITED_CREDITS)
    features: List[str] = Field(default_factory=list)
    active: bool = True
    created_at: Optional[datetime] = None

    @property
    def price(self) -> Decimal:
        return (Decimal(self.price_cents) / Decimal(100)).quantize(Decimal("0.01"))

    @property
    def is_unlimited(self) -> bool:
        return self.monthly_limit == UNLIMITED_CREDITS

    @property
    def is_recurring(self) -> bool:
        """Lifetime plans are paid once; every other interval renews."""
        return self.interval != PlanInterval.LIFETIME
