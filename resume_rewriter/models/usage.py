"""
resume_rewriter/models/usage.py

Usage meter results.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class DenialReason(str, Enum):
    NO_ENTITLEMENT = "no_entitlement"
    LIMIT_EXCEEDED = "limit_exceeded"


class UsageStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    has_entitlement: bool
    usage_count: int = 0
    limit: int = 0
    remaining: int = 0
    unlimited: bool = False
    reset_at: Optional[datetime] = None
    plan_id: Optional[str] = None
    plan_name: Optional[str] = None

    @classmethod
    def none(cls) -> "UsageStatus":
        return cls(has_entitlement=False)


class ConsumeResult(BaseModel):
    """Outcome of try_consume: granted, or denied with a reason.

    Denials always carry the current remaining count and reset time so the
    caller can explain why and when more credits arrive.
    """
    model_config = ConfigDict(frozen=True)

    granted: bool
    reason: Optional[DenialReason] = None
    subscription_id: Optional[str] = None
    remaining: int = 0
    limit: int = 0
    unlimited: bool = False
    reset_at: Optional[datetime] = None
    # Plan the grant was charged against; with reset_at it identifies the
    # usage window a release may return the credit to
    plan_id: Optional[str] = None
    # True when the grant incremented usage_count (never for unlimited plans)
    counted: bool = False
