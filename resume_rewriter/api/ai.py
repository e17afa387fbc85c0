"""
AI API routes.

- POST /api/ai/optimize: Spend one credit on a resume rewrite
- GET  /api/ai/history: Past optimization attempts
"""
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from resume_rewriter.api.schemas import CamelModel, CamelRequest
from resume_rewriter.core.auth import get_current_user_id
from resume_rewriter.features.ai.service import (
    HISTORY_LIMIT,
    get_history,
    history_stats,
    optimize_resume,
)
from resume_rewriter.models.usage import DenialReason


router = APIRouter(prefix="/ai", tags=["ai"])

DENIAL_MESSAGES = {
    DenialReason.NO_ENTITLEMENT: "Choose a plan to start optimizing your resume.",
    DenialReason.LIMIT_EXCEEDED: "You have used all optimizations for this period.",
}


class OptimizeRequest(CamelRequest):
    resume_content: str
    optimization_type: str
    job_description: Optional[str] = None
    model: Optional[str] = None


class OptimizeResponse(CamelModel):
    success: bool
    optimized_content: Optional[str] = None
    model: Optional[str] = None
    tokens_used: Optional[int] = None
    duration: Optional[int] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    upgrade_required: bool = False
    remaining: int = 0
    monthly_limit: int = 0
    unlimited: bool = False
    reset_date: Optional[datetime] = None


class HistoryEntryOut(CamelModel):
    id: str
    optimization_type: str
    ai_model: str
    tokens_used: Optional[int] = None
    duration: Optional[int] = None
    success: bool
    error_message: Optional[str] = None
    created_at: datetime


class HistoryResponse(CamelModel):
    history: List[HistoryEntryOut]
    stats: Dict[str, int]


@router.post("/optimize", response_model=OptimizeResponse)
def optimize(body: OptimizeRequest, user_id: str = Depends(get_current_user_id)):
    """
    Rewrite a resume for one credit.

    Out of credits (or no plan) is a 200 with success=false and
    upgradeRequired=true, not an error.
    """
    result = optimize_resume(
        user_id,
        body.resume_content,
        body.optimization_type,
        job_description=body.job_description,
        model=body.model,
    )
    if not result.granted:
        return OptimizeResponse(
            success=False,
            reason=result.reason.value if result.reason else None,
            message=DENIAL_MESSAGES.get(result.reason),
            upgrade_required=True,
            remaining=result.remaining,
            monthly_limit=result.limit,
            reset_date=result.reset_at,
        )
    return OptimizeResponse(
        success=True,
        optimized_content=result.optimized_content,
        model=result.model,
        tokens_used=result.tokens_used,
        duration=result.duration_ms,
        remaining=result.remaining,
        monthly_limit=result.limit,
        unlimited=result.unlimited,
        reset_date=result.reset_at,
    )


@router.get("/history", response_model=HistoryResponse)
def history(
    limit: int = Query(HISTORY_LIMIT, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
):
    entries = get_history(user_id, limit=limit)
    return HistoryResponse(
        history=[
            HistoryEntryOut(
                id=entry.id,
                optimization_type=entry.optimization_type,
                ai_model=entry.ai_model,
                tokens_used=entry.tokens_used,
                duration=entry.duration_ms,
                success=entry.success,
                error_message=entry.error_message,
                created_at=entry.created_at,
            )
            for entry in entries
        ],
        stats=history_stats(entries),
    )
