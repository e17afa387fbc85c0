"""
resume_rewriter/features/ai/service.py

Metered resume optimization.

One optimization costs one credit. The credit is taken before the LLM call
and handed back if the call fails, so users are only charged for output they
received. Every attempt past the gate is written to optimization_history.
"""

import logging
import time
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

import groq
from sqlalchemy import select, insert

from resume_rewriter.core.clock import as_utc, utc_now
from resume_rewriter.core.config import settings
from resume_rewriter.core.database import get_db_session, optimization_history
from resume_rewriter.core.errors import AppError, ValidationError
from resume_rewriter.features.usage import meter
from resume_rewriter.models.optimization import OptimizationHistoryEntry, OptimizationResult


logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert resume writer and ATS optimization specialist. "
    "Return only the optimized resume text, with no commentary."
)

OPTIMIZATION_INSTRUCTIONS = {
    "ats-optimization": (
        "Optimize this resume for Applicant Tracking Systems. Use industry-standard "
        "keywords, standard section headings, and action verbs at the start of bullet "
        "points. Quantify achievements where possible and remove complex formatting."
    ),
    "job-match": (
        "Tailor this resume to the target job description. Prioritize relevant "
        "experience, reuse the posting's keywords and align the summary with the role. "
        "Do not invent experience."
    ),
    "general-improvement": (
        "Improve this resume overall: stronger wording, quantified achievements and "
        "consistent tense, keeping the original structure."
    ),
    "keyword-enhancement": (
        "Strengthen the keywords in this resume so relevant skills, tools and "
        "technologies are stated explicitly and appear where recruiters look for them."
    ),
    "format-improvement": (
        "Improve the layout of this resume as plain text: clear section breaks, "
        "consistent bullet style and dates, concise lines."
    ),
}

VALID_OPTIMIZATION_TYPES = tuple(OPTIMIZATION_INSTRUCTIONS)

MAX_TOKENS = 2048
HISTORY_LIMIT = 50


class RewriterError(AppError):
    """The LLM call failed or returned nothing usable."""
    code = "rewriter_unavailable"
    status_code = 502


def validate_request(resume_content: str, optimization_type: str, job_description: Optional[str]) -> None:
    if not resume_content or not resume_content.strip():
        raise ValidationError("Resume content is required")
    if optimization_type not in OPTIMIZATION_INSTRUCTIONS:
        raise ValidationError(
            f"Invalid optimization type; expected one of: {', '.join(VALID_OPTIMIZATION_TYPES)}"
        )
    if optimization_type == "job-match" and not (job_description and job_description.strip()):
        raise ValidationError("Job description is required for job matching optimization")


def build_prompt(optimization_type: str, resume_content: str, job_description: Optional[str] = None) -> str:
    parts = [OPTIMIZATION_INSTRUCTIONS[optimization_type]]
    if job_description:
        parts.append(f"TARGET JOB DESCRIPTION:\n{job_description.strip()}")
    parts.append(f"ORIGINAL RESUME:\n{resume_content.strip()}")
    return "\n\n".join(parts)


def rewrite_with_groq(prompt: str, model: str) -> Tuple[str, Optional[int]]:
    """
    Run one chat completion.

    Returns (content, total_tokens).

    Raises:
        RewriterError: not configured, provider error, or empty output
    """
    if not settings.GROQ_API_KEY:
        raise RewriterError("GROQ_API_KEY not configured")

    client = groq.Groq(api_key=settings.GROQ_API_KEY)
    try:
        completion = client.chat.completions.create(
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            model=model,
            temperature=0.7,
            max_tokens=MAX_TOKENS,
        )
    except groq.GroqError as e:
        raise RewriterError(f"Optimization failed: {e}")

    choices = getattr(completion, "choices", None) or []
    message = getattr(choices[0], "message", None) if choices else None
    content = ((message.content if message else None) or "").strip()
    if not content:
        raise RewriterError("Optimization returned no content")
    tokens_used = completion.usage.total_tokens if completion.usage else None
    return content, tokens_used


def _record_history(
    user_id: str,
    subscription_id: Optional[str],
    optimization_type: str,
    model: str,
    *,
    success: bool,
    duration_ms: int,
    tokens_used: Optional[int] = None,
    error_message: Optional[str] = None,
) -> None:
    with get_db_session() as session:
        session.execute(
            insert(optimization_history).values(
                id=str(uuid4()),
                user_id=user_id,
                subscription_id=subscription_id,
                optimization_type=optimization_type,
                ai_model=model,
                tokens_used=tokens_used,
                duration_ms=duration_ms,
                success=success,
                error_message=error_message,
                created_at=utc_now(),
            )
        )


def optimize_resume(
    user_id: str,
    resume_content: str,
    optimization_type: str,
    job_description: Optional[str] = None,
    model: Optional[str] = None,
    now: Optional[datetime] = None,
) -> OptimizationResult:
    """
    Spend one credit and rewrite the resume.

    A denial is not an error: the result carries granted=False with the
    reason, remaining credits and reset time.

    Raises:
        ValidationError: bad input (no credit is taken)
        RewriterError: LLM failure. The credit is released on this and on any
            other error raised after the grant.
    """
    validate_request(resume_content, optimization_type, job_description)
    model = model or settings.GROQ_MODEL

    grant = meter.try_consume(user_id, now=now)
    if not grant.granted:
        logger.info(
            "usage.denied",
            extra={"user_id": user_id, "reason": grant.reason.value if grant.reason else None},
        )
        return OptimizationResult(
            granted=False,
            reason=grant.reason,
            remaining=grant.remaining,
            limit=grant.limit,
            reset_at=grant.reset_at,
        )

    started = time.monotonic()
    try:
        content, tokens_used = rewrite_with_groq(
            build_prompt(optimization_type, resume_content, job_description), model
        )
    except Exception as e:
        # Any failure after the grant hands the credit back before propagating
        duration_ms = int((time.monotonic() - started) * 1000)
        released = meter.release(user_id, grant, now=now)
        error_code = e.code if isinstance(e, AppError) else "internal_error"
        _record_history(
            user_id,
            grant.subscription_id,
            optimization_type,
            model,
            success=False,
            duration_ms=duration_ms,
            error_message=e.message if isinstance(e, AppError) else f"Unexpected error: {type(e).__name__}",
        )
        logger.warning(
            "ai.optimize_failed",
            extra={"user_id": user_id, "error_code": error_code, "credit_released": released},
        )
        raise

    duration_ms = int((time.monotonic() - started) * 1000)
    _record_history(
        user_id,
        grant.subscription_id,
        optimization_type,
        model,
        success=True,
        duration_ms=duration_ms,
        tokens_used=tokens_used,
    )
    logger.info(
        "ai.optimized",
        extra={"user_id": user_id, "optimization_type": optimization_type, "duration_ms": duration_ms},
    )
    return OptimizationResult(
        granted=True,
        optimized_content=content,
        model=model,
        tokens_used=tokens_used,
        duration_ms=duration_ms,
        remaining=grant.remaining,
        limit=grant.limit,
        unlimited=grant.unlimited,
        reset_at=grant.reset_at,
    )


def get_history(user_id: str, limit: int = HISTORY_LIMIT) -> List[OptimizationHistoryEntry]:
    """Most recent attempts first."""
    with get_db_session() as session:
        rows = session.execute(
            select(optimization_history)
            .where(optimization_history.c.user_id == user_id)
            .order_by(optimization_history.c.created_at.desc())
            .limit(limit)
        ).all()
    return [
        OptimizationHistoryEntry(
            id=row.id,
            optimization_type=row.optimization_type,
            ai_model=row.ai_model,
            tokens_used=row.tokens_used,
            duration_ms=row.duration_ms,
            success=bool(row.success),
            error_message=row.error_message,
            created_at=as_utc(row.created_at),
        )
        for row in rows
    ]


def history_stats(entries: List[OptimizationHistoryEntry]) -> Dict[str, int]:
    successful = sum(1 for entry in entries if entry.success)
    return {
        "totalOptimizations": len(entries),
        "successfulOptimizations": successful,
        "failedOptimizations": len(entries) - successful,
        "totalTokens": sum(entry.tokens_used or 0 for entry in entries),
    }
