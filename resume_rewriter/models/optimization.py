from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

from resume_rewriter.models.usage import DenialReason


class OptimizationResult(BaseModel):
    """Either rewritten content or a soft gate explaining the denial."""
    model_config = ConfigDict(frozen=True)

    granted: bool
    reason: Optional[DenialReason] = None
    optimized_content: Optional[str] = None
    model: Optional[str] = None
    tokens_used: Optional[int] = None
    duration_ms: Optional[int] = None
    remaining: int = 0
    limit: int = 0
    unlimited: bool = False
    reset_at: Optional[datetime] = None


class OptimizationHistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    optimization_type: str
    ai_model: str
    tokens_used: Optional[int] = None
    duration_ms: Optional[int] = None
    success: bool
    error_message: Optional[str] = None
    created_at: datetime
