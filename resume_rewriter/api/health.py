"""
Liveness and readiness probes. Neither exposes configuration values.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from resume_rewriter.core.database import check_connection, get_engine
from resume_rewriter.features.billing.service import billing_enabled

logger = logging.getLogger("resume_rewriter")

router = APIRouter(tags=["health"])

REQUIRED_TABLES = (
    "app_users",
    "auth_sessions",
    "subscription_plans",
    "user_subscriptions",
    "billing_events",
    "optimization_history",
)


def _not_ready(detail: str) -> JSONResponse:
    return JSONResponse(status_code=503, content={"status": "error", "detail": detail})


@router.get("/healthz")
def healthz():
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Ready once the database answers and the schema is in place."""
    if not check_connection():
        return _not_ready("database unreachable")

    inspector = inspect(get_engine())
    missing = [table for table in REQUIRED_TABLES if not inspector.has_table(table)]
    if missing:
        logger.warning("readyz.missing_tables", extra={"tables": ",".join(missing)})
        return _not_ready(f"missing tables: {', '.join(missing)}")

    return {"status": "ok", "billing": billing_enabled()}
