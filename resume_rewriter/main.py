import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load .env before settings-dependent modules read os.environ
load_dotenv()

from resume_rewriter.core.config import settings, validate_config
from resume_rewriter.core.logging import configure_logging
from resume_rewriter.core.middleware.request_id import RequestIdMiddleware
from resume_rewriter.core.validation import validate_env
from resume_rewriter.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from resume_rewriter.core.database import create_all_tables
from resume_rewriter.features.plans.service import seed_plans
from resume_rewriter.features.users.service import purge_expired_sessions
from resume_rewriter.api import ai, auth, health, subscriptions

configure_logging(settings.ENV)
validate_env()
validate_config(strict=settings.CONFIG_STRICT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("resume_rewriter")
    logger.info("Starting resume_rewriter backend...")
    app.state.startup_time = time.time()
    create_all_tables()
    seed_plans()
    purged = purge_expired_sessions()
    if purged:
        logger.info("auth.sessions_purged", extra={"count": purged})
    try:
        yield
    finally:
        logger.info("Stopping resume_rewriter backend...")


app = FastAPI(title="Resume Rewriter - Backend", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins(),
    allow_credentials="*" not in settings.cors_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(subscriptions.router, prefix="/api")
app.include_router(auth.router, prefix="/api")
app.include_router(ai.router, prefix="/api")
app.include_router(health.router)
