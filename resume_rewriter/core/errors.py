"""
Application error types and the FastAPI handlers that render them.

Every error body has the same shape:
    {"error": {"code", "message", "request_id"}, "detail": message}
"""

import logging
from typing import Optional
from uuid import uuid4

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request

from resume_rewriter.core.logging import LOGGER_NAME, get_request_id

logger = logging.getLogger(LOGGER_NAME)


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class UnauthenticatedError(AppError):
    """Missing, invalid or expired bearer token."""
    code = "unauthenticated"
    status_code = 401


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PlanNotFoundError(NotFoundError):
    """Unknown or inactive plan id."""
    code = "plan_not_found"

    def __init__(self, plan_id: str, **kwargs):
        super().__init__(f"Plan not found: {plan_id}", **kwargs)
        self.plan_id = plan_id


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class SignatureInvalidError(AppError):
    """Webhook payload failed provider signature verification."""
    code = "signature_invalid"
    status_code = 400


class ProviderUnavailableError(AppError):
    """Payment provider timed out or failed; safe to retry."""
    code = "provider_unavailable"
    status_code = 502


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or uuid4().hex


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


def error_response(request: Request, status_code: int, code: str, message: str, request_id: Optional[str] = None) -> JSONResponse:
    """Render the common error body and log it once (5xx at error level)."""
    rid = request_id or _request_id(request)
    logger.log(
        logging.ERROR if status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": code, "status": status_code, "path": request.url.path},
    )
    return JSONResponse(
        status_code=status_code,
        content=_error_payload(code, message, rid),
        headers={"x-request-id": rid},
    )


async def app_error_handler(request: Request, exc: AppError):
    return error_response(request, exc.status_code, exc.code, exc.message, exc.request_id)


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    code = "not_found" if exc.status_code == 404 else "http_error"
    return error_response(request, exc.status_code, code, str(exc.detail or "HTTP error"))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    # First problem only; the full list stays in the log
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg', 'invalid request')}" if location else "Invalid request"
    logger.info("request.invalid", extra={"problems": len(errors)})
    return error_response(request, 422, "invalid_request", message)


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled.exception", exc_info=exc, extra={"request_id": _request_id(request)})
    return error_response(request, 500, "internal_error", "Unexpected error")
