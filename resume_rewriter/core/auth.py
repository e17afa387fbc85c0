"""
Auth dependencies for the resume_rewriter API.

Resolves the opaque bearer token from the Authorization header to a user id.
"""
from fastapi import Request
from typing import Optional
import logging

from resume_rewriter.core.errors import UnauthenticatedError
from resume_rewriter.features.users.service import resolve_token

logger = logging.getLogger(__name__)


def bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header[:7].lower() == "bearer ":
        token = auth_header[7:].strip()
        return token or None
    return None


def get_current_user_id(request: Request) -> str:
    """
    Extract current user ID from the bearer token.

    Raises:
        UnauthenticatedError: missing, unknown or expired token
    """
    token = bearer_token(request)
    if not token:
        raise UnauthenticatedError("Missing Authorization bearer token")

    user_id = resolve_token(token)
    if not user_id:
        raise UnauthenticatedError("Invalid or expired token")

    request.state.user_id = user_id
    return user_id


def get_optional_user_id(request: Request) -> Optional[str]:
    """Like get_current_user_id, but anonymous callers get None."""
    token = bearer_token(request)
    if not token:
        return None
    try:
        user_id = resolve_token(token)
    except Exception as e:
        logger.warning("auth.lookup_failed", extra={"error_code": type(e).__name__})
        return None
    if user_id:
        request.state.user_id = user_id
    return user_id
