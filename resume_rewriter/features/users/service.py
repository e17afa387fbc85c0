"""
User service for account and session management.

Passwords are bcrypt-hashed before storage and verified on login. Sessions
are opaque random bearer tokens with a fixed lifetime (SESSION_TTL_DAYS).
"""
import logging
import secrets
from datetime import timedelta
from typing import Optional, Tuple
from uuid import uuid4

import bcrypt
from sqlalchemy import select, insert, delete
from sqlalchemy.exc import IntegrityError

from resume_rewriter.core.clock import as_utc, utc_now
from resume_rewriter.core.config import settings
from resume_rewriter.core.database import get_db_session, users, auth_sessions
from resume_rewriter.core.errors import ConflictError, UnauthenticatedError, ValidationError
from resume_rewriter.models.user import User


logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8
# bcrypt only looks at the first 72 bytes and rejects longer input
MAX_PASSWORD_BYTES = 72


def hash_password(password: str) -> str:
    """Hash password with bcrypt."""
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Verify password against stored hash."""
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        return False


def _validate_credentials(email: str, password: str) -> str:
    email = User.normalized_email(email or "")
    if "@" not in email or email.startswith("@") or email.endswith("@"):
        raise ValidationError("A valid email address is required")
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(password.encode()) > MAX_PASSWORD_BYTES:
        raise ValidationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    return email


def _row_to_user(row) -> User:
    return User(
        user_id=row.user_id,
        email=row.email,
        name=row.name,
        status=row.status,
        created_at=as_utc(row.created_at),
    )


def get_user(user_id: str) -> Optional[User]:
    with get_db_session() as session:
        row = session.execute(select(users).where(users.c.user_id == user_id)).first()
        return _row_to_user(row) if row else None


def get_user_by_email(email: str) -> Optional[User]:
    with get_db_session() as session:
        row = session.execute(
            select(users).where(users.c.email == User.normalized_email(email))
        ).first()
        return _row_to_user(row) if row else None


def create_session(user_id: str) -> str:
    """Issue a new bearer token for the user."""
    token = secrets.token_urlsafe(32)
    now = utc_now()
    with get_db_session() as session:
        session.execute(
            insert(auth_sessions).values(
                token=token,
                user_id=user_id,
                expires_at=now + timedelta(days=settings.SESSION_TTL_DAYS),
                created_at=now,
            )
        )
    return token


def register(email: str, password: str, name: Optional[str] = None) -> Tuple[User, str]:
    """
    Create an account and sign it in.

    Raises:
        ValidationError: malformed email or password
        ConflictError: email already registered
    """
    email = _validate_credentials(email, password)
    if get_user_by_email(email):
        raise ConflictError("An account with this email already exists")

    now = utc_now()
    user_id = str(uuid4())

    try:
        with get_db_session() as session:
            session.execute(
                insert(users).values(
                    user_id=user_id,
                    email=email,
                    name=name,
                    password_hash=hash_password(password),
                    status="active",
                    created_at=now,
                    updated_at=now,
                )
            )
    except IntegrityError:
        raise ConflictError("An account with this email already exists")

    logger.info("user.registered", extra={"user_id": user_id})
    user = User(user_id=user_id, email=email, name=name, status="active", created_at=now)
    return user, create_session(user_id)


def login(email: str, password: str) -> Tuple[User, str]:
    """
    Verify credentials and issue a token.

    Raises:
        UnauthenticatedError: unknown email or wrong password
    """
    with get_db_session() as session:
        row = session.execute(
            select(users).where(users.c.email == User.normalized_email(email or ""))
        ).first()

    if row is None or not verify_password(password or "", row.password_hash):
        logger.info("user.login_failed")
        raise UnauthenticatedError("Invalid email or password")
    if row.status != "active":
        raise UnauthenticatedError("Account is disabled")

    logger.info("user.login", extra={"user_id": row.user_id})
    return _row_to_user(row), create_session(row.user_id)


def logout(token: str) -> None:
    with get_db_session() as session:
        session.execute(delete(auth_sessions).where(auth_sessions.c.token == token))


def resolve_token(token: str) -> Optional[str]:
    """User id for a live session token, or None."""
    if not token:
        return None
    with get_db_session() as session:
        row = session.execute(
            select(auth_sessions.c.user_id, auth_sessions.c.expires_at).where(
                auth_sessions.c.token == token
            )
        ).first()
    if row is None:
        return None
    if as_utc(row.expires_at) <= utc_now():
        return None
    return row.user_id


def purge_expired_sessions() -> int:
    """Delete expired tokens. Returns rows removed."""
    with get_db_session() as session:
        result = session.execute(
            delete(auth_sessions).where(auth_sessions.c.expires_at <= utc_now())
        )
        return result.rowcount
