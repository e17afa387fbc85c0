"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Table definitions for users, sessions, plans and entitlements
"""
from typing import Optional
from contextlib import contextmanager
import logging
import os

from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    JSON,
    Text,
    Index,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    text,
    true,
    false,
)
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func

from resume_rewriter.core.config import settings


logger = logging.getLogger("resume_rewriter")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return os.getenv("DATABASE_URL") or settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite"):
        # SQLite (local dev and tests): no server-side pool to tune
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
            echo=False,  # Set to True for SQL query logging
        )

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Drop the current engine so the next call re-initializes it."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Commits on clean exit, rolls back on any exception, so every block is a
    single transaction.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def clear_all_tables() -> None:
    """Delete every row from every table (tests only)."""
    engine = get_engine()
    with engine.begin() as conn:
        for table in reversed(metadata.sorted_tables):
            conn.execute(table.delete())


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("Database connection check failed: %s", e)
        return False


# Users (identity collaborator)
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(320), nullable=False, unique=True),
    Column('name', Text, nullable=True),
    Column('password_hash', String(100), nullable=False),
    Column('status', String(50), nullable=False, server_default='active'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_created_at', 'created_at'),
)

# Opaque bearer tokens
auth_sessions = Table(
    'auth_sessions',
    metadata,
    Column('token', String(128), primary_key=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_auth_sessions_user_id', 'user_id'),
    Index('idx_auth_sessions_expires_at', 'expires_at'),
)

# Plan catalog
subscription_plans = Table(
    'subscription_plans',
    metadata,
    Column('plan_id', String(50), primary_key=True),
    Column('plan_type', String(50), nullable=False, unique=True),
    Column('name', String(200), nullable=False),
    Column('description', Text, nullable=True),
    Column('price_cents', Integer, nullable=False, server_default='0'),
    Column('currency', String(3), nullable=False, server_default='USD'),
    Column('interval', String(20), nullable=False, server_default='month'),  # month | year | lifetime
    Column('monthly_limit', Integer, nullable=False, server_default='0'),  # -1 = unlimited
    Column('features', JSON, nullable=True),
    Column('active', Boolean, nullable=False, server_default=true()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint('price_cents >= 0', name='ck_subscription_plans_price_non_negative'),
    CheckConstraint('monthly_limit >= -1', name='ck_subscription_plans_limit'),
    Index('idx_subscription_plans_active_price', 'active', 'price_cents'),
)

# Entitlements: one row per user, so at most one active row per user
user_subscriptions = Table(
    'user_subscriptions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('plan_id', String(50), ForeignKey('subscription_plans.plan_id'), nullable=False),
    Column('status', String(20), nullable=False, server_default='active'),  # active | cancelled | expired | past_due
    Column('current_period_start', DateTime(timezone=True), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default=false()),
    Column('usage_count', Integer, nullable=False, server_default='0'),
    Column('usage_reset_at', DateTime(timezone=True), nullable=True),
    Column('stripe_customer_id', String(100), nullable=True),
    Column('stripe_subscription_id', String(100), nullable=True, unique=True),
    Column('version', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('user_id', name='uq_user_subscriptions_user_id'),
    CheckConstraint('usage_count >= 0', name='ck_user_subscriptions_usage_non_negative'),
    Index('idx_user_subscriptions_user_status', 'user_id', 'status'),
    Index('idx_user_subscriptions_stripe_customer', 'stripe_customer_id'),
)

# Billing events (webhook idempotency)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False, unique=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 hash for deduplication
    Column('processed', Boolean, nullable=False, server_default=false(), index=True),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    Index('idx_billing_events_received_at', 'received_at'),
)

# Optimization history (durable usage log)
optimization_history = Table(
    'optimization_history',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('subscription_id', String(36), ForeignKey('user_subscriptions.id'), nullable=True),
    Column('optimization_type', String(50), nullable=False),
    Column('ai_model', String(100), nullable=False),
    Column('tokens_used', Integer, nullable=True),
    Column('duration_ms', Integer, nullable=True),
    Column('success', Boolean, nullable=False, server_default=true()),
    Column('error_message', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_optimization_history_user_created', 'user_id', 'created_at'),
)
