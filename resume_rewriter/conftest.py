# resume_rewriter/conftest.py
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import Mock, patch

# Configure the environment before any resume_rewriter module reads settings
_TMP_DIR = tempfile.mkdtemp(prefix="resume_rewriter_tests_")
os.environ["ENV"] = "test"
os.environ["SKIP_ENV_VALIDATION"] = "1"
os.environ["TEST_DATABASE_URL"] = f"sqlite:///{Path(_TMP_DIR) / 'test.db'}"
for _key in ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET", "GROQ_API_KEY"):
    os.environ[_key] = ""

import pytest
from sqlalchemy import insert

from resume_rewriter.core.database import (
    clear_all_tables,
    create_all_tables,
    dispose_engine,
    get_db_session,
    users,
)
from resume_rewriter.features.plans.service import seed_plans


@pytest.fixture(scope="session", autouse=True)
def create_tables():
    """Create all database tables once per test session."""
    create_all_tables()
    yield
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """Empty every table and re-seed the default plans before each test."""
    clear_all_tables()
    seed_plans()
    yield


@pytest.fixture
def make_user():
    """Insert a user row directly (no password hashing)."""

    def _make(user_id: str, email: str = None, name: str = None) -> str:
        now = datetime.now(timezone.utc)
        with get_db_session() as session:
            session.execute(
                insert(users).values(
                    user_id=user_id,
                    email=email or f"{user_id}@example.com",
                    name=name,
                    password_hash="not-a-real-hash",
                    status="active",
                    created_at=now,
                    updated_at=now,
                )
            )
        return user_id

    return _make


@pytest.fixture
def alice(make_user):
    return make_user("user_alice", name="Alice")


@pytest.fixture
def bob(make_user):
    return make_user("user_bob", name="Bob")


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from resume_rewriter.main import app

    return TestClient(app)


@pytest.fixture
def auth_headers():
    """Bearer headers for an existing user id."""
    from resume_rewriter.features.users.service import create_session

    def _headers(user_id: str) -> dict:
        return {"Authorization": f"Bearer {create_session(user_id)}"}

    return _headers


@pytest.fixture
def mock_stripe_provider(monkeypatch):
    """Enable billing with a mocked Stripe provider (no real API calls)."""
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test_123")
    with patch("resume_rewriter.features.billing.service.StripeProvider") as mock:
        instance = Mock()
        mock.return_value = instance
        yield instance
