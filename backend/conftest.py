# backend/conftest.py
import os
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add repo root to PYTHONPATH so `backend.*` imports resolve
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

# Settings are read at import time; pin the test environment first.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="limitter-tests-")
os.environ.setdefault("ENV", "test")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")
os.environ.setdefault("TEST_DATABASE_URL", f"sqlite:///{_TEST_DB_DIR}/limitter_test.db")
os.environ.setdefault("ALLOW_HEADER_AUTH", "true")
os.environ.setdefault("AUTH_JWT_SECRET", "test-jwt-secret-with-at-least-32-bytes")
os.environ.setdefault("ADMIN_KEY", "test-admin-key")
os.environ.setdefault("ADMIN_AUTH_MODE", "hybrid")
os.environ.pop("STRIPE_SECRET_KEY", None)
os.environ.pop("STRIPE_WEBHOOK_SECRET", None)

# A fixed mid-month, mid-day instant keeps day and month keys deterministic
NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """
    Drop and recreate every table before each test.

    The test database is a throwaway SQLite file, so a full reset is cheap
    and keeps tests independent of ordering.
    """
    from backend.core.database import reset_database

    reset_database()
    yield


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_user():
    """Create a user profile and optionally move it to a paid plan."""
    from backend.features.users.service import get_or_create_user
    from backend.core.database import get_db_session
    from backend.features.subscriptions.service import apply_plan_change

    def _make(user_id: str = "user_alice", plan: str = "free", **profile):
        get_or_create_user(user_id, email=profile.get("email"), display_name=profile.get("display_name"))
        if plan != "free":
            with get_db_session() as session:
                apply_plan_change(session, user_id, plan, source="test", now=NOW)
        return user_id

    return _make


@pytest.fixture
def stripe_settings(monkeypatch):
    """Enable billing with dummy Stripe credentials."""
    from backend.core.config import settings

    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_dummy")
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_dummy")
    monkeypatch.setattr(settings, "STRIPE_PRICE_ID_PRO", "price_pro")
    monkeypatch.setattr(settings, "STRIPE_PRICE_ID_ELITE", "price_elite")
    monkeypatch.setattr(settings, "STRIPE_PRICE_ID_OVERRIDE", "price_override")
    return settings
