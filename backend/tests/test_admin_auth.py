"""
Test admin authentication.

Tests:
- Legacy key allowed in dev/test mode
- Legacy key blocked in prod mode (unless mode="legacy")
- Nothing configured -> 503
- JWT for a profile with is_admin is accepted; without it is rejected
"""
import jwt
from fastapi.testclient import TestClient
from sqlalchemy import update

from backend.core.config import settings
from backend.core.database import get_db_session, users
from backend.features.users.service import get_or_create_user
from backend.main import app

client = TestClient(app)

STATS_URL = "/api/admin/stats"


def _token(sub: str, **claims) -> str:
    payload = {"sub": sub, "email_verified": True, **claims}
    return jwt.encode(payload, settings.AUTH_JWT_SECRET, algorithm="HS256")


def test_legacy_key_allowed_in_dev(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_AUTH_MODE", "hybrid")
    monkeypatch.setattr(settings, "ENVIRONMENT", "dev")
    monkeypatch.setattr(settings, "ADMIN_KEY", "test-admin-key-123")

    response = client.get(STATS_URL, headers={"X-Admin-Key": "test-admin-key-123"})
    assert response.status_code == 200


def test_legacy_key_blocked_in_prod(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_AUTH_MODE", "hybrid")
    monkeypatch.setattr(settings, "ENVIRONMENT", "prod")
    monkeypatch.setattr(settings, "ADMIN_KEY", "test-admin-key-123")

    response = client.get(STATS_URL, headers={"X-Admin-Key": "test-admin-key-123"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "admin_unauthorized"


def test_legacy_mode_allows_key_in_prod(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_AUTH_MODE", "legacy")
    monkeypatch.setattr(settings, "ENVIRONMENT", "prod")
    monkeypatch.setattr(settings, "ADMIN_KEY", "test-admin-key-456")

    response = client.get(STATS_URL, headers={"X-Admin-Key": "test-admin-key-456"})
    assert response.status_code == 200


def test_admin_auth_unconfigured(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_AUTH_MODE", "legacy")
    monkeypatch.setattr(settings, "ADMIN_KEY", None)
    monkeypatch.setattr(settings, "AUTH_JWT_SECRET", None)

    response = client.get(STATS_URL, headers={"X-Admin-Key": "any-key"})
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "admin_auth_unconfigured"


def test_invalid_legacy_key(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_AUTH_MODE", "legacy")
    monkeypatch.setattr(settings, "ENVIRONMENT", "dev")
    monkeypatch.setattr(settings, "ADMIN_KEY", "correct-key-789")

    response = client.get(STATS_URL, headers={"X-Admin-Key": "wrong-key-999"})
    assert response.status_code == 401


def test_profile_admin_jwt_accepted(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_AUTH_MODE", "profile")
    get_or_create_user("admin_1", email="ops@example.com")
    with get_db_session() as session:
        session.execute(update(users).where(users.c.user_id == "admin_1").values(is_admin=True))

    response = client.get(STATS_URL, headers={"Authorization": f"Bearer {_token('admin_1')}"})
    assert response.status_code == 200


def test_profile_without_admin_flag_rejected(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_AUTH_MODE", "profile")
    get_or_create_user("plain_user")

    response = client.get(STATS_URL, headers={"Authorization": f"Bearer {_token('plain_user')}"})
    assert response.status_code == 401
