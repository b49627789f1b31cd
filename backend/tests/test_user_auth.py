"""Tests for user authentication: JWT claims and the header fallback."""
from datetime import datetime, timedelta, timezone

import jwt
from fastapi.testclient import TestClient

from backend.core.config import settings
from backend.main import app

client = TestClient(app)


def _bearer(**claims) -> dict:
    payload = {"sub": "user_jwt", "email": "jwt@example.com", "email_verified": True, **claims}
    token = jwt.encode(payload, settings.AUTH_JWT_SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def test_valid_token_creates_profile_with_email():
    response = client.get("/api/me", headers=_bearer(name="Jay"))
    assert response.status_code == 200
    body = response.json()
    assert body["id"] == "user_jwt"
    assert body["email"] == "jwt@example.com"
    assert body["displayName"] == "Jay"
    assert body["plan"] == "free"


def test_unverified_email_is_rejected():
    response = client.get("/api/me", headers=_bearer(email_verified=False))
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "email_not_verified"


def test_unverified_email_allowed_when_not_required(monkeypatch):
    monkeypatch.setattr(settings, "REQUIRE_EMAIL_VERIFICATION", False)
    response = client.get("/api/me", headers=_bearer(email_verified=False))
    assert response.status_code == 200


def test_expired_token_is_rejected():
    expired = datetime.now(timezone.utc) - timedelta(minutes=5)
    response = client.get("/api/me", headers=_bearer(exp=expired))
    assert response.status_code == 401
    assert response.json()["detail"] == "Token expired"


def test_token_signed_with_other_secret_is_rejected():
    token = jwt.encode({"sub": "mallory", "email_verified": True}, "another-secret-that-is-long-enough!", algorithm="HS256")
    response = client.get("/api/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid token"


def test_header_auth_can_be_disabled(monkeypatch):
    monkeypatch.setattr(settings, "ALLOW_HEADER_AUTH", False)
    response = client.get("/api/me", headers={"X-User-Id": "user_alice"})
    assert response.status_code == 401


def test_header_auth_fallback():
    response = client.get("/api/me", headers={"X-User-Id": "user_header"})
    assert response.status_code == 200
    assert response.json()["id"] == "user_header"
