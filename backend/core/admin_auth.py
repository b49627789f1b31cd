"""
Admin authentication for back-office operations.

Supports hybrid authentication:
- Profile (preferred): Bearer JWT whose subject has is_admin on its profile
- Legacy X-Admin-Key: Shared secret (feature-flagged)

Auth modes (ADMIN_AUTH_MODE):
- "profile": Only JWT + admin profile allowed
- "legacy": Only X-Admin-Key allowed (testing/migration)
- "hybrid": Both allowed (default)

In prod (ENVIRONMENT=prod), legacy keys are blocked unless the mode is
explicitly "legacy". Every admin action is audited with the actor identity.
"""
import os
import hashlib
import hmac
from typing import Optional, Literal
from dataclasses import dataclass

from fastapi import Request, HTTPException
from sqlalchemy import select

from backend.core.auth import decode_auth_token
from backend.core.config import settings
from backend.core.database import get_db_session, users


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_type: Literal["profile", "legacy_key"]
    actor_id: str  # user ID or "legacy:<hash>"
    actor_email: Optional[str] = None
    actor_display: Optional[str] = None
    auth_mechanism: Literal["jwt", "x_admin_key"] = "jwt"


def get_admin_api_key() -> Optional[str]:
    """Prefer ADMIN_API_KEY env var; fall back to settings.ADMIN_KEY."""
    env_key = os.getenv("ADMIN_API_KEY")
    if env_key:
        return env_key
    return settings.ADMIN_KEY


def verify_legacy_key(request: Request) -> Optional[AdminActor]:
    """
    Verify legacy X-Admin-Key header.
    Returns AdminActor if valid, None if not present/invalid.
    """
    expected_key = get_admin_api_key()
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(
        actor_type="legacy_key",
        actor_id=f"legacy:{key_hash}",
        actor_display="Legacy Admin Key",
        auth_mechanism="x_admin_key"
    )


def verify_admin_profile(request: Request) -> Optional[AdminActor]:
    """
    Verify the Bearer JWT and check the subject's profile for is_admin.
    Returns AdminActor if valid, None if not present/invalid.
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None

    token = auth_header[7:].strip()
    if not token:
        return None

    try:
        claims = decode_auth_token(token)
    except HTTPException:
        return None
    if not claims:
        return None

    with get_db_session() as session:
        row = session.execute(
            select(users.c.is_admin, users.c.email, users.c.display_name).where(
                users.c.user_id == claims["sub"]
            )
        ).first()

    if not row or not row.is_admin:
        return None

    return AdminActor(
        actor_type="profile",
        actor_id=claims["sub"],
        actor_email=row.email or claims.get("email"),
        actor_display=row.display_name or row.email,
        auth_mechanism="jwt",
    )


def get_admin_actor(request: Request) -> Optional[AdminActor]:
    """
    Attempt to authenticate admin from request.
    Returns AdminActor or None (does not raise).
    """
    mode = settings.ADMIN_AUTH_MODE.lower()
    env = settings.ENVIRONMENT.lower()

    if mode in {"profile", "hybrid"}:
        actor = verify_admin_profile(request)
        if actor:
            return actor

    if mode in {"legacy", "hybrid"}:
        # In production, block legacy unless explicitly selected
        if env == "prod" and mode != "legacy":
            return None
        return verify_legacy_key(request)

    return None


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: Require admin authentication.

    Usage:
        @router.post("/admin/endpoint")
        def admin_endpoint(actor: AdminActor = Depends(require_admin)):
            ...
    """
    actor = get_admin_actor(request)

    if not actor:
        mode = settings.ADMIN_AUTH_MODE.lower()
        has_profile = bool(settings.AUTH_JWT_SECRET)
        has_legacy = bool(get_admin_api_key())

        if not has_profile and not has_legacy:
            raise HTTPException(
                status_code=503,
                detail={
                    "message": "Admin authentication not configured",
                    "code": "admin_auth_unconfigured",
                    "hint": "Set ADMIN_KEY (legacy) or AUTH_JWT_SECRET (recommended)"
                }
            )

        raise HTTPException(
            status_code=401,
            detail={
                "message": "Unauthorized: invalid or missing admin credentials",
                "code": "admin_unauthorized",
                "hint": f"Mode: {mode}. Use an admin Bearer token or X-Admin-Key header."
            }
        )

    request.state.user_id = actor.actor_id
    return actor
