"""
Auth utilities for the Limitter API.

Validates auth-provider JWTs and extracts user_id from request context.
Unverified email addresses cannot complete login. Falls back to the
X-User-Id header when ALLOW_HEADER_AUTH is on (dev and tests).
"""
from fastapi import Header, HTTPException, Request
from typing import Optional, Dict, Any
import logging

import jwt

from backend.core.config import settings
from backend.core.errors import PermissionError

logger = logging.getLogger("limitter.auth")


def decode_auth_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Verify a JWT issued by the auth provider and return its claims.

    Returns None when no AUTH_JWT_SECRET is configured.

    Raises:
        HTTPException 401: Invalid or expired token
    """
    if not settings.AUTH_JWT_SECRET:
        logger.debug("No AUTH_JWT_SECRET configured, skipping JWT validation")
        return None

    options = {"verify_signature": True, "verify_exp": True, "verify_aud": bool(settings.AUTH_JWT_AUDIENCE)}
    try:
        claims = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.AUTH_JWT_AUDIENCE,
            issuer=settings.AUTH_JWT_ISSUER,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    if not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")
    return claims


def require_verified_email(claims: Dict[str, Any]) -> None:
    """Reject sign-ins whose email address is not verified yet."""
    if settings.REQUIRE_EMAIL_VERIFICATION and not claims.get("email_verified", False):
        raise PermissionError(
            "Please verify your email address before signing in.",
            code="email_not_verified",
        )


def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Dev/test user ID"),
) -> str:
    """
    Extract current user ID from request context.

    Priority:
    1. Bearer JWT from Authorization header
    2. X-User-Id header (when ALLOW_HEADER_AUTH)
    3. Raise 401 Unauthorized

    After successful auth the user profile is created with free-plan
    defaults if it does not exist yet.
    """
    from backend.features.users.service import get_or_create_user

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        claims = decode_auth_token(auth_header[7:].strip())
        if claims:
            require_verified_email(claims)
            user_id = claims["sub"]
            get_or_create_user(user_id, email=claims.get("email"), display_name=claims.get("name"))
            request.state.user_id = user_id
            return user_id

    if x_user_id and settings.ALLOW_HEADER_AUTH:
        get_or_create_user(x_user_id)
        request.state.user_id = x_user_id
        return x_user_id

    raise HTTPException(
        status_code=401,
        detail={
            "code": "unauthorized",
            "message": "Missing Authorization (Bearer JWT) or X-User-Id header"
        }
    )
