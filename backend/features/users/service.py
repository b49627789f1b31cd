"""
User domain service.
- get_or_create_user(user_id): signup with free-plan defaults
- get_profile_row(session, user_id)
- update_profile(user_id, display_name)
- log_activity / list_activities: user-visible activity feed
"""

import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.core.database import (
    get_db_session,
    users,
    subscriptions,
    user_activities,
)
from backend.core.errors import NotFoundError, ValidationError
from backend.features.stats.service import increment_stats

logger = logging.getLogger("limitter.users")


def normalize_display_name(user_id: str, display_name: Optional[str]) -> str:
    if display_name and display_name.strip():
        return display_name.strip()[:200]
    # Deterministic fallback handle
    h = hashlib.sha1(user_id.encode("utf-8")).hexdigest()
    return f"@u_{h[-6:]}"


def profile_to_dict(row) -> Dict[str, Any]:
    return {
        "id": row.user_id,
        "email": row.email,
        "displayName": row.display_name,
        "plan": row.plan,
        "isAdmin": bool(row.is_admin),
        "totalSpent": row.total_spent_cents / 100,
        "totalTimeSaved": row.total_time_saved,
        "totalSitesBlocked": row.total_sites_blocked,
        "subscriptionStatus": row.subscription_status,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
        "updatedAt": row.updated_at.isoformat() if row.updated_at else None,
    }


def get_profile_row(session: Session, user_id: str, *, for_update: bool = False):
    """Load a user profile row inside the caller's transaction."""
    stmt = select(users).where(users.c.user_id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = session.execute(stmt).first()
    if not row:
        raise NotFoundError(f"User {user_id} not found", code="user_not_found")
    return row


def get_user_profile(user_id: str) -> Dict[str, Any]:
    with get_db_session() as session:
        return profile_to_dict(get_profile_row(session, user_id))


def get_or_create_user(
    user_id: str,
    email: Optional[str] = None,
    display_name: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Return the profile for user_id, creating it with free-plan defaults.

    Creation also writes the matching `free` subscription row and bumps the
    user counters, all in one transaction. A concurrent signup for the same
    user loses the insert race and re-reads the winner's row.
    """
    with get_db_session() as session:
        row = session.execute(select(users).where(users.c.user_id == user_id)).first()
    if row:
        return profile_to_dict(row)

    now = datetime.now(timezone.utc)
    try:
        with get_db_session() as session:
            session.execute(
                insert(users).values(
                    user_id=user_id,
                    email=email,
                    display_name=normalize_display_name(user_id, display_name),
                    plan="free",
                    is_admin=False,
                    total_spent_cents=0,
                    total_time_saved=0,
                    total_sites_blocked=0,
                    subscription_status="active",
                    created_at=now,
                    updated_at=now,
                )
            )
            session.execute(
                insert(subscriptions).values(
                    user_id=user_id,
                    plan="free",
                    status="active",
                    started_at=now,
                    expires_at=None,
                    updated_at=now,
                )
            )
            increment_stats(session, {"users.total": 1, "users.plan.free": 1})
            log_activity(session, user_id, "signup", "Welcome to Limitter!")
    except IntegrityError:
        logger.info("user.create_race", extra={"user_id": user_id})

    logger.info("user.created", extra={"user_id": user_id})
    return get_user_profile(user_id)


def update_profile(user_id: str, display_name: Optional[str]) -> Dict[str, Any]:
    if display_name is not None and not display_name.strip():
        raise ValidationError("display_name must not be empty")

    with get_db_session() as session:
        get_profile_row(session, user_id)
        if display_name is not None:
            session.execute(
                update(users)
                .where(users.c.user_id == user_id)
                .values(
                    display_name=normalize_display_name(user_id, display_name),
                    updated_at=datetime.now(timezone.utc),
                )
            )
    return get_user_profile(user_id)


def log_activity(
    session: Session,
    user_id: str,
    activity_type: str,
    message: str,
    payload: Optional[Dict[str, Any]] = None,
) -> None:
    """Append an entry to the user's activity feed (inside the caller's transaction)."""
    session.execute(
        insert(user_activities).values(
            user_id=user_id,
            activity_type=activity_type,
            message=message[:500],
            payload_json=payload,
            created_at=datetime.now(timezone.utc),
        )
    )


def list_activities(user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
    limit = max(1, min(int(limit), 100))
    with get_db_session() as session:
        rows = session.execute(
            select(user_activities)
            .where(user_activities.c.user_id == user_id)
            .order_by(user_activities.c.created_at.desc(), user_activities.c.id.desc())
            .limit(limit)
        ).fetchall()
    return [
        {
            "id": row.id,
            "type": row.activity_type,
            "message": row.message,
            "payload": row.payload_json,
            "createdAt": row.created_at.isoformat() if row.created_at else None,
        }
        for row in rows
    ]
