"""
Site time ledger.

Per-site daily time budgets for tracked sites:
- add_site / remove_site: create-or-reactivate and soft delete
- record_time_spent: apply elapsed seconds (persists a stale-day reset first)
- get_sites_time_status: read-time view with a virtual reset (never persisted)
- reset_daily_times: batch reset of stale sites

The day boundary is the UTC calendar (see backend.core.clock).
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, insert, update, delete, func, case
from sqlalchemy.orm import Session

from backend.core.clock import resolve_now, today_key, next_midnight
from backend.core.config import settings
from backend.core.database import get_db_session, tracked_sites, users
from backend.core.errors import ConflictError, NotFoundError, QuotaExceededError, ValidationError
from backend.core.logging import log_event
from backend.features.plans.service import get_plan_benefits
from backend.features.sites.domain import normalize_domain, site_key
from backend.features.stats.service import increment_stats
from backend.features.users.service import get_profile_row

logger = logging.getLogger("limitter.sites")


def resolve_site_id(user_id: str, site: str) -> str:
    """Accept either a composite site id or a raw URL/domain."""
    if site.startswith(f"{user_id}_"):
        return site
    return site_key(user_id, site)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def site_to_dict(row) -> Dict[str, Any]:
    return {
        "id": row.id,
        "userId": row.user_id,
        "url": row.url,
        "name": row.name,
        "timeLimit": row.time_limit,
        "timeRemaining": row.time_remaining,
        "timeSpentToday": row.time_spent_today,
        "lastResetDate": row.last_reset_date,
        "isBlocked": bool(row.is_blocked),
        "blockedUntil": _iso(row.blocked_until),
        "isActive": bool(row.is_active),
        "totalTimeSpent": row.total_time_spent,
        "accessCount": row.access_count,
        "dailyUsage": row.daily_usage or {},
        "overrideActive": bool(row.override_active),
        "overrideInitiatedBy": row.override_initiated_by,
        "overrideInitiatedAt": _iso(row.override_initiated_at),
        "lastAccessed": _iso(row.last_accessed),
        "adminModified": bool(row.admin_modified),
    }


def virtual_status(row, today: str) -> Dict[str, Any]:
    """
    Point-in-time status of a site as of `today`.

    A stale last_reset_date is treated as a full quota. The reset is not
    written back; the write path persists it on the next update.
    """
    if row.last_reset_date != today:
        spent = 0
        remaining = row.time_limit
        is_blocked = False
        blocked_until = None
        override_active = False
    else:
        spent = row.time_spent_today
        remaining = row.time_remaining
        is_blocked = bool(row.is_blocked)
        blocked_until = row.blocked_until
        override_active = bool(row.override_active)

    return {
        "siteId": row.id,
        "url": row.url,
        "name": row.name,
        "timeLimit": row.time_limit,
        "timeRemaining": remaining,
        "timeSpentToday": spent,
        "isBlocked": is_blocked,
        "blockedUntil": _iso(blocked_until),
        "overrideActive": override_active,
        "lastResetDate": row.last_reset_date,
    }


def load_site_row(session: Session, user_id: str, site: str, *, for_update: bool = False, active_only: bool = True):
    """Load a tracked site inside the caller's transaction; NotFound if absent."""
    sid = resolve_site_id(user_id, site)
    stmt = select(tracked_sites).where(
        tracked_sites.c.id == sid,
        tracked_sites.c.user_id == user_id,
    )
    if for_update:
        stmt = stmt.with_for_update()
    row = session.execute(stmt).first()
    if not row or (active_only and not row.is_active):
        raise NotFoundError("Site not found", code="site_not_found")
    return row


def _count_active_sites(session: Session, user_id: str) -> int:
    return session.execute(
        select(func.count()).select_from(tracked_sites).where(
            tracked_sites.c.user_id == user_id,
            tracked_sites.c.is_active.is_(True),
        )
    ).scalar() or 0


def _adjust_site_counters(session: Session, user_id: str, delta: int) -> None:
    if not delta:
        return
    session.execute(
        update(users)
        .where(users.c.user_id == user_id)
        .values(total_sites_blocked=case(
            (users.c.total_sites_blocked + delta < 0, 0),
            else_=users.c.total_sites_blocked + delta,
        ))
    )
    increment_stats(session, {"sites.total": delta})


def add_site(
    user_id: str,
    url: str,
    name: Optional[str] = None,
    time_limit: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Start tracking a site, or reactivate a previously removed one.

    Reactivation keeps the stored time limit and counters.
    """
    domain = normalize_domain(url)
    if not domain:
        raise ValidationError("A website URL is required", code="invalid_url")
    limit = settings.DEFAULT_TIME_LIMIT_SECONDS if time_limit is None else int(time_limit)
    if limit <= 0:
        raise ValidationError("time_limit must be a positive number of seconds")

    current = resolve_now(now)
    today = today_key(current)
    sid = site_key(user_id, domain)

    with get_db_session() as session:
        profile = get_profile_row(session, user_id)
        existing = session.execute(
            select(tracked_sites).where(tracked_sites.c.id == sid).with_for_update()
        ).first()

        if existing and existing.is_active:
            raise ConflictError("This website is already being tracked.", code="site_already_tracked")

        benefits = get_plan_benefits(profile.plan)
        if benefits.site_limit != -1 and _count_active_sites(session, user_id) >= benefits.site_limit:
            raise QuotaExceededError(
                f"The {benefits.name} plan can track up to {benefits.site_limit} websites. Upgrade to track more.",
                code="site_limit_reached",
            )

        if existing:
            values: Dict[str, Any] = {"is_active": True, "updated_at": current}
            if name:
                values["name"] = name.strip()
            if existing.last_reset_date != today:
                values.update(
                    time_spent_today=0,
                    time_remaining=existing.time_limit,
                    last_reset_date=today,
                    is_blocked=False,
                    blocked_until=None,
                    override_active=False,
                    override_initiated_by=None,
                    override_initiated_at=None,
                )
            session.execute(update(tracked_sites).where(tracked_sites.c.id == sid).values(**values))
            message = "Website already added in the past. Reactivated with preserved settings."
            reactivated = True
        else:
            session.execute(
                insert(tracked_sites).values(
                    id=sid,
                    user_id=user_id,
                    url=domain,
                    name=(name or domain).strip(),
                    time_limit=limit,
                    time_remaining=limit,
                    time_spent_today=0,
                    last_reset_date=today,
                    is_blocked=False,
                    blocked_until=None,
                    is_active=True,
                    total_time_spent=0,
                    access_count=0,
                    daily_usage={},
                    override_active=False,
                    admin_modified=False,
                    created_at=current,
                    updated_at=current,
                )
            )
            message = "Website added successfully."
            reactivated = False

        _adjust_site_counters(session, user_id, 1)
        row = load_site_row(session, user_id, sid)
        site = site_to_dict(row)

    log_event("info", "site.added", request_id=None, user_id=user_id, site_id=sid,
              extra={"reactivated": reactivated})
    return {"site": site, "reactivated": reactivated, "message": message}


def remove_site(user_id: str, site: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Soft delete: the record and its counters survive for reactivation."""
    current = resolve_now(now)
    with get_db_session() as session:
        row = load_site_row(session, user_id, site, for_update=True)
        session.execute(
            update(tracked_sites)
            .where(tracked_sites.c.id == row.id)
            .values(is_active=False, updated_at=current)
        )
        _adjust_site_counters(session, user_id, -1)

    log_event("info", "site.removed", request_id=None, user_id=user_id, site_id=row.id)
    return {"siteId": row.id, "removed": True}


def list_sites(user_id: str, include_inactive: bool = False) -> List[Dict[str, Any]]:
    stmt = select(tracked_sites).where(tracked_sites.c.user_id == user_id)
    if not include_inactive:
        stmt = stmt.where(tracked_sites.c.is_active.is_(True))
    with get_db_session() as session:
        rows = session.execute(stmt.order_by(tracked_sites.c.created_at, tracked_sites.c.id)).fetchall()
    return [site_to_dict(r) for r in rows]


def record_time_spent(
    user_id: str,
    site: str,
    seconds_elapsed: int,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Add elapsed seconds to a site's daily ledger.

    If the stored day is stale, usage and remaining time are reset to a full
    budget before the delta is applied. The row is locked for the duration
    of the read-modify-write.
    """
    if isinstance(seconds_elapsed, bool) or not isinstance(seconds_elapsed, int) or seconds_elapsed < 0:
        raise ValidationError("seconds_elapsed must be a non-negative integer")

    current = resolve_now(now)
    today = today_key(current)

    with get_db_session() as session:
        row = load_site_row(session, user_id, site, for_update=True)

        spent = row.time_spent_today
        was_blocked = bool(row.is_blocked)
        blocked_until = row.blocked_until
        values: Dict[str, Any] = {}
        override_active = bool(row.override_active)

        if row.last_reset_date != today:
            spent = 0
            was_blocked = False
            blocked_until = None
            override_active = False
            values.update(
                last_reset_date=today,
                override_active=False,
                override_initiated_by=None,
                override_initiated_at=None,
            )

        spent += seconds_elapsed
        remaining = max(0, row.time_limit - spent)
        is_blocked = remaining <= 0 and not override_active
        if is_blocked and not was_blocked:
            blocked_until = next_midnight(current)
        elif not is_blocked:
            blocked_until = None

        usage = dict(row.daily_usage or {})
        usage[today] = int(usage.get(today, 0)) + seconds_elapsed

        values.update(
            time_spent_today=spent,
            time_remaining=remaining,
            is_blocked=is_blocked,
            blocked_until=blocked_until,
            daily_usage=usage,
            access_count=tracked_sites.c.access_count + 1,
            total_time_spent=tracked_sites.c.total_time_spent + seconds_elapsed,
            last_accessed=current,
            updated_at=current,
        )
        session.execute(update(tracked_sites).where(tracked_sites.c.id == row.id).values(**values))

    if is_blocked and not was_blocked:
        log_event("info", "site.blocked", request_id=None, user_id=user_id, site_id=row.id)

    return {
        "siteId": row.id,
        "timeRemaining": remaining,
        "timeSpentToday": spent,
        "isBlocked": is_blocked,
        "blockedUntil": _iso(blocked_until),
    }


def get_sites_time_status(user_id: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Status of every active site; read-only."""
    today = today_key(now)
    with get_db_session() as session:
        rows = session.execute(
            select(tracked_sites)
            .where(tracked_sites.c.user_id == user_id, tracked_sites.c.is_active.is_(True))
            .order_by(tracked_sites.c.created_at, tracked_sites.c.id)
        ).fetchall()
    return [virtual_status(r, today) for r in rows]


def reset_daily_times(user_id: str, now: Optional[datetime] = None) -> int:
    """Restore the full budget of every site whose day is stale; returns the count."""
    current = resolve_now(now)
    today = today_key(current)
    with get_db_session() as session:
        result = session.execute(
            update(tracked_sites)
            .where(
                tracked_sites.c.user_id == user_id,
                tracked_sites.c.last_reset_date != today,
            )
            .values(
                time_spent_today=0,
                time_remaining=tracked_sites.c.time_limit,
                last_reset_date=today,
                is_blocked=False,
                blocked_until=None,
                override_active=False,
                override_initiated_by=None,
                override_initiated_at=None,
                updated_at=current,
            )
        )
        count = result.rowcount or 0

    if count:
        log_event("info", "sites.daily_reset", request_id=None, user_id=user_id, extra={"count": count})
    return count


def mark_override_granted(session: Session, site_id: str, initiated_by: str, now: datetime) -> None:
    """Unblock a site for the rest of the day after an override is granted."""
    session.execute(
        update(tracked_sites)
        .where(tracked_sites.c.id == site_id)
        .values(
            override_active=True,
            override_initiated_by=initiated_by,
            override_initiated_at=now,
            is_blocked=False,
            blocked_until=None,
            updated_at=now,
        )
    )


def delete_all_user_sites(session: Session, user_id: str) -> Tuple[int, int]:
    """
    Hard delete every site of a user (active or not).

    Returns:
        (deleted, active_deleted)
    """
    active = _count_active_sites(session, user_id)
    result = session.execute(delete(tracked_sites).where(tracked_sites.c.user_id == user_id))
    deleted = result.rowcount or 0
    if active:
        _adjust_site_counters(session, user_id, -active)
    return deleted, active


def set_site_active(session: Session, site_id: str, active: bool, now: datetime) -> Dict[str, Any]:
    """Toggle is_active on any user's site, keeping counters in step."""
    row = session.execute(
        select(tracked_sites).where(tracked_sites.c.id == site_id).with_for_update()
    ).first()
    if not row:
        raise NotFoundError("Site not found", code="site_not_found")
    if bool(row.is_active) != active:
        session.execute(
            update(tracked_sites)
            .where(tracked_sites.c.id == site_id)
            .values(is_active=active, admin_modified=True, updated_at=now)
        )
        _adjust_site_counters(session, row.user_id, 1 if active else -1)
    return site_to_dict(session.execute(select(tracked_sites).where(tracked_sites.c.id == site_id)).first())


def hard_delete_site(session: Session, site_id: str) -> Dict[str, Any]:
    """Delete one site row and return its last state."""
    row = session.execute(
        select(tracked_sites).where(tracked_sites.c.id == site_id).with_for_update()
    ).first()
    if not row:
        raise NotFoundError("Site not found", code="site_not_found")
    snapshot = site_to_dict(row)
    session.execute(delete(tracked_sites).where(tracked_sites.c.id == site_id))
    if row.is_active:
        _adjust_site_counters(session, row.user_id, -1)
    return snapshot


def update_site_settings(
    session: Session,
    site_id: str,
    *,
    time_limit: Optional[int] = None,
    name: Optional[str] = None,
    now: datetime,
) -> Dict[str, Any]:
    """Admin edit of a site's limit or name; remaining time follows the new limit."""
    row = session.execute(
        select(tracked_sites).where(tracked_sites.c.id == site_id).with_for_update()
    ).first()
    if not row:
        raise NotFoundError("Site not found", code="site_not_found")

    values: Dict[str, Any] = {"admin_modified": True, "updated_at": now}
    if name is not None:
        if not name.strip():
            raise ValidationError("name must not be empty")
        values["name"] = name.strip()
    if time_limit is not None:
        if time_limit <= 0:
            raise ValidationError("time_limit must be a positive number of seconds")
        remaining = max(0, time_limit - row.time_spent_today)
        values.update(
            time_limit=time_limit,
            time_remaining=remaining,
            is_blocked=remaining <= 0 and not row.override_active,
        )
        if remaining > 0:
            values["blocked_until"] = None
        elif not row.is_blocked:
            values["blocked_until"] = next_midnight(now)
    session.execute(update(tracked_sites).where(tracked_sites.c.id == site_id).values(**values))
    return site_to_dict(session.execute(select(tracked_sites).where(tracked_sites.c.id == site_id)).first())
