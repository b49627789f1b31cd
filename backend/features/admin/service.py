"""
Admin reconciliation operations.

Grants and plan changes go through the same balance store and plan-change
core as the user-facing flows; the only difference is that no payment or
transaction is involved. Every operation writes an audit entry in the same
transaction as the change it records.
"""
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select

from backend.core.admin_auth import AdminActor
from backend.core.clock import resolve_now
from backend.core.config import settings
from backend.core.database import get_db_session, subscriptions, tracked_sites
from backend.core.errors import ValidationError
from backend.core.logging import log_event
from backend.features.audit.service import create_audit_log
from backend.features.overrides import balance as balance_store
from backend.features.plans.service import get_plan_benefits
from backend.features.sites.service import (
    hard_delete_site,
    set_site_active,
    site_to_dict,
    update_site_settings,
)
from backend.features.stats.service import detect_drift, get_admin_stats, recalculate_all_stats
from backend.features.subscriptions.service import apply_plan_change, subscription_to_dict
from backend.features.transactions.ledger import list_transactions
from backend.features.users.service import get_profile_row, log_activity, profile_to_dict


def _require_reason(reason: Optional[str]) -> str:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A reason is required for admin actions", code="reason_required")
    return reason[:200]


def admin_grant_overrides(
    actor: AdminActor,
    user_id: str,
    quantity: int,
    reason: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Grant override credits without payment; audited and shown in the user's feed."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or not 1 <= quantity <= settings.MAX_ADMIN_GRANT:
        raise ValidationError(
            f"quantity must be an integer between 1 and {settings.MAX_ADMIN_GRANT}",
            code="invalid_quantity",
        )
    reason = _require_reason(reason)
    current = resolve_now(now)

    with get_db_session() as session:
        get_profile_row(session, user_id)
        new_balance = balance_store.grant(session, user_id, quantity, reason=f"admin: {reason}", now=current)
        create_audit_log(
            session,
            actor,
            "grant_overrides",
            target_user_id=user_id,
            payload={"quantity": quantity, "reason": reason, "new_balance": new_balance},
        )
        log_activity(
            session,
            user_id,
            "admin_grant",
            f"You received {quantity} override(s) from support.",
            {"quantity": quantity, "reason": reason},
        )

    log_event("info", "admin.grant_overrides", request_id=None, user_id=user_id,
              extra={"actor": actor.actor_id, "quantity": quantity})
    return {"userId": user_id, "overridesAdded": quantity, "newBalance": new_balance}


def admin_change_plan(
    actor: AdminActor,
    user_id: str,
    new_plan: str,
    reason: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Change a user's plan with the same effects as checkout, minus the charge."""
    get_plan_benefits(new_plan)
    reason = _require_reason(reason)

    with get_db_session() as session:
        result = apply_plan_change(session, user_id, new_plan, payment=None, source="admin", now=now)
        create_audit_log(
            session,
            actor,
            "change_plan",
            target_user_id=user_id,
            payload={
                "previous_plan": result["previousPlan"],
                "new_plan": new_plan,
                "reason": reason,
                "sites_deleted": result["sitesDeleted"],
                "overrides_granted": result["overridesGranted"],
            },
        )
        log_activity(
            session,
            user_id,
            "plan_changed",
            f"Your plan was changed to {get_plan_benefits(new_plan).name} by support.",
            {"previousPlan": result["previousPlan"], "newPlan": new_plan},
        )
    return result


def admin_soft_delete_site(actor: AdminActor, site_id: str, reason: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    reason = _require_reason(reason)
    with get_db_session() as session:
        site = set_site_active(session, site_id, False, resolve_now(now))
        create_audit_log(
            session,
            actor,
            "soft_delete_site",
            target_user_id=site["userId"],
            target_resource=site_id,
            payload={"reason": reason},
        )
    return site


def admin_hard_delete_site(actor: AdminActor, site_id: str, reason: str) -> Dict[str, Any]:
    """Permanently delete a site; the audit entry keeps a copy of its data."""
    reason = _require_reason(reason)
    with get_db_session() as session:
        snapshot = hard_delete_site(session, site_id)
        create_audit_log(
            session,
            actor,
            "hard_delete_site",
            target_user_id=snapshot["userId"],
            target_resource=site_id,
            payload={"reason": reason, "site_data": snapshot},
        )
    return {"siteId": site_id, "deleted": True}


def admin_update_site(
    actor: AdminActor,
    site_id: str,
    *,
    reason: str,
    time_limit: Optional[int] = None,
    name: Optional[str] = None,
    is_active: Optional[bool] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    reason = _require_reason(reason)
    if time_limit is None and name is None and is_active is None:
        raise ValidationError("Nothing to update")
    current = resolve_now(now)

    with get_db_session() as session:
        site = None
        if time_limit is not None or name is not None:
            site = update_site_settings(session, site_id, time_limit=time_limit, name=name, now=current)
        if is_active is not None:
            site = set_site_active(session, site_id, is_active, current)
        create_audit_log(
            session,
            actor,
            "update_site",
            target_user_id=site["userId"],
            target_resource=site_id,
            payload={"reason": reason, "time_limit": time_limit, "name": name, "is_active": is_active},
        )
    return site


def admin_get_user_overview(user_id: str) -> Dict[str, Any]:
    """Profile, subscription, balance, sites and recent transactions for support."""
    with get_db_session() as session:
        profile = profile_to_dict(get_profile_row(session, user_id))
        sub = session.execute(select(subscriptions).where(subscriptions.c.user_id == user_id)).first()
        balance = balance_store.get_balance_row(session, user_id)
        sites = session.execute(
            select(tracked_sites).where(tracked_sites.c.user_id == user_id).order_by(tracked_sites.c.id)
        ).fetchall()

    return {
        "profile": profile,
        "subscription": subscription_to_dict(sub) if sub else None,
        "overrides": {
            "balance": balance.overrides if balance else 0,
            "totalPurchased": balance.total_overrides_purchased if balance else 0,
            "usedTotal": balance.overrides_used_total if balance else 0,
        },
        "sites": [site_to_dict(s) for s in sites],
        "transactions": list_transactions(user_id, limit=20),
    }


def admin_get_system_stats() -> Dict[str, Any]:
    drift = detect_drift()
    return {"stats": get_admin_stats(), "drift": drift, "driftDetected": bool(drift)}


def admin_recalculate_stats(actor: AdminActor) -> Dict[str, Any]:
    drift_before = detect_drift()
    stats = recalculate_all_stats()
    with get_db_session() as session:
        create_audit_log(
            session,
            actor,
            "recalculate_stats",
            target_resource="admin_stats",
            payload={"corrected": drift_before},
        )
    return {"stats": stats, "corrected": drift_before}
