"""
Subscription changes.

`apply_plan_change` is the single implementation of a plan transition, used
by self-service upgrades (with payment), billing cancellations and admin
changes (without payment). It runs entirely on the caller's session:

1. resolve the transition (pure)
2. delete all tracked sites when the tier changes
3. reset and/or grant override credits, set this month's free allowance
4. update users.plan and the subscriptions row together
5. move the per-plan user counters
6. record the plan_purchase transaction last, only when paid
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import select, update

from backend.core.clock import resolve_now, month_key
from backend.core.database import get_db_session, insert_if_absent, subscriptions, users
from backend.core.errors import PaymentRequiredError, ValidationError
from backend.core.logging import log_event
from backend.features.overrides import balance as balance_store
from backend.features.plans.service import (
    PAID_PLANS,
    get_plan_benefits,
    get_price_cents,
    resolve_transition,
)
from backend.features.sites.service import delete_all_user_sites
from backend.features.stats.service import increment_stats
from backend.features.transactions.ledger import create_transaction
from backend.features.users.service import get_profile_row, log_activity
from backend.models.payment import PaymentData

SUBSCRIPTION_PERIOD = timedelta(days=30)


def subscription_to_dict(row) -> Dict[str, Any]:
    return {
        "userId": row.user_id,
        "plan": row.plan,
        "status": row.status,
        "startedAt": row.started_at.isoformat() if row.started_at else None,
        "expiresAt": row.expires_at.isoformat() if row.expires_at else None,
    }


def apply_plan_change(
    session,
    user_id: str,
    new_plan: str,
    *,
    payment: Optional[PaymentData] = None,
    source: str = "user",
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Apply every effect of moving user_id to new_plan on the given session."""
    get_plan_benefits(new_plan)
    current = resolve_now(now)
    month = month_key(current)

    profile = get_profile_row(session, user_id, for_update=True)
    previous = profile.plan
    transition = resolve_transition(previous, new_plan)

    sites_deleted = 0
    if transition.delete_sites:
        sites_deleted, _ = delete_all_user_sites(session, user_id)

    if transition.reset_balance:
        balance_store.reset_for_downgrade(session, user_id, month, reason=f"plan change {previous} -> {new_plan}")
    new_balance = None
    if transition.override_grant:
        new_balance = balance_store.grant(
            session, user_id, transition.override_grant, reason=f"plan:{new_plan}", now=current
        )
    balance_store.set_monthly_free_limit(
        session, user_id, month, get_plan_benefits(new_plan).free_monthly_overrides
    )

    session.execute(
        update(users)
        .where(users.c.user_id == user_id)
        .values(plan=new_plan, subscription_status="active", updated_at=current)
    )
    sub_values = {
        "plan": new_plan,
        "status": "active",
        "started_at": current,
        "expires_at": current + SUBSCRIPTION_PERIOD if new_plan in PAID_PLANS else None,
        "stripe_session_id": payment.reference if payment else None,
        "updated_at": current,
    }
    if not insert_if_absent(session, subscriptions, {"user_id": user_id, **sub_values}, ["user_id"]):
        session.execute(update(subscriptions).where(subscriptions.c.user_id == user_id).values(**sub_values))

    if transition.changed:
        increment_stats(session, {f"users.plan.{previous}": -1, f"users.plan.{new_plan}": 1})

    txn = None
    if payment is not None:
        txn = create_transaction(
            session,
            user_id,
            "plan_purchase",
            get_price_cents(new_plan),
            payment=payment,
            description=f"{get_plan_benefits(new_plan).name} plan subscription",
            metadata={"previousPlan": previous, "newPlan": new_plan, "source": source},
            now=current,
        )

    log_event(
        "info",
        "plan.changed",
        request_id=None,
        user_id=user_id,
        event_type=f"plan.{source}",
        extra={
            "previous_plan": previous,
            "new_plan": new_plan,
            "sites_deleted": sites_deleted,
            "override_grant": transition.override_grant,
        },
    )
    return {
        "plan": new_plan,
        "previousPlan": previous,
        "overridesGranted": transition.override_grant,
        "balanceReset": transition.reset_balance,
        "newBalance": new_balance,
        "sitesDeleted": sites_deleted,
        "transaction": txn,
    }


def update_subscription(
    user_id: str,
    new_plan: str,
    payment: Optional[PaymentData],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Self-service upgrade or renewal to a paid plan after confirmed payment.

    Raises:
        ValidationError: plan is not pro/elite
        PaymentRequiredError: no payment data
    """
    if new_plan not in PAID_PLANS:
        raise ValidationError("Plan must be one of: pro, elite", code="invalid_plan")
    if payment is None:
        raise PaymentRequiredError("Payment details are required to change plan.")

    with get_db_session() as session:
        result = apply_plan_change(session, user_id, new_plan, payment=payment, source="checkout", now=now)
        log_activity(
            session,
            user_id,
            "plan_changed",
            f"Subscribed to the {get_plan_benefits(new_plan).name} plan",
            {"previousPlan": result["previousPlan"], "newPlan": new_plan},
        )
    return result


def cancel_subscription(user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Return a user to the free plan when the processor ends their subscription."""
    with get_db_session() as session:
        result = apply_plan_change(session, user_id, "free", source="billing", now=now)
        session.execute(
            update(subscriptions)
            .where(subscriptions.c.user_id == user_id)
            .values(status="canceled")
        )
        session.execute(
            update(users)
            .where(users.c.user_id == user_id)
            .values(subscription_status="canceled")
        )
        result["status"] = "canceled"
        log_activity(session, user_id, "plan_changed", "Your subscription ended; you are on the Free plan.")
    return result


def get_subscription(user_id: str) -> Dict[str, Any]:
    with get_db_session() as session:
        get_profile_row(session, user_id)
        row = session.execute(select(subscriptions).where(subscriptions.c.user_id == user_id)).first()
    if not row:
        return {"userId": user_id, "plan": "free", "status": "active", "startedAt": None, "expiresAt": None}
    return subscription_to_dict(row)
