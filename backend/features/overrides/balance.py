"""
Override balance store.

One `override_balances` row per user plus `override_monthly_stats` buckets
keyed by YYYY-MM. Every mutation is a single UPDATE relative to the stored
value, and every decrement is conditional (`WHERE overrides > 0`), so two
concurrent requests can never drive a balance negative or lose an update.

All functions take the caller's session; they never commit.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import select, update, func
from sqlalchemy.orm import Session

from backend.core.clock import month_key
from backend.core.database import (
    get_db_session,
    insert_if_absent,
    override_balances,
    override_monthly_stats,
)
from backend.core.errors import InsufficientBalanceError, ValidationError


def _now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_balance(session: Session, user_id: str) -> None:
    now = _now()
    insert_if_absent(
        session,
        override_balances,
        {
            "user_id": user_id,
            "overrides": 0,
            "total_overrides_purchased": 0,
            "overrides_used_total": 0,
            "total_spent_cents": 0,
            "created_at": now,
            "updated_at": now,
        },
        ["user_id"],
    )


def ensure_monthly_row(session: Session, user_id: str, month: str, free_limit: Optional[int] = None) -> None:
    insert_if_absent(
        session,
        override_monthly_stats,
        {
            "user_id": user_id,
            "month": month,
            "overrides_used": 0,
            "free_overrides_used": 0,
            "purchased_overrides_used": 0,
            "paid_overrides_used": 0,
            "total_spent_cents": 0,
            "free_limit": free_limit,
            "updated_at": _now(),
        },
        ["user_id", "month"],
    )


def get_balance_row(session: Session, user_id: str):
    return session.execute(
        select(override_balances).where(override_balances.c.user_id == user_id)
    ).first()


def get_or_create_balance(session: Session, user_id: str):
    ensure_balance(session, user_id)
    return get_balance_row(session, user_id)


def get_monthly_row(session: Session, user_id: str, month: str):
    return session.execute(
        select(override_monthly_stats).where(
            override_monthly_stats.c.user_id == user_id,
            override_monthly_stats.c.month == month,
        )
    ).first()


def current_balance(session: Session, user_id: str) -> int:
    row = get_balance_row(session, user_id)
    return int(row.overrides) if row else 0


def free_overrides_remaining(session: Session, user_id: str, month: str, default_limit: int) -> int:
    row = get_monthly_row(session, user_id, month)
    limit = default_limit
    used = 0
    if row:
        used = row.free_overrides_used
        if row.free_limit is not None:
            limit = row.free_limit
    return max(0, limit - used)


def _bump_usage(session: Session, user_id: str, month: str, column: Optional[str] = None, amount_cents: int = 0) -> None:
    now = _now()
    ensure_balance(session, user_id)
    session.execute(
        update(override_balances)
        .where(override_balances.c.user_id == user_id)
        .values(
            overrides_used_total=override_balances.c.overrides_used_total + 1,
            total_spent_cents=override_balances.c.total_spent_cents + amount_cents,
            updated_at=now,
        )
    )
    ensure_monthly_row(session, user_id, month)
    values: Dict[str, Any] = {
        "overrides_used": override_monthly_stats.c.overrides_used + 1,
        "total_spent_cents": override_monthly_stats.c.total_spent_cents + amount_cents,
        "updated_at": now,
    }
    if column:
        values[column] = override_monthly_stats.c[column] + 1
    session.execute(
        update(override_monthly_stats)
        .where(
            override_monthly_stats.c.user_id == user_id,
            override_monthly_stats.c.month == month,
        )
        .values(**values)
    )


def grant(
    session: Session,
    user_id: str,
    quantity: int,
    reason: str,
    now: Optional[datetime] = None,
) -> int:
    """
    Add credits to the balance and lifetime grant total.

    Returns:
        The balance after the grant.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("quantity must be a positive integer")

    ensure_balance(session, user_id)
    session.execute(
        update(override_balances)
        .where(override_balances.c.user_id == user_id)
        .values(
            overrides=override_balances.c.overrides + quantity,
            total_overrides_purchased=override_balances.c.total_overrides_purchased + quantity,
            last_grant_quantity=quantity,
            last_grant_reason=reason[:200],
            last_grant_at=now or _now(),
            updated_at=_now(),
        )
    )
    return current_balance(session, user_id)


def consume_free(session: Session, user_id: str, month: str, default_limit: int) -> None:
    """
    Use one free monthly override.

    Raises:
        InsufficientBalanceError: the month's free allowance is used up
    """
    ensure_monthly_row(session, user_id, month, free_limit=default_limit)
    result = session.execute(
        update(override_monthly_stats)
        .where(
            override_monthly_stats.c.user_id == user_id,
            override_monthly_stats.c.month == month,
            override_monthly_stats.c.free_overrides_used
            < func.coalesce(override_monthly_stats.c.free_limit, default_limit),
        )
        .values(free_overrides_used=override_monthly_stats.c.free_overrides_used + 1)
    )
    if result.rowcount != 1:
        raise InsufficientBalanceError(
            "Your free overrides for this month are used up.",
            code="free_overrides_exhausted",
        )
    _bump_usage(session, user_id, month)


def consume_purchased(session: Session, user_id: str, month: str) -> int:
    """
    Use one purchased credit.

    Returns:
        The balance after the debit.

    Raises:
        InsufficientBalanceError: no credit left at write time (balance unchanged)
    """
    result = session.execute(
        update(override_balances)
        .where(
            override_balances.c.user_id == user_id,
            override_balances.c.overrides > 0,
        )
        .values(overrides=override_balances.c.overrides - 1, updated_at=_now())
    )
    if result.rowcount != 1:
        raise InsufficientBalanceError(
            "You have no override credits left.",
            code="insufficient_balance",
        )
    _bump_usage(session, user_id, month, column="purchased_overrides_used")
    return current_balance(session, user_id)


def consume_elite(session: Session, user_id: str, month: str) -> int:
    """Elite overrides are always allowed; the balance is debited while it is above zero."""
    ensure_balance(session, user_id)
    session.execute(
        update(override_balances)
        .where(
            override_balances.c.user_id == user_id,
            override_balances.c.overrides > 0,
        )
        .values(overrides=override_balances.c.overrides - 1, updated_at=_now())
    )
    _bump_usage(session, user_id, month)
    return current_balance(session, user_id)


def record_paid_use(session: Session, user_id: str, month: str, amount_cents: int) -> None:
    _bump_usage(session, user_id, month, column="paid_overrides_used", amount_cents=amount_cents)


def record_override_spend(session: Session, user_id: str, month: str, amount_cents: int) -> None:
    """Money spent on credit packs (no usage)."""
    ensure_balance(session, user_id)
    session.execute(
        update(override_balances)
        .where(override_balances.c.user_id == user_id)
        .values(
            total_spent_cents=override_balances.c.total_spent_cents + amount_cents,
            updated_at=_now(),
        )
    )
    ensure_monthly_row(session, user_id, month)
    session.execute(
        update(override_monthly_stats)
        .where(
            override_monthly_stats.c.user_id == user_id,
            override_monthly_stats.c.month == month,
        )
        .values(total_spent_cents=override_monthly_stats.c.total_spent_cents + amount_cents)
    )


def set_monthly_free_limit(session: Session, user_id: str, month: str, limit: int) -> None:
    ensure_monthly_row(session, user_id, month, free_limit=limit)
    session.execute(
        update(override_monthly_stats)
        .where(
            override_monthly_stats.c.user_id == user_id,
            override_monthly_stats.c.month == month,
        )
        .values(free_limit=limit, updated_at=_now())
    )


def reset_for_downgrade(session: Session, user_id: str, month: str, reason: str) -> None:
    """Zero the credit balance and this month's free allowance."""
    ensure_balance(session, user_id)
    session.execute(
        update(override_balances)
        .where(override_balances.c.user_id == user_id)
        .values(overrides=0, last_reset_reason=reason[:200], updated_at=_now())
    )
    set_monthly_free_limit(session, user_id, month, 0)


def get_balance_summary(user_id: str, plan: str, default_free_limit: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    month = month_key(now)
    with get_db_session() as session:
        row = get_balance_row(session, user_id)
        monthly = get_monthly_row(session, user_id, month)
        free_remaining = free_overrides_remaining(session, user_id, month, default_free_limit)

    return {
        "overrides": row.overrides if row else 0,
        "unlimited": plan == "elite",
        "totalOverridesPurchased": row.total_overrides_purchased if row else 0,
        "overridesUsedTotal": row.overrides_used_total if row else 0,
        "totalSpent": (row.total_spent_cents if row else 0) / 100,
        "lastGrant": {
            "quantity": row.last_grant_quantity,
            "reason": row.last_grant_reason,
            "at": row.last_grant_at.isoformat() if row.last_grant_at else None,
        } if row and row.last_grant_quantity else None,
        "month": month,
        "monthlyStats": {
            "overridesUsed": monthly.overrides_used if monthly else 0,
            "freeOverridesUsed": monthly.free_overrides_used if monthly else 0,
            "freeOverridesRemaining": free_remaining,
            "totalSpentThisMonth": (monthly.total_spent_cents if monthly else 0) / 100,
        },
    }
