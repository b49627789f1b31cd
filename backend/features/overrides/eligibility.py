"""
Override eligibility engine.

Classifies an override request as free, purchased-credit or paid, always
spending the cheapest resource first:

1. site not blocked        -> cannot override
2. elite plan              -> free
3. pro with monthly quota  -> free (monthly allowance)
4. purchased credits       -> one credit
5. otherwise               -> pay the flat override price

The result is advisory. The consuming operation re-validates inside its own
transaction.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from backend.core.clock import today_key, month_key
from backend.core.database import get_db_session
from backend.features.overrides import balance as balance_store
from backend.features.plans.service import get_plan_benefits, override_price_cents
from backend.features.sites.service import load_site_row, virtual_status
from backend.features.users.service import get_profile_row
from backend.models.override import OverrideEligibility


def evaluate_eligibility(session: Session, profile, site_row, now: Optional[datetime] = None) -> OverrideEligibility:
    """Classify against rows already loaded in the caller's transaction."""
    plan = profile.plan
    benefits = get_plan_benefits(plan)
    month = month_key(now)
    available = balance_store.current_balance(session, profile.user_id)
    free_remaining = None
    if benefits.free_monthly_overrides:
        free_remaining = balance_store.free_overrides_remaining(
            session, profile.user_id, month, benefits.free_monthly_overrides
        )

    common = {
        "available_overrides": available,
        "free_overrides_remaining": free_remaining,
        "user_plan": plan,
    }

    status = virtual_status(site_row, today_key(now))
    if not status["isBlocked"]:
        return OverrideEligibility(can_override=False, reason="Site is not blocked.", **common)

    if plan == "elite":
        return OverrideEligibility(
            can_override=True,
            reason="Elite plan: unlimited overrides.",
            **common,
        )

    if plan == "pro" and free_remaining:
        return OverrideEligibility(
            can_override=True,
            reason=f"Pro plan: {free_remaining} free override(s) left this month.",
            use_free=True,
            **common,
        )

    if available > 0:
        return OverrideEligibility(
            can_override=True,
            reason="Using one of your purchased overrides.",
            use_purchased=True,
            **common,
        )

    price = override_price_cents() / 100
    return OverrideEligibility(
        can_override=True,
        reason=f"Override requires payment of ${price:.2f}.",
        requires_payment=True,
        price=price,
        **common,
    )


def check_eligibility(user_id: str, site_url: str, now: Optional[datetime] = None) -> OverrideEligibility:
    """
    Read-only eligibility check for a user's site.

    Raises:
        NotFoundError: unknown user, or site not tracked
    """
    with get_db_session() as session:
        profile = get_profile_row(session, user_id)
        site = load_site_row(session, user_id, site_url)
        return evaluate_eligibility(session, profile, site, now)
