"""
backend/features/plans/service.py

Plan and benefit resolution.

Handles:
- The static plan table (free, pro, elite)
- Plan lookup and pricing
- Transition effects between plans (override grant, balance reset, site invalidation)

Nothing in this module touches storage; callers apply the returned effects.
"""

from typing import Dict, List

from backend.core.config import settings
from backend.core.errors import ValidationError
from backend.models.plan import PlanBenefits, PlanTransition


PLAN_ORDER: List[str] = ["free", "pro", "elite"]

PLAN_BENEFITS: Dict[str, PlanBenefits] = {
    "free": PlanBenefits(
        plan_id="free",
        name="Free",
        price_cents=0,
        device_limit=1,
        site_limit=3,
        monthly_override_allowance=0,
        free_monthly_overrides=0,
        lockout_mode="fixed",
        fixed_lockout_seconds=3600,
        history_days=7,
    ),
    "pro": PlanBenefits(
        plan_id="pro",
        name="Pro",
        price_cents=499,
        device_limit=3,
        site_limit=-1,
        monthly_override_allowance=15,
        free_monthly_overrides=15,
        lockout_mode="custom",
        ai_nudges=True,
        reports="basic",
        history_days=30,
    ),
    "elite": PlanBenefits(
        plan_id="elite",
        name="Elite",
        price_cents=1199,
        device_limit=10,
        site_limit=-1,
        monthly_override_allowance=200,
        free_monthly_overrides=0,
        lockout_mode="custom",
        ai_nudges=True,
        reports="advanced",
        journaling=True,
        history_days=90,
    ),
}

PAID_PLANS = ("pro", "elite")


def get_plan_benefits(plan_id: str) -> PlanBenefits:
    """Look up a plan's entitlements; unknown identifiers raise ValidationError."""
    benefits = PLAN_BENEFITS.get(plan_id)
    if benefits is None:
        raise ValidationError(f"Invalid plan: {plan_id!r}", code="invalid_plan")
    return benefits


def get_price_cents(plan_id: str) -> int:
    return get_plan_benefits(plan_id).price_cents


def override_price_cents() -> int:
    """Flat price of a single override, in cents."""
    return int(round(settings.OVERRIDE_PRICE * 100))


def resolve_transition(previous_plan: str, new_plan: str) -> PlanTransition:
    """
    Compute the effects of moving a user from previous_plan to new_plan.

    - Changing to a paid plan grants that plan's full monthly allotment
      (pro: 15, elite: 200). Same-tier renewals and elite -> pro grant it too;
      grants are never prorated or stacked across tiers.
    - Moving from a paid plan to free resets the override balance to 0.
    - Any change of tier deletes all tracked sites, since time limits are
      plan-governed.
    """
    get_plan_benefits(previous_plan)
    target = get_plan_benefits(new_plan)

    return PlanTransition(
        previous_plan=previous_plan,
        new_plan=new_plan,
        override_grant=target.monthly_override_allowance,
        reset_balance=new_plan == "free" and previous_plan in PAID_PLANS,
        delete_sites=previous_plan != new_plan,
    )


def list_plans() -> List[dict]:
    """Plan table for the pricing page."""
    result = []
    for plan_id in PLAN_ORDER:
        b = PLAN_BENEFITS[plan_id]
        result.append({
            "id": b.plan_id,
            "name": b.name,
            "price": b.price,
            "deviceLimit": b.device_limit,
            "siteLimit": b.site_limit,
            "monthlyOverrides": b.monthly_override_allowance,
            "freeMonthlyOverrides": b.free_monthly_overrides,
            "lockoutMode": b.lockout_mode,
            "features": {
                "aiNudges": b.ai_nudges,
                "reports": b.reports,
                "journaling": b.journaling,
                "historyDays": b.history_days,
            },
        })
    return result
