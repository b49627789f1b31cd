"""
backend/models/plan.py

Plan entitlements and plan-transition results.

Plans are capability tiers (free, pro, elite). -1 means unlimited for
count-style limits.
"""

from typing import Literal
from pydantic import BaseModel, ConfigDict


class PlanBenefits(BaseModel):
    """Entitlements attached to a plan."""
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    price_cents: int
    device_limit: int
    site_limit: int  # -1 = unlimited
    monthly_override_allowance: int  # granted on every confirmed change to this plan
    free_monthly_overrides: int  # free overrides per calendar month before credits are used
    lockout_mode: Literal["fixed", "custom"]
    fixed_lockout_seconds: int = 0
    ai_nudges: bool = False
    reports: Literal["none", "basic", "advanced"] = "none"
    journaling: bool = False
    history_days: int = 7

    @property
    def price(self) -> float:
        return self.price_cents / 100


class PlanTransition(BaseModel):
    """Effects to apply when a user's plan changes from one tier to another."""
    model_config = ConfigDict(frozen=True)

    previous_plan: str
    new_plan: str
    override_grant: int = 0
    reset_balance: bool = False
    delete_sites: bool = False

    @property
    def changed(self) -> bool:
        return self.previous_plan != self.new_plan
