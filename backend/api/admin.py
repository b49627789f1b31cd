"""
Admin API routes for account reconciliation.

All routes require an admin: a JWT whose user has is_admin set, or the
legacy X-Admin-Key header, depending on ADMIN_AUTH_MODE.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator

from backend.core.admin_auth import AdminActor, require_admin
from backend.features.admin.service import (
    admin_change_plan,
    admin_get_system_stats,
    admin_get_user_overview,
    admin_grant_overrides,
    admin_hard_delete_site,
    admin_recalculate_stats,
    admin_soft_delete_site,
    admin_update_site,
)
from backend.features.audit.service import list_audit_log

router = APIRouter(prefix="/api/admin", tags=["admin"])


class _Reasoned(BaseModel):
    reason: str

    @field_validator("reason")
    @classmethod
    def _trim_reason(cls, value: str) -> str:
        return value.strip()


class GrantOverridesRequest(_Reasoned):
    quantity: int


class ChangePlanRequest(_Reasoned):
    plan: str

    @field_validator("plan")
    @classmethod
    def _normalize_plan(cls, value: str) -> str:
        return value.strip().lower()


class UpdateSiteRequest(_Reasoned):
    time_limit: Optional[int] = Field(None, gt=0)
    name: Optional[str] = None
    is_active: Optional[bool] = None


@router.get("/users/{user_id}")
def user_overview(user_id: str, actor: AdminActor = Depends(require_admin)) -> dict:
    return admin_get_user_overview(user_id)


@router.post("/users/{user_id}/overrides")
def grant_overrides(user_id: str, body: GrantOverridesRequest, actor: AdminActor = Depends(require_admin)) -> dict:
    return admin_grant_overrides(actor, user_id, body.quantity, body.reason)


@router.post("/users/{user_id}/plan")
def change_plan(user_id: str, body: ChangePlanRequest, actor: AdminActor = Depends(require_admin)) -> dict:
    return admin_change_plan(actor, user_id, body.plan, body.reason)


@router.delete("/sites/{site_id}")
def delete_site(
    site_id: str,
    reason: str = Query(...),
    hard: bool = Query(False),
    actor: AdminActor = Depends(require_admin),
) -> dict:
    if hard:
        return admin_hard_delete_site(actor, site_id, reason)
    return admin_soft_delete_site(actor, site_id, reason)


@router.patch("/sites/{site_id}")
def update_site(site_id: str, body: UpdateSiteRequest, actor: AdminActor = Depends(require_admin)) -> dict:
    return admin_update_site(
        actor,
        site_id,
        reason=body.reason,
        time_limit=body.time_limit,
        name=body.name,
        is_active=body.is_active,
    )


@router.get("/stats")
def system_stats(actor: AdminActor = Depends(require_admin)) -> dict:
    return admin_get_system_stats()


@router.post("/stats/recalculate")
def recalculate_stats(actor: AdminActor = Depends(require_admin)) -> dict:
    return admin_recalculate_stats(actor)


@router.get("/audit")
def audit_log(
    target_user_id: Optional[str] = None,
    action: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    actor: AdminActor = Depends(require_admin),
) -> dict:
    entries = list_audit_log(target_user_id=target_user_id, action=action, limit=limit)
    return {"count": len(entries), "entries": entries}
