"""
Tracked sites API

Used by the dashboard and by the browser extension. The extension posts to a
single endpoint with an `action` field; the dashboard uses the REST routes.
"""
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator

from backend.core.auth import get_current_user_id
from backend.core.errors import ValidationError
from backend.features.sites.service import (
    add_site,
    get_sites_time_status,
    list_sites,
    record_time_spent,
    remove_site,
    reset_daily_times,
)

router = APIRouter(prefix="/api", tags=["sites"])


class AddSiteRequest(BaseModel):
    url: str
    name: Optional[str] = None
    time_limit: Optional[int] = Field(None, gt=0)

    @field_validator("url", "name")
    @classmethod
    def _trim(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class TimeUpdateRequest(BaseModel):
    site: str
    seconds_elapsed: int = Field(..., ge=0)

    @field_validator("site")
    @classmethod
    def _trim_site(cls, value: str) -> str:
        return value.strip()


class ExtensionRequest(BaseModel):
    action: Literal["updateTime", "getSitesStatus", "resetDaily"]
    site: Optional[str] = None
    seconds_elapsed: Optional[int] = Field(None, ge=0)


@router.get("/sites")
def get_sites(
    include_inactive: bool = Query(False),
    user_id: str = Depends(get_current_user_id),
) -> dict:
    sites = list_sites(user_id, include_inactive=include_inactive)
    return {"count": len(sites), "sites": sites}


@router.post("/sites")
def post_site(body: AddSiteRequest, user_id: str = Depends(get_current_user_id)) -> dict:
    if not body.url:
        raise ValidationError("url is required", code="invalid_url")
    return add_site(user_id, body.url, name=body.name, time_limit=body.time_limit)


@router.delete("/sites/{site_id}")
def delete_site(site_id: str, user_id: str = Depends(get_current_user_id)) -> dict:
    return remove_site(user_id, site_id)


@router.get("/sites/status")
def sites_status(user_id: str = Depends(get_current_user_id)) -> dict:
    return {"sites": get_sites_time_status(user_id)}


@router.post("/sites/time")
def sites_time(body: TimeUpdateRequest, user_id: str = Depends(get_current_user_id)) -> dict:
    return record_time_spent(user_id, body.site, body.seconds_elapsed)


@router.post("/sites/reset-daily")
def sites_reset_daily(user_id: str = Depends(get_current_user_id)) -> dict:
    return {"reset": reset_daily_times(user_id)}


@router.post("/extension/time-tracking")
def extension_time_tracking(body: ExtensionRequest, user_id: str = Depends(get_current_user_id)) -> dict:
    if body.action == "updateTime":
        if not body.site or body.seconds_elapsed is None:
            raise ValidationError("updateTime requires site and seconds_elapsed")
        return {"success": True, "data": record_time_spent(user_id, body.site, body.seconds_elapsed)}
    if body.action == "getSitesStatus":
        return {"success": True, "data": get_sites_time_status(user_id)}
    return {"success": True, "data": {"reset": reset_daily_times(user_id)}}
