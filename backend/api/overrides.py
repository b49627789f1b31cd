"""
Override API

GET  /api/overrides/balance  credits, monthly usage, free allowance
POST /api/overrides/check    eligibility for a blocked site (read-only)
POST /api/overrides/process  grant a free or credit-funded override

Paid overrides are completed through /api/billing/checkout; process answers
402 with the price when a charge is due.
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_validator

from backend.core.auth import get_current_user_id
from backend.features.overrides.eligibility import check_eligibility
from backend.features.overrides.service import get_override_balance, process_override

router = APIRouter(prefix="/api/overrides", tags=["overrides"])


class SiteRequest(BaseModel):
    site_url: str

    @field_validator("site_url")
    @classmethod
    def _trim(cls, value: str) -> str:
        return value.strip()


@router.get("/balance")
def balance(user_id: str = Depends(get_current_user_id)) -> dict:
    return get_override_balance(user_id)


@router.post("/check")
def check(body: SiteRequest, user_id: str = Depends(get_current_user_id)) -> dict:
    return check_eligibility(user_id, body.site_url).as_response()


@router.post("/process")
def process(body: SiteRequest, user_id: str = Depends(get_current_user_id)) -> dict:
    return process_override(user_id, body.site_url)
