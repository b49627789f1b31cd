"""
Profile API

GET   /api/me               profile (created on first authenticated call)
PATCH /api/me               update display name
GET   /api/me/activity      activity feed
GET   /api/me/transactions  payment history
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, field_validator

from backend.core.auth import get_current_user_id
from backend.features.transactions.ledger import list_transactions
from backend.features.users.service import get_user_profile, list_activities, update_profile

router = APIRouter(prefix="/api/me", tags=["me"])


class ProfileUpdate(BaseModel):
    display_name: Optional[str] = None

    @field_validator("display_name")
    @classmethod
    def _trim(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip()[:100] or None


@router.get("")
def get_me(user_id: str = Depends(get_current_user_id)) -> dict:
    return get_user_profile(user_id)


@router.patch("")
def patch_me(body: ProfileUpdate, user_id: str = Depends(get_current_user_id)) -> dict:
    return update_profile(user_id, body.display_name)


@router.get("/activity")
def get_activity(
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
) -> dict:
    items = list_activities(user_id, limit=limit)
    return {"count": len(items), "activities": items}


@router.get("/transactions")
def get_transactions(
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
) -> dict:
    items = list_transactions(user_id, limit=limit)
    return {"count": len(items), "transactions": items}
