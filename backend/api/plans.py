"""Plan table and the caller's subscription."""
from fastapi import APIRouter, Depends

from backend.core.auth import get_current_user_id
from backend.features.plans.service import list_plans
from backend.features.subscriptions.service import get_subscription

router = APIRouter(prefix="/api", tags=["plans"])


@router.get("/plans")
def plans() -> dict:
    return {"plans": list_plans()}


@router.get("/subscription")
def subscription(user_id: str = Depends(get_current_user_id)) -> dict:
    return get_subscription(user_id)
