"""
Billing API routes.

Minimal surface:
- POST /api/billing/checkout: Create checkout session (plan, credit pack, single override)
- POST /api/billing/confirm: Verify a completed checkout session and apply it
- POST /api/billing/webhook: Handle Stripe webhooks
"""
import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field, field_validator

from backend.core.auth import get_current_user_id
from backend.features.billing.provider import BillingProviderError, BillingWebhookError
from backend.features.billing.service import (
    billing_enabled,
    confirm_checkout,
    process_webhook_event,
    start_checkout,
)

logger = logging.getLogger("limitter.billing")

router = APIRouter(prefix="/api/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    payment_type: Literal["plan", "overrides", "override"]
    plan: Optional[str] = None
    quantity: int = Field(1, ge=1)
    site_url: Optional[str] = None

    @field_validator("plan", "site_url")
    @classmethod
    def _trim(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class CheckoutResponse(BaseModel):
    """Response with checkout URL."""
    session_id: str
    url: Optional[str] = None


class ConfirmRequest(BaseModel):
    session_id: str

    @field_validator("session_id")
    @classmethod
    def _trim(cls, value: str) -> str:
        return value.strip()


def _billing_disabled() -> HTTPException:
    return HTTPException(
        status_code=503,
        detail={
            "code": "billing_disabled",
            "message": "Stripe is not configured. Set STRIPE_SECRET_KEY environment variable.",
        },
    )


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(body: CheckoutRequest, user_id: str = Depends(get_current_user_id)):
    """
    Create Stripe checkout session.

    Errors:
        503: Billing disabled (STRIPE_SECRET_KEY not set)
        400: Invalid plan, quantity or site
        409: The override does not need payment
        502: Stripe API error
    """
    if not billing_enabled():
        raise _billing_disabled()
    try:
        result = start_checkout(
            user_id,
            body.payment_type,
            plan=body.plan,
            quantity=body.quantity,
            site_url=body.site_url,
        )
    except BillingProviderError as e:
        logger.error(f"[billing] checkout failed: {e}")
        raise HTTPException(status_code=502, detail={"code": "billing_provider_error", "message": str(e)})
    return {"session_id": result["sessionId"], "url": result["url"]}


@router.post("/confirm")
def confirm(body: ConfirmRequest, user_id: str = Depends(get_current_user_id)) -> dict:
    """Apply a paid checkout session after the success redirect (idempotent)."""
    if not billing_enabled():
        raise _billing_disabled()
    try:
        return confirm_checkout(user_id, body.session_id)
    except BillingProviderError as e:
        logger.error(f"[billing] confirm failed: {e}")
        raise HTTPException(status_code=502, detail={"code": "billing_provider_error", "message": str(e)})


@router.post("/webhook")
async def stripe_webhook(request: Request) -> dict:
    """
    Handle Stripe webhook events.

    Signature is verified before anything is recorded. Replayed event ids
    are acknowledged without reprocessing.
    """
    body = await request.body()
    headers = dict(request.headers)
    try:
        result = process_webhook_event(headers, body)
    except BillingWebhookError as e:
        logger.warning(f"[billing] webhook rejected: {e}")
        raise HTTPException(status_code=400, detail={"code": "invalid_webhook", "message": str(e)})
    return {"received": True, "event_id": result.event_id, "event_type": result.event_type}
