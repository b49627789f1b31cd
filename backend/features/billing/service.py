"""
Billing service orchestrator.

Coordinates checkout sessions with the override and plan flows:
- start_checkout: create a processor checkout for a plan, a credit pack or a
  single override
- confirm_checkout: the success-redirect path; verifies the session with the
  processor before applying it
- process_webhook_event: the processor push path; idempotent per event id

Both confirmation paths apply a paid session through the same dispatcher and
use the checkout session id as the payment reference, so whichever arrives
second hits the unique reference and becomes a no-op.

All Stripe-specific code is in stripe_provider.py.
"""
import hashlib
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from sqlalchemy import select, update

from backend.core.config import settings
from backend.core.database import get_db_session, billing_events, insert_if_absent, users
from backend.core.errors import ConflictError, PaymentRequiredError, PermissionError, ValidationError
from backend.core.logging import log_event
from backend.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
    CheckoutSessionInfo,
)
from backend.features.billing.stripe_provider import StripeProvider
from backend.features.overrides.eligibility import check_eligibility
from backend.features.overrides.service import process_override, purchase_overrides
from backend.features.plans.service import PAID_PLANS
from backend.features.subscriptions.service import cancel_subscription, update_subscription
from backend.models.payment import PaymentData

logger = logging.getLogger("limitter.billing")

PAYMENT_TYPES = ("plan", "overrides", "override")
HANDLED_EVENTS = (
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "customer.subscription.deleted",
)


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        return None


def _require_provider() -> BillingProvider:
    provider = get_provider()
    if not provider:
        raise BillingProviderError("Billing not enabled")
    return provider


def start_checkout(
    user_id: str,
    payment_type: str,
    *,
    plan: Optional[str] = None,
    quantity: int = 1,
    site_url: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Start a checkout session.

    Returns:
        {"sessionId": ..., "url": ...}

    Raises:
        ValidationError: unknown payment type, plan or quantity
        ConflictError: a single override was requested but no charge is due
        BillingProviderError: billing disabled or processor failure
    """
    if payment_type not in PAYMENT_TYPES:
        raise ValidationError(f"paymentType must be one of: {', '.join(PAYMENT_TYPES)}", code="invalid_payment_type")

    metadata: Dict[str, str] = {"userId": user_id, "paymentType": payment_type}
    if payment_type == "plan":
        if plan not in PAID_PLANS:
            raise ValidationError("Plan must be one of: pro, elite", code="invalid_plan")
        metadata["plan"] = plan
        quantity = 1
    elif payment_type == "overrides":
        if isinstance(quantity, bool) or not isinstance(quantity, int) or not 1 <= quantity <= settings.MAX_OVERRIDE_PURCHASE:
            raise ValidationError(
                f"quantity must be between 1 and {settings.MAX_OVERRIDE_PURCHASE}", code="invalid_quantity"
            )
        metadata["quantity"] = str(quantity)
    else:
        if not site_url or not site_url.strip():
            raise ValidationError("siteUrl is required", code="invalid_url")
        decision = check_eligibility(user_id, site_url)
        if not decision.can_override or not decision.requires_payment:
            raise ConflictError(decision.reason, code="payment_not_required")
        metadata["siteUrl"] = site_url.strip()
        quantity = 1

    provider = _require_provider()
    with get_db_session() as session:
        email = session.execute(select(users.c.email).where(users.c.user_id == user_id)).scalar()

    base = settings.BASE_URL.rstrip("/")
    info = provider.create_checkout_session(
        payment_type=payment_type,
        quantity=quantity,
        success_url=f"{base}/dashboard?payment=success&session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{base}/dashboard?payment=cancelled",
        metadata=metadata,
        plan=plan,
        customer_email=email,
    )
    log_event(
        "info",
        "billing.checkout_started",
        request_id=None,
        user_id=user_id,
        event_type=f"checkout.{payment_type}",
        extra={"session_id": info.session_id},
    )
    return {"sessionId": info.session_id, "url": info.url}


def apply_paid_checkout(metadata: Dict[str, Any], reference: str, amount_cents: Optional[int] = None) -> Dict[str, Any]:
    """
    Apply a paid checkout session to the user's account.

    Raises:
        ValidationError: metadata is missing or malformed
        ConflictError: the session was already applied (duplicate reference)
    """
    user_id = metadata.get("userId")
    payment_type = metadata.get("paymentType")
    if not user_id or payment_type not in PAYMENT_TYPES:
        raise ValidationError("Checkout session metadata is incomplete", code="invalid_checkout")

    payment = PaymentData(payment_method="card", reference=reference, amount_cents=amount_cents)
    if payment_type == "plan":
        return update_subscription(user_id, metadata.get("plan"), payment)
    if payment_type == "overrides":
        try:
            quantity = int(metadata.get("quantity", ""))
        except ValueError:
            raise ValidationError("Checkout session quantity is invalid", code="invalid_checkout")
        return purchase_overrides(user_id, quantity, payment)
    return process_override(user_id, metadata.get("siteUrl", ""), payment=payment)


def confirm_checkout(user_id: str, session_id: str) -> Dict[str, Any]:
    """
    Apply a checkout session after the success redirect.

    The session is fetched from the processor; client-supplied payment
    details are never trusted.

    Returns:
        The applied result plus {"alreadyApplied": bool, "paymentType": ...}

    Raises:
        PermissionError: the session belongs to another user
        PaymentRequiredError: the session is not paid
    """
    if not session_id or not session_id.strip():
        raise ValidationError("sessionId is required", code="invalid_session")
    provider = _require_provider()
    info: CheckoutSessionInfo = provider.retrieve_checkout_session(session_id.strip())

    if info.metadata.get("userId") != user_id:
        raise PermissionError("This checkout session belongs to another account", code="forbidden")
    if not info.is_paid:
        raise PaymentRequiredError("Payment has not been completed for this session.")

    payment_type = info.metadata.get("paymentType")
    try:
        result = apply_paid_checkout(info.metadata, info.session_id, info.amount_total)
    except ConflictError as e:
        if e.code != "duplicate_payment":
            raise
        return {"alreadyApplied": True, "paymentType": payment_type}
    return {**result, "alreadyApplied": False, "paymentType": payment_type}


def _dispatch_event(result: BillingWebhookResult) -> None:
    if result.event_type in ("checkout.session.completed", "checkout.session.async_payment_succeeded"):
        if result.payment_status != "paid":
            logger.info(f"[billing] checkout {result.session_id} not paid yet ({result.payment_status})")
            return
        try:
            apply_paid_checkout(result.metadata, result.session_id)
        except ConflictError as e:
            if e.code != "duplicate_payment":
                raise
            logger.info(f"[billing] checkout {result.session_id} already applied")
    elif result.event_type == "customer.subscription.deleted":
        if not result.user_id:
            logger.warning(f"[billing] subscription deletion {result.event_id} has no userId metadata")
            return
        cancel_subscription(result.user_id)


def process_webhook_event(headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
    """
    Process billing webhook event (idempotent).

    1. Verify signature
    2. Record the event id; skip if it was already processed
    3. Dispatch handled event types
    4. Mark as processed, or store the error and re-raise so the
       processor retries

    Raises:
        BillingWebhookError: If signature invalid or billing disabled
    """
    provider = get_provider()
    if not provider:
        raise BillingWebhookError("Billing not enabled")

    result = provider.handle_webhook(headers, body)
    payload_hash = hashlib.sha256(body).hexdigest()

    with get_db_session() as session:
        inserted = insert_if_absent(
            session,
            billing_events,
            {
                "stripe_event_id": result.event_id,
                "event_type": result.event_type,
                "payload_hash": payload_hash,
                "processed": False,
            },
            ["stripe_event_id"],
        )
        if not inserted:
            processed = session.execute(
                select(billing_events.c.processed).where(billing_events.c.stripe_event_id == result.event_id)
            ).scalar()
            if processed:
                logger.info(f"[billing] duplicate webhook {result.event_id} skipped")
                return result

    if result.event_type not in HANDLED_EVENTS:
        logger.debug(f"[billing] ignoring webhook type {result.event_type}")

    try:
        _dispatch_event(result)
    except Exception as e:
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == result.event_id)
                .values(error=str(e)[:1000])
            )
        log_event(
            "error",
            "billing.webhook_failed",
            request_id=None,
            user_id=result.user_id,
            event_type=result.event_type,
            extra={"event_id": result.event_id, "error": str(e)},
        )
        raise

    with get_db_session() as session:
        session.execute(
            update(billing_events)
            .where(billing_events.c.stripe_event_id == result.event_id)
            .values(processed=True, processed_at=datetime.now(timezone.utc), error=None)
        )
    log_event(
        "info",
        "billing.webhook_processed",
        request_id=None,
        user_id=result.user_id,
        event_type=result.event_type,
        extra={"event_id": result.event_id},
    )
    return result
