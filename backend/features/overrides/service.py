"""
Override flows: processing a single override and buying credit packs.

Both run as one DB transaction. The eligibility classification is recomputed
inside the transaction and the chosen resource is consumed with a
conditional update, so a stale client-side check can never double-spend.
"""
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from backend.core.clock import resolve_now, month_key
from backend.core.config import settings
from backend.core.database import get_db_session
from backend.core.errors import PaymentRequiredError, ValidationError
from backend.core.logging import log_event
from backend.features.overrides import balance as balance_store
from backend.features.overrides.eligibility import evaluate_eligibility
from backend.features.plans.service import get_plan_benefits, override_price_cents
from backend.features.sites.service import load_site_row, mark_override_granted
from backend.features.transactions.ledger import create_transaction
from backend.features.users.service import get_profile_row, log_activity
from backend.models.payment import PaymentData


def _validate_quantity(quantity: Any, maximum: int) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("quantity must be an integer", code="invalid_quantity")
    if quantity < 1 or quantity > maximum:
        raise ValidationError(f"quantity must be between 1 and {maximum}", code="invalid_quantity")
    return quantity


def process_override(
    user_id: str,
    site_url: str,
    payment: Optional[PaymentData] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Grant an override for a blocked site.

    With `payment` the override was already charged by the processor, so the
    paid branch is always taken and the charge is recorded under the payment
    reference. If the site is no longer blocked by then (day rolled over, site
    unblocked), the charge is still recorded and nothing is granted.

    Returns:
        {granted, transactionId, amount, isPaid, message, siteUrl}

    Raises:
        ValidationError: empty site
        NotFoundError: unknown user or site
        PaymentRequiredError: a charge is needed and no payment was supplied
        InsufficientBalanceError: the free allowance or credits ran out since the check
        ConflictError: the payment reference was already used
    """
    if not site_url or not site_url.strip():
        raise ValidationError("siteUrl is required", code="invalid_url")

    current = resolve_now(now)
    month = month_key(current)

    with get_db_session() as session:
        profile = get_profile_row(session, user_id)
        site = load_site_row(session, user_id, site_url, for_update=True)
        decision = evaluate_eligibility(session, profile, site, current)

        if payment is not None:
            return _apply_paid_override(session, user_id, site, decision.can_override, payment, current)

        if not decision.can_override:
            return {
                "granted": False,
                "transactionId": None,
                "amount": 0.0,
                "isPaid": False,
                "message": decision.reason,
                "siteUrl": site.url,
            }

        if decision.requires_payment:
            raise PaymentRequiredError(
                f"This override costs ${decision.price:.2f}. Complete checkout to continue.",
            )

        if profile.plan == "elite":
            balance_store.consume_elite(session, user_id, month)
            initiated_by = "elite"
            txn_id = f"free_{uuid4().hex}"
        elif decision.use_free:
            benefits = get_plan_benefits(profile.plan)
            balance_store.consume_free(session, user_id, month, benefits.free_monthly_overrides)
            initiated_by = "free"
            txn_id = f"free_{uuid4().hex}"
        else:
            balance_store.consume_purchased(session, user_id, month)
            initiated_by = "purchased"
            txn_id = f"purchased_{uuid4().hex}"

        mark_override_granted(session, site.id, initiated_by, current)
        log_activity(
            session,
            user_id,
            "override_used",
            f"Override used for {site.url}",
            {"siteId": site.id, "kind": initiated_by},
        )

    log_event(
        "info",
        "override.granted",
        request_id=None,
        user_id=user_id,
        site_id=site.id,
        event_type=f"override.{initiated_by}",
    )
    return {
        "granted": True,
        "transactionId": txn_id,
        "amount": 0.0,
        "isPaid": False,
        "message": f"Override granted for {site.url}.",
        "siteUrl": site.url,
    }


def _apply_paid_override(session, user_id: str, site, blocked: bool, payment: PaymentData, current: datetime) -> Dict[str, Any]:
    """Record a processor-confirmed single override charge; grant only if the site is still blocked."""
    month = month_key(current)
    amount_cents = override_price_cents()
    txn = create_transaction(
        session,
        user_id,
        "override_purchase",
        amount_cents,
        payment=payment,
        description=f"Single override for {site.url}",
        metadata={
            "quantity": 1,
            "pricePerUnit": amount_cents / 100,
            "siteId": site.id,
            "siteUrl": site.url,
            "kind": "single_override",
            "granted": blocked,
        },
        now=current,
    )

    if blocked:
        balance_store.record_paid_use(session, user_id, month, amount_cents)
        mark_override_granted(session, site.id, "paid", current)
        log_activity(
            session,
            user_id,
            "override_used",
            f"Override used for {site.url}",
            {"siteId": site.id, "kind": "paid"},
        )
        message = f"Override granted for {site.url}."
    else:
        balance_store.record_override_spend(session, user_id, month, amount_cents)
        message = f"{site.url} is no longer blocked; the payment was recorded without an override."

    log_event(
        "info" if blocked else "warning",
        "override.paid" if blocked else "override.paid_not_granted",
        request_id=None,
        user_id=user_id,
        site_id=site.id,
        event_type="override.paid",
        extra={"transaction_id": txn["id"], "payment_reference": payment.reference},
    )
    return {
        "granted": blocked,
        "transactionId": txn["id"],
        "amount": amount_cents / 100,
        "isPaid": True,
        "message": message,
        "siteUrl": site.url,
    }


def purchase_overrides(
    user_id: str,
    quantity: int,
    payment: Optional[PaymentData],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Buy a pack of override credits.

    Returns:
        {overridesAdded, newBalance, transactionId, amount}
    """
    quantity = _validate_quantity(quantity, settings.MAX_OVERRIDE_PURCHASE)
    if payment is None:
        raise PaymentRequiredError("Payment details are required to buy overrides.")

    current = resolve_now(now)
    unit_cents = override_price_cents()
    amount_cents = unit_cents * quantity

    with get_db_session() as session:
        get_profile_row(session, user_id)
        new_balance = balance_store.grant(session, user_id, quantity, reason="purchase", now=current)
        balance_store.record_override_spend(session, user_id, month_key(current), amount_cents)
        log_activity(
            session,
            user_id,
            "overrides_purchased",
            f"Purchased {quantity} override(s)",
            {"quantity": quantity},
        )
        txn = create_transaction(
            session,
            user_id,
            "override_purchase",
            amount_cents,
            payment=payment,
            description=f"{quantity} override credit(s)",
            metadata={"quantity": quantity, "pricePerUnit": unit_cents / 100, "kind": "credit_pack"},
            now=current,
        )

    log_event(
        "info",
        "overrides.purchased",
        request_id=None,
        user_id=user_id,
        extra={"quantity": quantity, "transaction_id": txn["id"]},
    )
    return {
        "overridesAdded": quantity,
        "newBalance": new_balance,
        "transactionId": txn["id"],
        "amount": amount_cents / 100,
    }


def get_override_balance(user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    with get_db_session() as session:
        plan = get_profile_row(session, user_id).plan
    benefits = get_plan_benefits(plan)
    summary = balance_store.get_balance_summary(user_id, plan, benefits.free_monthly_overrides, now)
    summary["plan"] = plan
    return summary
