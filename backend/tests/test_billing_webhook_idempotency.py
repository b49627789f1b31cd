"""
Test billing webhook idempotency.

Verifies duplicate webhook events are not reprocessed and that a webhook and
a success-redirect confirmation for the same session apply it once.
"""
import hashlib
from dataclasses import replace
from unittest.mock import Mock, patch

import pytest
from sqlalchemy import select

from backend.core.database import billing_events, get_db_session
from backend.features.billing.provider import BillingWebhookResult, CheckoutSessionInfo
from backend.features.billing.service import confirm_checkout, process_webhook_event
from backend.features.overrides.service import get_override_balance
from backend.features.subscriptions.service import get_subscription
from backend.features.transactions.ledger import list_transactions


@pytest.fixture
def mock_webhook_provider():
    """Mock provider that returns webhook result."""
    with patch("backend.features.billing.service.get_provider") as mock_get:
        mock_provider = Mock()
        mock_get.return_value = mock_provider
        yield mock_provider


def _checkout_completed(event_id, user_id, session_id="cs_pack_1", **metadata):
    return BillingWebhookResult(
        event_id=event_id,
        event_type="checkout.session.completed",
        user_id=user_id,
        session_id=session_id,
        payment_status="paid",
        metadata={"userId": user_id, **metadata},
    )


def _event_rows():
    with get_db_session() as session:
        return session.execute(select(billing_events)).fetchall()


def test_webhook_idempotency_skips_duplicate_events(mock_webhook_provider, make_user):
    user = make_user()
    mock_webhook_provider.handle_webhook.return_value = _checkout_completed(
        "evt_pack_1", user, paymentType="overrides", quantity="3"
    )
    body = b'{"id": "evt_pack_1"}'

    process_webhook_event({"stripe-signature": "sig"}, body)
    assert get_override_balance(user)["overrides"] == 3

    process_webhook_event({"stripe-signature": "sig"}, body)
    assert get_override_balance(user)["overrides"] == 3

    rows = _event_rows()
    assert len(rows) == 1
    assert rows[0].stripe_event_id == "evt_pack_1"
    assert rows[0].processed is True
    assert rows[0].payload_hash == hashlib.sha256(body).hexdigest()
    assert len(list_transactions(user)) == 1


def test_distinct_events_for_same_session_apply_once(mock_webhook_provider, make_user):
    user = make_user()
    mock_webhook_provider.handle_webhook.side_effect = [
        _checkout_completed("evt_a", user, paymentType="overrides", quantity="2"),
        BillingWebhookResult(
            event_id="evt_b",
            event_type="checkout.session.async_payment_succeeded",
            user_id=user,
            session_id="cs_pack_1",
            payment_status="paid",
            metadata={"userId": user, "paymentType": "overrides", "quantity": "2"},
        ),
    ]

    process_webhook_event({}, b"a")
    process_webhook_event({}, b"b")

    assert get_override_balance(user)["overrides"] == 2
    assert all(row.processed for row in _event_rows())


def test_confirm_after_webhook_is_already_applied(mock_webhook_provider, make_user):
    user = make_user()
    mock_webhook_provider.handle_webhook.return_value = _checkout_completed(
        "evt_plan_1", user, session_id="cs_plan_1", paymentType="plan", plan="elite"
    )
    process_webhook_event({}, b"plan")
    assert get_subscription(user)["plan"] == "elite"

    mock_webhook_provider.retrieve_checkout_session.return_value = CheckoutSessionInfo(
        session_id="cs_plan_1",
        url=None,
        payment_status="paid",
        status="complete",
        amount_total=1199,
        metadata={"userId": user, "paymentType": "plan", "plan": "elite"},
    )
    result = confirm_checkout(user, "cs_plan_1")

    assert result["alreadyApplied"] is True
    assert get_override_balance(user)["overrides"] == 200


def test_unpaid_checkout_event_is_recorded_without_effect(mock_webhook_provider, make_user):
    user = make_user()
    mock_webhook_provider.handle_webhook.return_value = replace(
        _checkout_completed("evt_unpaid", user, paymentType="overrides", quantity="5"),
        payment_status="unpaid",
    )

    process_webhook_event({}, b"unpaid")

    assert get_override_balance(user)["overrides"] == 0
    assert _event_rows()[0].processed is True


def test_subscription_deleted_returns_user_to_free(mock_webhook_provider, make_user):
    user = make_user(plan="pro")
    mock_webhook_provider.handle_webhook.return_value = BillingWebhookResult(
        event_id="evt_cancel",
        event_type="customer.subscription.deleted",
        user_id=user,
        metadata={"userId": user},
    )

    process_webhook_event({}, b"cancel")

    subscription = get_subscription(user)
    assert subscription["plan"] == "free"
    assert subscription["status"] == "canceled"


def test_failed_dispatch_is_retried(mock_webhook_provider, make_user):
    user = make_user()
    mock_webhook_provider.handle_webhook.return_value = _checkout_completed(
        "evt_retry", user, paymentType="overrides", quantity="4"
    )

    with patch(
        "backend.features.billing.service.purchase_overrides",
        side_effect=RuntimeError("database unavailable"),
    ):
        with pytest.raises(RuntimeError):
            process_webhook_event({}, b"retry")

    row = _event_rows()[0]
    assert row.processed is False
    assert "database unavailable" in row.error

    process_webhook_event({}, b"retry")

    row = _event_rows()[0]
    assert row.processed is True
    assert row.error is None
    assert get_override_balance(user)["overrides"] == 4
