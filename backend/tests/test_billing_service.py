"""
Test billing service.

Tests with mocked provider (no real API calls).
"""
import pytest
from unittest.mock import Mock, patch

from backend.core.database import get_db_session
from backend.core.errors import ConflictError, PaymentRequiredError, PermissionError, ValidationError
from backend.features.billing.provider import BillingProviderError, CheckoutSessionInfo
from backend.features.billing.service import billing_enabled, confirm_checkout, start_checkout
from backend.features.overrides import balance as balance_store
from backend.features.overrides.service import get_override_balance
from backend.features.sites.service import add_site, get_sites_time_status, record_time_spent
from backend.features.subscriptions.service import get_subscription
from backend.features.transactions.ledger import list_transactions


@pytest.fixture
def mock_provider():
    """Mock billing provider for testing."""
    with patch("backend.features.billing.service.get_provider") as mock_get:
        provider = Mock()
        provider.create_checkout_session.return_value = CheckoutSessionInfo(
            session_id="cs_test_123",
            url="https://checkout.stripe.com/c/pay/cs_test_123",
            payment_status="unpaid",
            status="open",
            amount_total=None,
        )
        mock_get.return_value = provider
        yield provider


def _paid_session(session_id, user_id, **metadata):
    return CheckoutSessionInfo(
        session_id=session_id,
        url=None,
        payment_status="paid",
        status="complete",
        amount_total=None,
        metadata={"userId": user_id, **metadata},
    )


def test_billing_disabled_without_secret_key():
    assert billing_enabled() is False


def test_start_plan_checkout(mock_provider, make_user):
    user = make_user(email="alice@example.com")

    result = start_checkout(user, "plan", plan="pro")

    assert result == {"sessionId": "cs_test_123", "url": "https://checkout.stripe.com/c/pay/cs_test_123"}
    kwargs = mock_provider.create_checkout_session.call_args.kwargs
    assert kwargs["payment_type"] == "plan"
    assert kwargs["metadata"] == {"userId": user, "paymentType": "plan", "plan": "pro"}
    assert kwargs["success_url"].endswith("session_id={CHECKOUT_SESSION_ID}")
    assert "payment=cancelled" in kwargs["cancel_url"]
    assert kwargs["customer_email"] == "alice@example.com"


def test_start_checkout_validation(mock_provider, make_user):
    user = make_user()
    with pytest.raises(ValidationError):
        start_checkout(user, "plan", plan="free")
    with pytest.raises(ValidationError):
        start_checkout(user, "overrides", quantity=0)
    with pytest.raises(ValidationError):
        start_checkout(user, "gift")
    mock_provider.create_checkout_session.assert_not_called()


def test_single_override_checkout_only_when_payment_due(mock_provider, make_user, now):
    user = make_user()
    add_site(user, "youtube.com", time_limit=60)
    with pytest.raises(ConflictError):
        start_checkout(user, "override", site_url="youtube.com")

    record_time_spent(user, "youtube.com", 60)
    start_checkout(user, "override", site_url="youtube.com")
    assert mock_provider.create_checkout_session.call_args.kwargs["metadata"]["siteUrl"] == "youtube.com"


def test_start_checkout_without_provider(make_user):
    user = make_user()
    with pytest.raises(BillingProviderError):
        start_checkout(user, "plan", plan="pro")


def test_confirm_plan_checkout_is_idempotent(mock_provider, make_user):
    user = make_user()
    mock_provider.retrieve_checkout_session.return_value = _paid_session(
        "cs_plan_1", user, paymentType="plan", plan="pro"
    )

    first = confirm_checkout(user, "cs_plan_1")
    assert first["alreadyApplied"] is False
    assert first["plan"] == "pro"
    assert get_subscription(user)["plan"] == "pro"

    second = confirm_checkout(user, "cs_plan_1")
    assert second == {"alreadyApplied": True, "paymentType": "plan"}
    assert len(list_transactions(user)) == 1
    assert list_transactions(user)[0]["paymentReference"] == "cs_plan_1"


def test_confirm_override_pack(mock_provider, make_user):
    user = make_user()
    mock_provider.retrieve_checkout_session.return_value = _paid_session(
        "cs_pack_1", user, paymentType="overrides", quantity="3"
    )
    result = confirm_checkout(user, "cs_pack_1")
    assert result["overridesAdded"] == 3
    assert get_override_balance(user)["overrides"] == 3


def test_confirm_single_override_unblocks_site(mock_provider, make_user):
    user = make_user()
    add_site(user, "youtube.com", time_limit=60)
    record_time_spent(user, "youtube.com", 60)
    mock_provider.retrieve_checkout_session.return_value = _paid_session(
        "cs_single_1", user, paymentType="override", siteUrl="youtube.com"
    )

    result = confirm_checkout(user, "cs_single_1")

    assert result["granted"] is True
    assert result["isPaid"] is True
    assert get_sites_time_status(user)[0]["isBlocked"] is False


def test_confirm_rejects_other_users_session(mock_provider, make_user):
    user = make_user()
    mock_provider.retrieve_checkout_session.return_value = _paid_session(
        "cs_other", "someone_else", paymentType="plan", plan="pro"
    )
    with pytest.raises(PermissionError):
        confirm_checkout(user, "cs_other")
    assert get_subscription(user)["plan"] == "free"


def test_confirm_rejects_unpaid_session(mock_provider, make_user):
    user = make_user()
    mock_provider.retrieve_checkout_session.return_value = CheckoutSessionInfo(
        session_id="cs_unpaid",
        url=None,
        payment_status="unpaid",
        status="open",
        amount_total=None,
        metadata={"userId": user, "paymentType": "plan", "plan": "pro"},
    )
    with pytest.raises(PaymentRequiredError):
        confirm_checkout(user, "cs_unpaid")


def test_confirm_single_override_after_credit_grant_still_records_charge(mock_provider, make_user):
    user = make_user()
    add_site(user, "youtube.com", time_limit=60)
    record_time_spent(user, "youtube.com", 60)
    start_checkout(user, "override", site_url="youtube.com")

    with get_db_session() as session:
        balance_store.grant(session, user, 1, reason="support")
    mock_provider.retrieve_checkout_session.return_value = _paid_session(
        "cs_single_2", user, paymentType="override", siteUrl="youtube.com"
    )

    result = confirm_checkout(user, "cs_single_2")

    assert result["isPaid"] is True
    assert get_override_balance(user)["overrides"] == 1
    assert [t["paymentReference"] for t in list_transactions(user)] == ["cs_single_2"]
    assert confirm_checkout(user, "cs_single_2")["alreadyApplied"] is True
