"""Tests for the Stripe provider with the Stripe SDK patched out."""
from unittest.mock import patch

import pytest
import stripe

from backend.features.billing.provider import BillingProviderError, BillingWebhookError
from backend.features.billing.stripe_provider import StripeProvider


def _session(**overrides):
    session = {
        "id": "cs_test_1",
        "url": "https://checkout.stripe.com/c/pay/cs_test_1",
        "payment_status": "unpaid",
        "status": "open",
        "amount_total": 499,
        "metadata": {"userId": "user_alice", "paymentType": "plan", "plan": "pro"},
    }
    session.update(overrides)
    return session


def test_requires_secret_key():
    with pytest.raises(BillingProviderError):
        StripeProvider()


def test_plan_checkout_uses_subscription_mode(stripe_settings):
    provider = StripeProvider()
    metadata = {"userId": "user_alice", "paymentType": "plan", "plan": "pro"}
    with patch("stripe.checkout.Session.create", return_value=_session()) as create:
        info = provider.create_checkout_session(
            payment_type="plan",
            quantity=1,
            success_url="https://app/success",
            cancel_url="https://app/cancel",
            metadata=metadata,
            plan="pro",
            customer_email="alice@example.com",
        )

    params = create.call_args.kwargs
    assert params["mode"] == "subscription"
    assert params["line_items"] == [{"price": "price_pro", "quantity": 1}]
    assert params["subscription_data"] == {"metadata": metadata}
    assert params["customer_email"] == "alice@example.com"
    assert info.session_id == "cs_test_1"
    assert info.is_paid is False
    assert info.metadata["plan"] == "pro"


def test_credit_pack_checkout_uses_payment_mode(stripe_settings):
    provider = StripeProvider()
    with patch("stripe.checkout.Session.create", return_value=_session()) as create:
        provider.create_checkout_session(
            payment_type="overrides",
            quantity=5,
            success_url="https://app/success",
            cancel_url="https://app/cancel",
            metadata={"userId": "user_alice", "paymentType": "overrides", "quantity": "5"},
        )

    params = create.call_args.kwargs
    assert params["mode"] == "payment"
    assert params["line_items"] == [{"price": "price_override", "quantity": 5}]
    assert "subscription_data" not in params
    assert "customer_email" not in params


def test_missing_price_id(stripe_settings, monkeypatch):
    monkeypatch.setattr(stripe_settings, "STRIPE_PRICE_ID_ELITE", None)
    provider = StripeProvider()
    with pytest.raises(BillingProviderError):
        provider.create_checkout_session(
            payment_type="plan",
            quantity=1,
            success_url="https://app/success",
            cancel_url="https://app/cancel",
            metadata={},
            plan="elite",
        )


def test_stripe_error_is_wrapped(stripe_settings):
    provider = StripeProvider()
    with patch("stripe.checkout.Session.retrieve", side_effect=stripe.error.APIConnectionError("down")):
        with pytest.raises(BillingProviderError):
            provider.retrieve_checkout_session("cs_test_1")


def test_retrieve_paid_session(stripe_settings):
    provider = StripeProvider()
    with patch("stripe.checkout.Session.retrieve", return_value=_session(payment_status="paid", status="complete")):
        info = provider.retrieve_checkout_session("cs_test_1")
    assert info.is_paid is True
    assert info.amount_total == 499


def test_webhook_requires_signature_header(stripe_settings):
    provider = StripeProvider()
    with pytest.raises(BillingWebhookError):
        provider.handle_webhook({}, b"{}")


def test_webhook_parses_checkout_event(stripe_settings):
    event = {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {"object": _session(payment_status="paid")},
    }
    provider = StripeProvider()
    with patch("stripe.Webhook.construct_event", return_value=event) as construct:
        result = provider.handle_webhook({"stripe-signature": "t=1,v1=abc"}, b"{}")

    construct.assert_called_once_with(b"{}", "t=1,v1=abc", "whsec_dummy")
    assert result.event_id == "evt_1"
    assert result.user_id == "user_alice"
    assert result.session_id == "cs_test_1"
    assert result.payment_status == "paid"


def test_webhook_parses_subscription_event(stripe_settings):
    event = {
        "id": "evt_2",
        "type": "customer.subscription.deleted",
        "data": {"object": {"id": "sub_1", "status": "canceled", "metadata": {"userId": "user_bob"}}},
    }
    provider = StripeProvider()
    with patch("stripe.Webhook.construct_event", return_value=event):
        result = provider.handle_webhook({"stripe-signature": "sig"}, b"{}")

    assert result.user_id == "user_bob"
    assert result.session_id is None
    assert result.payment_status == "canceled"


def test_webhook_bad_signature(stripe_settings):
    provider = StripeProvider()
    error = stripe.error.SignatureVerificationError("bad signature", "sig")
    with patch("stripe.Webhook.construct_event", side_effect=error):
        with pytest.raises(BillingWebhookError):
            provider.handle_webhook({"stripe-signature": "sig"}, b"{}")
