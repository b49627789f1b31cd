"""
Stripe billing provider implementation.

Implements BillingProvider protocol using Stripe API.
Handles webhook signature verification and event parsing.
"""
from typing import Dict, Any, Optional
import stripe

from backend.core.config import settings
from backend.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
    CheckoutSessionInfo,
)


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY setting)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET setting)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def _price_for(self, payment_type: str, plan: Optional[str]) -> str:
        if payment_type == "plan":
            price_id = {
                "pro": settings.STRIPE_PRICE_ID_PRO,
                "elite": settings.STRIPE_PRICE_ID_ELITE,
            }.get(plan or "")
        else:
            price_id = settings.STRIPE_PRICE_ID_OVERRIDE
        if not price_id:
            raise BillingProviderError(f"No Stripe price configured for {payment_type} {plan or ''}".strip())
        return price_id

    def create_checkout_session(
        self,
        *,
        payment_type: str,
        quantity: int,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        plan: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> CheckoutSessionInfo:
        """Create Stripe checkout session; plans subscribe, overrides pay once."""
        price_id = self._price_for(payment_type, plan)
        params: Dict[str, Any] = {
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1 if payment_type == "plan" else quantity}],
            "mode": "subscription" if payment_type == "plan" else "payment",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        if payment_type == "plan":
            # Subscription metadata is what customer.subscription.* events carry
            params["subscription_data"] = {"metadata": metadata}
        if customer_email:
            params["customer_email"] = customer_email

        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.error.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")
        return self._to_info(session)

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionInfo:
        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.error.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session lookup failed: {e}")
        return self._to_info(session)

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            event = stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.error.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        return self._parse_event(event)

    @staticmethod
    def _to_info(session: Any) -> CheckoutSessionInfo:
        metadata = session.get("metadata") or {}
        return CheckoutSessionInfo(
            session_id=session["id"],
            url=session.get("url"),
            payment_status=session.get("payment_status"),
            status=session.get("status"),
            amount_total=session.get("amount_total"),
            metadata={str(k): str(v) for k, v in dict(metadata).items()},
        )

    def _parse_event(self, event: Dict[str, Any]) -> BillingWebhookResult:
        """Parse Stripe event into normalized BillingWebhookResult."""
        event_type = event["type"]
        data = event.get("data", {}).get("object", {}) or {}
        metadata = dict(data.get("metadata") or {})

        session_id = None
        payment_status = None
        if event_type.startswith("checkout.session."):
            session_id = data.get("id")
            payment_status = data.get("payment_status")
        elif event_type.startswith("customer.subscription."):
            payment_status = data.get("status")

        return BillingWebhookResult(
            event_id=event["id"],
            event_type=event_type,
            user_id=metadata.get("userId"),
            session_id=session_id,
            payment_status=payment_status,
            metadata=metadata,
        )
