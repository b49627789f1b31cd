"""
Billing provider protocol.

Defines the interface for payment processors (Stripe, etc.) so the override
and plan flows never talk to a processor SDK directly.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field


@dataclass
class CheckoutSessionInfo:
    """A checkout session as seen by the backend."""
    session_id: str
    url: Optional[str]
    payment_status: Optional[str]  # paid, unpaid, no_payment_required
    status: Optional[str]  # open, complete, expired
    amount_total: Optional[int]  # cents
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"


@dataclass
class BillingWebhookResult:
    """Result of verifying and parsing a billing webhook."""
    event_id: str
    event_type: str
    user_id: Optional[str]
    session_id: Optional[str] = None
    payment_status: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Checkout session creation and retrieval
    - Webhook signature verification and parsing
    """

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
        """
        Create a checkout session.

        Args:
            payment_type: "plan", "overrides" or "override"
            quantity: Number of override credits (1 for plans)
            success_url: URL to redirect on success
            cancel_url: URL to redirect on cancellation
            metadata: Attached to the session and echoed back in webhooks
            plan: Target plan for plan checkouts

        Raises:
            BillingProviderError: If session creation fails
        """
        ...

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionInfo:
        """
        Fetch a checkout session from the processor.

        Raises:
            BillingProviderError: If the session cannot be retrieved
        """
        ...

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """
        Verify webhook signature and parse event.

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook processing errors."""
    pass
