from typing import Optional
from pydantic import BaseModel, ConfigDict, field_validator


class PaymentData(BaseModel):
    """Proof of a confirmed payment, attached to a transaction.

    `reference` is the processor's identifier for the charge (a checkout
    session id for Stripe). A reference can back at most one transaction.
    """
    model_config = ConfigDict(frozen=True)

    payment_method: str = "card"
    reference: str
    amount_cents: Optional[int] = None  # as reported by the processor, informational

    @field_validator("payment_method", "reference")
    @classmethod
    def _strip_required(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("must not be empty")
        if len(v) > 200:
            raise ValueError("too long")
        return v
