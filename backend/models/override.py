from typing import Optional
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class OverrideEligibility(BaseModel):
    """Classification of an override request.

    Serialized with camelCase keys (`canOverride`, `requiresPayment`, ...).
    """
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    can_override: bool
    reason: str
    requires_payment: bool = False
    use_purchased: bool = False
    use_free: bool = False
    price: float = 0.0
    available_overrides: int = 0
    free_overrides_remaining: Optional[int] = None  # None when the plan has no monthly allowance tracking
    user_plan: str = "free"

    @property
    def cost_class(self) -> str:
        if not self.can_override:
            return "none"
        if self.requires_payment:
            return "paid"
        if self.use_purchased:
            return "purchased"
        if self.user_plan == "elite":
            return "elite"
        return "free"

    def as_response(self) -> dict:
        return self.model_dump(by_alias=True)
