from pydantic import BaseModel, Field
from typing import Any, Dict, Optional


class CreateIntentResult(BaseModel):
    """Response of the backend create-intent operation"""
    intent_id: str = Field(..., alias="intentId")
    desired_quantity: Optional[int] = Field(None, alias="desiredQuantity")
    billing_enabled: bool = Field(True, alias="billingEnabled")
    has_active_subscription: bool = Field(False, alias="hasActiveSubscription")
    needs_upgrade: bool = Field(False, alias="needsUpgrade")

    class Config:
        populate_by_name = True


class CommitIntentResult(BaseModel):
    """Response of the backend commit-intent operation"""
    organization_id: str = Field(..., alias="organizationId")
    restaurant_code: Optional[str] = Field(None, alias="restaurantCode")

    class Config:
        populate_by_name = True


class CheckoutSessionResult(BaseModel):
    """Response of the backend checkout-session-create operation"""
    checkout_url: Optional[str] = Field(None, alias="checkoutUrl")
    session_id: Optional[str] = Field(None, alias="sessionId")
    redirect: Optional[str] = None

    class Config:
        populate_by_name = True


class FinalizeResult(BaseModel):
    ok: bool = False
    active: Optional[bool] = None
    status: Optional[str] = None
    error: Optional[str] = None


class SubscriptionState(BaseModel):
    """Derived subscription state; never written by the orchestrator"""
    status: str = "none"
    active: bool = False

    @classmethod
    def from_payload(cls, data: Optional[Dict[str, Any]]) -> "SubscriptionState":
        """
        Normalise a subscription-status body.

        Missing status becomes "none"; "active" and "trialing" count as
        active even when the body does not say so explicitly.
        """
        if not data:
            return cls()
        status = str(data.get("status") or "").strip().lower() or "none"
        active = bool(data.get("active")) or status in ("active", "trialing")
        return cls(status=status, active=active)
