"""Pydantic schemas for the subscription lifecycle endpoints."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateSubscriptionRequest(CamelModel):
    """Request to start a card subscription."""

    billing_cycle: Optional[str] = Field(None, description="'monthly' or 'yearly'")


class CreateSubscriptionResponse(CamelModel):
    subscription_id: str
    client_secret: str
    customer_id: str
    status: str


class SwitchBillingCycleRequest(CamelModel):
    new_billing_cycle: Optional[str] = Field(None, description="'monthly' or 'yearly'")


class SwitchBillingCycleResponse(CamelModel):
    subscription_id: str
    new_billing_cycle: str
    proration_amount: float
    next_billing_date: Optional[str]
    message: str


class CancelSubscriptionRequest(CamelModel):
    immediate: bool = Field(default=False, description="Cancel now instead of at period end")


class CancelSubscriptionResponse(CamelModel):
    subscription_id: str
    cancel_at: Optional[str]
    status: str
    message: str


class RefundRequestPayload(CamelModel):
    reason: Optional[str] = Field(None, max_length=500)


class RefundResponse(CamelModel):
    refund_id: str
    amount: float
    status: str
    message: str


class EntitlementResponse(CamelModel):
    """Authoritative entitlement as read by the confirmation poller."""

    user_id: str
    tier_id: str
    status: Optional[str]
    is_premium: bool
    billing_cycle: Optional[str]
    current_period_end: Optional[str]
