"""Per-user subscription record kept in sync with the payment providers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

STATUS_TRIALING = "trialing"
STATUS_ACTIVE = "active"
STATUS_PAST_DUE = "past_due"
STATUS_GRACE_PERIOD = "grace_period"
STATUS_PAYMENT_FAILED = "payment_failed"
STATUS_CANCELED = "canceled"

SUBSCRIPTION_STATUSES = (
    STATUS_TRIALING,
    STATUS_ACTIVE,
    STATUS_PAST_DUE,
    STATUS_GRACE_PERIOD,
    STATUS_PAYMENT_FAILED,
    STATUS_CANCELED,
)

# Statuses under which a premium tier grants access (``trialing`` is an unpaid ``incomplete``).
ENTITLED_STATUSES = (STATUS_ACTIVE, STATUS_GRACE_PERIOD)

# Statuses that block creating a second paid subscription.
OPEN_STATUSES = (STATUS_ACTIVE, STATUS_TRIALING, STATUS_PAST_DUE)

PROVIDER_STRIPE = "stripe"
PROVIDER_APPLE = "apple"

BILLING_MONTHLY = "monthly"
BILLING_YEARLY = "yearly"


@dataclass(slots=True)
class SubscriptionRecord:
    """
    Current entitlement state of a single user.

    Attributes:
        id: Row identifier
        user_id: Owning user (unique)
        tier_id: Entitlement tier, ``free`` or ``premium``
        status: One of ``SUBSCRIPTION_STATUSES``
        provider: ``stripe``, ``apple`` or None
        provider_customer_id: Stripe customer id
        provider_subscription_id: Stripe subscription id or Apple original transaction id
        billing_cycle: ``monthly`` or ``yearly``
        current_period_start: Start of the paid window
        current_period_end: End of the paid window
        cancel_at_period_end: Whether the provider stops renewing at period end
        canceled_at: When the subscription was canceled
        product_id: Apple product identifier, when linked to Apple
        subscribed_at: When the current provider subscription was linked
        created_at: Creation timestamp
        updated_at: Last mutation timestamp
    """

    id: int
    user_id: str
    tier_id: str
    status: str
    provider: Optional[str]
    provider_customer_id: Optional[str]
    provider_subscription_id: Optional[str]
    billing_cycle: Optional[str]
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    canceled_at: Optional[datetime]
    product_id: Optional[str]
    subscribed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    def is_entitled(self) -> bool:
        return self.status in ENTITLED_STATUSES

    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def __repr__(self) -> str:
        return (
            f"<SubscriptionRecord user_id={self.user_id} tier={self.tier_id} "
            f"status={self.status}>"
        )
