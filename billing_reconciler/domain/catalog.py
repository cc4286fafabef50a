"""Static price, product and tier catalog used by the reconciliation paths."""

from __future__ import annotations

from decimal import Decimal
from typing import Dict, Optional, Tuple

from .models import Tier
from .models.subscription import (
    BILLING_MONTHLY,
    BILLING_YEARLY,
    STATUS_ACTIVE,
    STATUS_CANCELED,
    STATUS_PAST_DUE,
    STATUS_TRIALING,
)

FREE_TIER_NAME = "free"
PREMIUM_TIER_NAME = "premium"

DEFAULT_TIERS: Tuple[Tier, ...] = (
    Tier(
        tier_id="free",
        name=FREE_TIER_NAME,
        monthly_price=Decimal("0.00"),
        annual_price=Decimal("0.00"),
        subscription_item_limit=5,
        features=["cloud_sync", "renewal_reminders", "basic_stats"],
    ),
    Tier(
        tier_id="premium",
        name=PREMIUM_TIER_NAME,
        monthly_price=Decimal("4.99"),
        annual_price=Decimal("39.99"),
        subscription_item_limit=-1,
        features=[
            "cloud_sync",
            "renewal_reminders",
            "basic_stats",
            "advanced_analytics",
            "priority_support",
            "unlimited_subscriptions",
        ],
    ),
)

# Stripe subscription status -> internal status.
STRIPE_STATUS_MAP: Dict[str, str] = {
    "active": STATUS_ACTIVE,
    "past_due": STATUS_PAST_DUE,
    "canceled": STATUS_CANCELED,
    "incomplete": STATUS_TRIALING,
    "incomplete_expired": STATUS_CANCELED,
    "trialing": STATUS_TRIALING,
    "unpaid": STATUS_CANCELED,
}

APPLE_PRODUCT_TIERS: Dict[str, str] = {
    "com.ronnie39.renvo.premium.monthly.v1": PREMIUM_TIER_NAME,
    "com.ronnie39.renvo.premium.yearly.v1": PREMIUM_TIER_NAME,
    "com.ronnie39.renvo.pro.monthly": PREMIUM_TIER_NAME,
    "com.ronnie39.renvo.pro.yearly": PREMIUM_TIER_NAME,
}

_CYCLE_ALIASES: Dict[str, str] = {
    "monthly": BILLING_MONTHLY,
    "month": BILLING_MONTHLY,
    "yearly": BILLING_YEARLY,
    "year": BILLING_YEARLY,
    "annual": BILLING_YEARLY,
    "annually": BILLING_YEARLY,
}


def map_stripe_status(provider_status: Optional[str]) -> str:
    """Translate a Stripe subscription status; unknown values count as canceled."""
    if not provider_status:
        return STATUS_CANCELED
    return STRIPE_STATUS_MAP.get(provider_status, STATUS_CANCELED)


def normalize_billing_cycle(value: Optional[str]) -> Optional[str]:
    """Return the canonical ``monthly``/``yearly`` form of a provider billing interval."""
    if not value:
        return None
    return _CYCLE_ALIASES.get(value.strip().lower())


def tier_name_for_product(product_id: str) -> str:
    """Products missing from the table are treated as premium."""
    return APPLE_PRODUCT_TIERS.get(product_id, PREMIUM_TIER_NAME)


def billing_cycle_for_product(product_id: str) -> Optional[str]:
    lowered = product_id.lower()
    if "yearly" in lowered or "annual" in lowered:
        return BILLING_YEARLY
    if "monthly" in lowered:
        return BILLING_MONTHLY
    return None
