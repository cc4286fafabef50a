"""Service for the user-initiated subscription lifecycle on Stripe."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from ..domain.catalog import FREE_TIER_NAME, PREMIUM_TIER_NAME, normalize_billing_cycle
from ..domain.errors import (
    BillingError,
    InvalidBillingRequestError,
    PaymentProviderError,
    SubscriptionConflictError,
    SubscriptionNotFoundError,
)
from ..domain.models import SubscriptionRecord
from ..domain.models.payment import REFUND_APPROVED, REFUND_REJECTED
from ..domain.models.subscription import (
    PROVIDER_STRIPE,
    STATUS_ACTIVE,
    STATUS_CANCELED,
    STATUS_TRIALING,
)
from ..domain.ports.persistence import PersistenceGateway
from .stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

REFUND_WINDOW_DAYS = 7


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    return datetime.fromtimestamp(int(value), tz=timezone.utc) if value else None


class SubscriptionService:
    """Service for creating, switching, canceling and refunding subscriptions.

    Provider-side effects happen here; the resulting state changes reach the
    subscription record through the webhook path unless noted otherwise.
    """

    def __init__(self, persistence: PersistenceGateway, gateway: StripeGateway) -> None:
        self._persistence = persistence
        self._gateway = gateway

    def _tier_id(self, name: str) -> str:
        tier = self._persistence.get_tier_by_name(name)
        if not tier:
            raise BillingError(f"Configuration error: {name} tier not found", status_code=500)
        return tier.tier_id

    @staticmethod
    def _cycle(value: Optional[str]) -> str:
        cycle = normalize_billing_cycle(value)
        if not cycle:
            raise InvalidBillingRequestError("billingCycle must be 'monthly' or 'yearly'")
        return cycle

    def _open_stripe_record(self, user_id: str) -> SubscriptionRecord:
        record = self._persistence.get_record_by_user(user_id)
        if not record or not record.is_open():
            raise SubscriptionNotFoundError("No active subscription found")
        if record.provider != PROVIDER_STRIPE or not record.provider_subscription_id:
            raise InvalidBillingRequestError("Invalid subscription: missing Stripe ID")
        return record

    async def create_subscription(
        self, user_id: str, email: Optional[str], billing_cycle: Optional[str]
    ) -> Dict[str, Any]:
        """
        Create an incomplete Stripe subscription for the client to confirm.

        Args:
            user_id: Authenticated user
            email: Email stored on a newly created Stripe customer
            billing_cycle: ``monthly`` or ``yearly``

        Returns:
            ``subscriptionId``, ``clientSecret``, ``customerId`` and ``status``

        Raises:
            SubscriptionConflictError: The user already holds an open paid subscription
        """
        cycle = self._cycle(billing_cycle)
        free_tier_id = self._tier_id(FREE_TIER_NAME)
        record = self._persistence.get_record_by_user(user_id)
        if record and record.is_open() and record.tier_id != free_tier_id:
            raise SubscriptionConflictError("User already has an active subscription")

        customer_id = record.provider_customer_id if record else None
        if not customer_id:
            customer_id = await self._gateway.create_customer(email, user_id)

        subscription = await self._gateway.create_subscription(customer_id, user_id, cycle)
        if not subscription["client_secret"]:
            raise PaymentProviderError("Failed to create payment intent", status_code=500)

        try:
            self._persistence.upsert_record(
                user_id,
                tier_id=self._tier_id(PREMIUM_TIER_NAME),
                status=STATUS_TRIALING,
                provider=PROVIDER_STRIPE,
                provider_customer_id=customer_id,
                provider_subscription_id=subscription["id"],
                billing_cycle=cycle,
                current_period_start=datetime.now(timezone.utc),
                current_period_end=_from_timestamp(subscription.get("current_period_end")),
                cancel_at_period_end=False,
                canceled_at=None,
            )
        except Exception as exc:
            logger.exception("Failed to store subscription %s; canceling it", subscription["id"])
            try:
                await self._gateway.cancel_now(subscription["id"])
            except PaymentProviderError:
                logger.error("Orphaned Stripe subscription %s could not be canceled", subscription["id"])
            raise BillingError("Failed to create subscription record", status_code=500) from exc

        logger.info("Subscription created for user %s: %s", user_id, subscription["id"])
        return {
            "subscriptionId": subscription["id"],
            "clientSecret": subscription["client_secret"],
            "customerId": customer_id,
            "status": subscription["status"],
        }

    async def switch_billing_cycle(self, user_id: str, new_billing_cycle: Optional[str]) -> Dict[str, Any]:
        """Move the Stripe subscription to the other price; the local record is left to the webhook."""
        cycle = self._cycle(new_billing_cycle)
        record = self._persistence.get_record_by_user(user_id)
        if not record or record.status != STATUS_ACTIVE:
            raise SubscriptionNotFoundError("No active subscription found")
        if record.provider != PROVIDER_STRIPE or not record.provider_subscription_id:
            raise InvalidBillingRequestError("Invalid subscription: missing Stripe ID")
        if record.billing_cycle == cycle:
            raise InvalidBillingRequestError(f"Already on {cycle} billing cycle")

        result = await self._gateway.switch_price(record.provider_subscription_id, cycle)
        proration = (Decimal(result.get("proration_total") or 0) / Decimal(100)).quantize(Decimal("0.01"))
        next_billing = _from_timestamp(result.get("current_period_end"))
        logger.info(
            "User %s switched %s to %s billing (proration %s)",
            user_id,
            record.provider_subscription_id,
            cycle,
            proration,
        )
        return {
            "subscriptionId": record.provider_subscription_id,
            "newBillingCycle": cycle,
            "prorationAmount": float(proration),
            "nextBillingDate": _iso(next_billing),
            "message": f"Successfully switched to {cycle} billing",
        }

    async def cancel_subscription(self, user_id: str, immediate: bool = False) -> Dict[str, Any]:
        record = self._open_stripe_record(user_id)
        subscription_id = record.provider_subscription_id
        if immediate:
            await self._gateway.cancel_now(subscription_id)
            cancel_at = datetime.now(timezone.utc)
            self._persistence.update_record(
                record.id,
                status=STATUS_CANCELED,
                tier_id=self._tier_id(FREE_TIER_NAME),
                canceled_at=cancel_at,
                cancel_at_period_end=False,
            )
            message = "Subscription canceled immediately"
        else:
            period_end = await self._gateway.cancel_at_period_end(subscription_id)
            cancel_at = _from_timestamp(period_end) or record.current_period_end
            self._persistence.update_record(record.id, cancel_at_period_end=True)
            message = "Subscription will cancel at the end of the billing period"

        logger.info("User %s canceled %s (immediate=%s)", user_id, subscription_id, immediate)
        return {
            "subscriptionId": subscription_id,
            "cancelAt": _iso(cancel_at),
            "status": STATUS_CANCELED if immediate else record.status,
            "message": message,
        }

    async def request_refund(self, user_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        """
        Refund the latest successful payment of the current subscription.

        The window and the one-refund limit both apply per provider
        subscription, so a user who resubscribes can be refunded again.

        The refund request is stored as ``approved``; the ``charge.refunded``
        webhook completes it and downgrades the record.
        """
        record = self._persistence.get_record_by_user(user_id)
        if not record:
            raise SubscriptionNotFoundError("Subscription not found")
        if record.provider != PROVIDER_STRIPE:
            raise InvalidBillingRequestError("Refunds are only available for card subscriptions")
        subscribed_at = record.subscribed_at or record.created_at
        if datetime.now(timezone.utc) - subscribed_at > timedelta(days=REFUND_WINDOW_DAYS):
            raise InvalidBillingRequestError(
                f"Refund window expired. Refunds are only available within {REFUND_WINDOW_DAYS} days of subscription."
            )
        if self._persistence.get_open_refund_request(record.id, record.provider_subscription_id):
            raise SubscriptionConflictError("Refund already requested for this subscription")
        payment = self._persistence.get_latest_succeeded_transaction(record.id, since=subscribed_at)
        if not payment:
            raise SubscriptionNotFoundError("No successful payment found for this subscription")
        if payment.provider_payment_id.startswith("invoice:"):
            raise InvalidBillingRequestError("This payment cannot be refunded automatically")

        refund_request = self._persistence.create_refund_request(
            subscription_record_id=record.id,
            provider_subscription_id=record.provider_subscription_id,
            transaction_id=payment.id,
            amount=payment.amount,
            reason=reason or "Customer requested refund",
            status=REFUND_APPROVED,
        )
        try:
            refund_id = await self._gateway.create_refund(
                payment.provider_payment_id,
                int(payment.amount * 100),
                {
                    "user_id": user_id,
                    "subscription_record_id": str(record.id),
                    "refund_request_id": str(refund_request.id),
                },
            )
        except PaymentProviderError as exc:
            self._persistence.update_refund_request(refund_request.id, REFUND_REJECTED)
            raise PaymentProviderError(f"Stripe refund failed: {exc.message}", status_code=500) from exc

        self._persistence.update_refund_request(
            refund_request.id, REFUND_APPROVED, provider_refund_id=refund_id
        )
        return {
            "refundId": refund_id,
            "amount": float(payment.amount),
            "status": REFUND_APPROVED,
            "message": "Refund issued. Your subscription will be canceled once the refund settles.",
        }

    def get_entitlement(self, user_id: str) -> Dict[str, Any]:
        record = self._persistence.get_record_by_user(user_id)
        if not record:
            return {
                "userId": user_id,
                "tierId": self._tier_id(FREE_TIER_NAME),
                "status": None,
                "isPremium": False,
                "billingCycle": None,
                "currentPeriodEnd": None,
            }
        premium_tier_id = self._tier_id(PREMIUM_TIER_NAME)
        return {
            "userId": user_id,
            "tierId": record.tier_id,
            "status": record.status,
            "isPremium": record.tier_id == premium_tier_id and record.is_entitled(),
            "billingCycle": record.billing_cycle,
            "currentPeriodEnd": _iso(record.current_period_end),
        }
