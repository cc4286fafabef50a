"""Stripe payment integration used by the subscription lifecycle endpoints."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, Optional, TypeVar

import stripe

from ..core.config import BillingConfig
from ..domain.errors import PaymentProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def idempotency_key(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _period_end(subscription: Any) -> Optional[int]:
    """Period bounds moved from the subscription onto its items in newer API versions."""
    value = _field(subscription, "current_period_end")
    if value:
        return value
    items = _field(_field(subscription, "items"), "data") or []
    return _field(items[0], "current_period_end") if items else None


class StripeGateway:
    """Async facade over the synchronous ``stripe`` SDK."""

    def __init__(self, config: BillingConfig) -> None:
        self._config = config
        stripe.api_key = config.provider_secret_key

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(func)
        except stripe.CardError as exc:
            logger.warning("Stripe card error during %s: %s", operation, exc.user_message or exc)
            raise PaymentProviderError(exc.user_message or str(exc), status_code=402) from exc
        except stripe.InvalidRequestError as exc:
            logger.warning("Stripe rejected %s: %s", operation, exc)
            raise PaymentProviderError(exc.user_message or str(exc), status_code=400) from exc
        except stripe.StripeError as exc:
            logger.error("Stripe call %s failed: %s", operation, exc)
            raise PaymentProviderError(f"Payment provider error during {operation}.") from exc

    async def create_customer(self, email: Optional[str], user_id: str) -> str:
        customer = await self._call(
            "customer creation",
            lambda: stripe.Customer.create(
                email=email,
                metadata={"user_id": user_id},
                idempotency_key=idempotency_key(f"customer_{user_id}"),
            ),
        )
        logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
        return customer.id

    async def create_subscription(
        self, customer_id: str, user_id: str, billing_cycle: str
    ) -> Dict[str, Any]:
        """Create an incomplete subscription whose first invoice the client confirms."""
        price_id = self._config.price_id_for(billing_cycle)
        subscription = await self._call(
            "subscription creation",
            lambda: stripe.Subscription.create(
                customer=customer_id,
                items=[{"price": price_id}],
                payment_behavior="default_incomplete",
                payment_settings={"save_default_payment_method": "on_subscription"},
                expand=["latest_invoice.payment_intent"],
                metadata={"user_id": user_id, "billing_cycle": billing_cycle},
                idempotency_key=idempotency_key(f"subscription_{user_id}"),
            ),
        )
        invoice = _field(subscription, "latest_invoice")
        payment_intent = _field(invoice, "payment_intent")
        return {
            "id": subscription.id,
            "status": subscription.status,
            "client_secret": _field(payment_intent, "client_secret"),
            "current_period_end": _period_end(subscription),
        }

    async def switch_price(self, subscription_id: str, billing_cycle: str) -> Dict[str, Any]:
        """Move the subscription's single item onto the price of ``billing_cycle``."""
        price_id = self._config.price_id_for(billing_cycle)

        def _switch() -> Dict[str, Any]:
            current = stripe.Subscription.retrieve(subscription_id)
            item_id = current["items"]["data"][0]["id"]
            updated = stripe.Subscription.modify(
                subscription_id,
                items=[{"id": item_id, "price": price_id}],
                proration_behavior="always_invoice",
                metadata={"billing_cycle": billing_cycle},
            )
            preview = stripe.Invoice.create_preview(
                customer=current.customer,
                subscription=subscription_id,
            )
            return {
                "id": updated.id,
                "proration_total": preview.total,
                "current_period_end": _period_end(updated),
            }

        return await self._call("billing cycle switch", _switch)

    async def cancel_now(self, subscription_id: str) -> None:
        await self._call("subscription cancel", lambda: stripe.Subscription.cancel(subscription_id))

    async def cancel_at_period_end(self, subscription_id: str) -> Optional[int]:
        subscription = await self._call(
            "subscription cancel",
            lambda: stripe.Subscription.modify(subscription_id, cancel_at_period_end=True),
        )
        return _period_end(subscription)

    async def create_refund(
        self, payment_intent_id: str, amount_cents: int, metadata: Dict[str, str]
    ) -> str:
        refund = await self._call(
            "refund",
            lambda: stripe.Refund.create(
                payment_intent=payment_intent_id,
                amount=amount_cents,
                reason="requested_by_customer",
                metadata=metadata,
            ),
        )
        logger.info("Issued Stripe refund %s for payment %s", refund.id, payment_intent_id)
        return refund.id
