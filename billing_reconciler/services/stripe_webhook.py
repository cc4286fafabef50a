"""Reconciles signed Stripe webhook events into subscription state."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import stripe

from ..core.config import BillingConfig
from ..core.logging import emit_outcome
from ..domain.catalog import (
    FREE_TIER_NAME,
    PREMIUM_TIER_NAME,
    map_stripe_status,
    normalize_billing_cycle,
)
from ..domain.errors import (
    InvalidBillingRequestError,
    InvalidSignatureError,
    MissingSignatureError,
)
from ..domain.models import SubscriptionRecord
from ..domain.models.payment import TRANSACTION_FAILED, TRANSACTION_SUCCEEDED
from ..domain.models.subscription import (
    PROVIDER_STRIPE,
    STATUS_ACTIVE,
    STATUS_CANCELED,
    STATUS_GRACE_PERIOD,
    STATUS_PAYMENT_FAILED,
)
from ..domain.ports.persistence import PersistenceGateway
from .idempotency import SOURCE_STRIPE, IdempotencyLedger, ledger_key

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], None]


@dataclass(slots=True)
class WebhookOutcome:
    """Result of one webhook delivery; only ``to_response`` reaches the sender."""

    event_id: str
    event_type: str
    outcome: str
    duplicate: bool = False
    error: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        if self.duplicate:
            return {"received": True, "duplicate": True}
        return {"received": True}


def _timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _identifier(value: Any) -> Optional[str]:
    """Expanded Stripe references arrive as objects instead of ids."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _minor_to_major(amount: Optional[int]) -> Decimal:
    return (Decimal(amount or 0) / Decimal(100)).quantize(Decimal("0.01"))


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _subscription_period(subscription: Dict[str, Any]) -> Dict[str, Optional[datetime]]:
    item = _first_item(subscription)
    start = subscription.get("current_period_start") or item.get("current_period_start")
    end = subscription.get("current_period_end") or item.get("current_period_end")
    return {"current_period_start": _timestamp(start), "current_period_end": _timestamp(end)}


def _subscription_cycle(subscription: Dict[str, Any]) -> Optional[str]:
    metadata = subscription.get("metadata") or {}
    cycle = normalize_billing_cycle(metadata.get("billing_cycle"))
    if cycle:
        return cycle
    item = _first_item(subscription)
    recurring = (item.get("price") or {}).get("recurring") or {}
    interval = recurring.get("interval") or (item.get("plan") or {}).get("interval")
    return normalize_billing_cycle(interval)


def _invoice_subscription(invoice: Dict[str, Any]) -> Optional[str]:
    subscription = _identifier(invoice.get("subscription"))
    if subscription:
        return subscription
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _identifier(details.get("subscription"))


def _metadata_user(metadata: Optional[Dict[str, Any]]) -> Optional[str]:
    metadata = metadata or {}
    return metadata.get("user_id") or metadata.get("supabase_user_id")


class StripeWebhookReconciler:
    """Verifies, deduplicates and applies Stripe events.

    Every handler writes ``status`` and ``tier_id`` as concrete target values so
    deliveries that arrive out of order converge on the same record.
    """

    def __init__(
        self,
        persistence: PersistenceGateway,
        ledger: IdempotencyLedger,
        config: BillingConfig,
        tolerance: int = 300,
    ) -> None:
        self._persistence = persistence
        self._ledger = ledger
        self._config = config
        self._tolerance = tolerance
        self._handlers: Dict[str, Handler] = {
            "customer.subscription.created": self._on_subscription_created,
            "customer.subscription.updated": self._on_subscription_updated,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "invoice.payment_succeeded": self._on_invoice_paid,
            "invoice.payment_failed": self._on_invoice_failed,
            "charge.refunded": self._on_charge_refunded,
            "payment_intent.succeeded": self._on_payment_intent_succeeded,
            "payment_intent.payment_failed": self._on_payment_intent_failed,
        }

    def handle(self, payload: bytes, signature: Optional[str]) -> WebhookOutcome:
        event = self._verify(payload, signature)
        event_id = event["id"]
        event_type = event.get("type") or "unknown"
        key = ledger_key(SOURCE_STRIPE, event_id)

        previous = self._ledger.lookup(key)
        if previous:
            logger.info(
                "Stripe event %s already processed at %s, skipping", event_id, previous.processed_at
            )
            outcome = WebhookOutcome(event_id, event_type, "duplicate", duplicate=True)
            emit_outcome(
                "billing.webhook.duplicate",
                event_id=event_id,
                event_type=event_type,
                first_processed_at=previous.processed_at,
            )
            return outcome

        handler = self._handlers.get(event_type)
        outcome = WebhookOutcome(event_id, event_type, "processed")
        try:
            if handler is None:
                logger.info("Ignoring unhandled Stripe event type %s", event_type)
                outcome.outcome = "ignored"
            else:
                logger.info("Processing Stripe event %s (%s)", event_type, event_id)
                handler((event.get("data") or {}).get("object") or {})
        except Exception as exc:
            logger.exception("Stripe event %s (%s) failed", event_id, event_type)
            outcome.outcome = "failed"
            outcome.error = str(exc)

        try:
            self._ledger.mark_processed(key, event_type, event)
        except Exception as exc:
            logger.exception("Unable to record Stripe event %s in the ledger", event_id)
            outcome.error = outcome.error or str(exc)
            outcome.outcome = "failed"

        emit_outcome(
            f"billing.webhook.{outcome.outcome}",
            event_id=event_id,
            event_type=event_type,
            outcome=outcome.outcome,
            error=outcome.error,
        )
        return outcome

    def _verify(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not signature:
            raise MissingSignatureError("Missing Stripe signature")
        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body, signature, self._config.webhook_signing_secret, self._tolerance
            )
        except (UnicodeDecodeError, stripe.SignatureVerificationError) as exc:
            logger.warning("Rejected Stripe webhook with invalid signature: %s", exc)
            raise InvalidSignatureError("Invalid signature") from exc
        try:
            event = json.loads(body)
        except json.JSONDecodeError as exc:
            raise InvalidBillingRequestError("Malformed event payload") from exc
        if not isinstance(event, dict) or not event.get("id"):
            raise InvalidBillingRequestError("Event payload has no id")
        return event

    # Tier lookups -----------------------------------------------------------
    def _tier_id(self, name: str) -> str:
        tier = self._persistence.get_tier_by_name(name)
        if not tier:
            raise LookupError(f"Tier '{name}' is not configured")
        return tier.tier_id

    def _record_for_invoice(
        self, subscription_id: Optional[str], customer_id: Optional[str]
    ) -> Optional[SubscriptionRecord]:
        if subscription_id:
            return self._persistence.get_record_by_provider_subscription(subscription_id)
        if customer_id:
            return self._persistence.get_record_by_customer(customer_id)
        return None

    # Subscription events ----------------------------------------------------
    def _on_subscription_created(self, subscription: Dict[str, Any]) -> None:
        subscription_id = subscription["id"]
        customer_id = _identifier(subscription.get("customer"))
        fields: Dict[str, Any] = {
            "provider": PROVIDER_STRIPE,
            "provider_customer_id": customer_id,
            "provider_subscription_id": subscription_id,
            "status": map_stripe_status(subscription.get("status")),
            "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
            **_subscription_period(subscription),
        }
        cycle = _subscription_cycle(subscription)
        if cycle:
            fields["billing_cycle"] = cycle

        record = self._persistence.get_record_by_provider_subscription(subscription_id)
        if record:
            self._persistence.update_record(record.id, **fields)
            return

        user_id = _metadata_user(subscription.get("metadata"))
        if user_id:
            self._persistence.upsert_record(user_id, **fields)
            logger.info("Linked Stripe subscription %s to user %s", subscription_id, user_id)
            return

        record = self._persistence.get_record_by_customer(customer_id) if customer_id else None
        if not record:
            logger.error("No user id in metadata of Stripe subscription %s", subscription_id)
            return
        self._persistence.update_record(record.id, **fields)

    def _on_subscription_updated(self, subscription: Dict[str, Any]) -> None:
        subscription_id = subscription["id"]
        record = self._persistence.get_record_by_provider_subscription(subscription_id)
        if not record:
            logger.error("No subscription record found for %s", subscription_id)
            return

        provider_status = subscription.get("status")
        fields: Dict[str, Any] = {
            "status": map_stripe_status(provider_status),
            "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
            **_subscription_period(subscription),
        }
        if fields["status"] == STATUS_CANCELED:
            fields["tier_id"] = self._tier_id(FREE_TIER_NAME)
            fields["canceled_at"] = _timestamp(subscription.get("canceled_at")) or datetime.now(timezone.utc)
        cycle = _subscription_cycle(subscription)
        if cycle:
            fields["billing_cycle"] = cycle
        self._persistence.update_record(record.id, **fields)
        logger.info("Subscription %s updated to %s", subscription_id, fields["status"])

    def _on_subscription_deleted(self, subscription: Dict[str, Any]) -> None:
        subscription_id = subscription["id"]
        record = self._persistence.get_record_by_provider_subscription(subscription_id)
        if not record:
            logger.error("No subscription record found for %s", subscription_id)
            return
        self._persistence.update_record(
            record.id,
            status=STATUS_CANCELED,
            tier_id=self._tier_id(FREE_TIER_NAME),
            canceled_at=datetime.now(timezone.utc),
            cancel_at_period_end=False,
        )
        logger.info("Subscription %s deleted, user %s downgraded", subscription_id, record.user_id)

    # Invoice events ---------------------------------------------------------
    def _on_invoice_paid(self, invoice: Dict[str, Any]) -> None:
        invoice_id = invoice["id"]
        subscription_id = _invoice_subscription(invoice)
        record = self._record_for_invoice(subscription_id, _identifier(invoice.get("customer")))
        payment_id = _identifier(invoice.get("payment_intent")) or f"invoice:{invoice_id}"

        _, created = self._persistence.record_transaction(
            subscription_record_id=record.id if record else None,
            provider_payment_id=payment_id,
            provider_invoice_id=invoice_id,
            amount=_minor_to_major(invoice.get("amount_paid")),
            currency=invoice.get("currency") or "usd",
            status=TRANSACTION_SUCCEEDED,
            metadata={
                "billing_reason": invoice.get("billing_reason"),
                "subscription_id": subscription_id,
            },
        )
        if not created:
            logger.info("Payment %s already recorded", payment_id)

        if not subscription_id:
            logger.info("Invoice %s is not associated with a subscription", invoice_id)
            return
        if not record:
            logger.error("No subscription record found for %s", subscription_id)
            return
        self._persistence.update_record(
            record.id, status=STATUS_ACTIVE, tier_id=self._tier_id(PREMIUM_TIER_NAME)
        )
        logger.info("Invoice %s paid, subscription %s active", invoice_id, subscription_id)

    def _on_invoice_failed(self, invoice: Dict[str, Any]) -> None:
        invoice_id = invoice["id"]
        subscription_id = _invoice_subscription(invoice)
        record = self._record_for_invoice(subscription_id, _identifier(invoice.get("customer")))
        payment_id = _identifier(invoice.get("payment_intent")) or f"invoice:{invoice_id}"
        attempt = invoice.get("attempt_count") or 1

        self._persistence.record_transaction(
            subscription_record_id=record.id if record else None,
            provider_payment_id=f"{payment_id}:attempt-{attempt}",
            provider_invoice_id=invoice_id,
            amount=_minor_to_major(invoice.get("amount_due")),
            currency=invoice.get("currency") or "usd",
            status=TRANSACTION_FAILED,
            metadata={
                "attempt_count": attempt,
                "next_payment_attempt": invoice.get("next_payment_attempt"),
                "subscription_id": subscription_id,
            },
        )

        if not subscription_id:
            logger.info("Invoice %s is not associated with a subscription", invoice_id)
            return
        if not record:
            logger.error("No subscription record found for %s", subscription_id)
            return
        self._persistence.update_record(record.id, status=STATUS_GRACE_PERIOD)
        logger.warning("Payment failed for invoice %s, user %s in grace period", invoice_id, record.user_id)

    def _on_charge_refunded(self, charge: Dict[str, Any]) -> None:
        payment_intent = _identifier(charge.get("payment_intent"))
        invoice_id = _identifier(charge.get("invoice"))
        transaction = None
        if payment_intent:
            transaction = self._persistence.get_transaction_by_payment_id(payment_intent)
        if not transaction and invoice_id:
            transaction = self._persistence.get_transaction_by_invoice(invoice_id)
        if not transaction:
            logger.warning("No transaction found for refunded charge %s", charge.get("id"))
            return

        self._persistence.mark_transaction_refunded(transaction.id)
        if transaction.subscription_record_id is None:
            logger.info("Refunded transaction %s has no subscription record", transaction.id)
            return

        refunds = (charge.get("refunds") or {}).get("data") or []
        refund_id = refunds[0].get("id") if refunds else None
        completed = self._persistence.complete_approved_refunds(
            transaction.subscription_record_id, refund_id
        )
        self._persistence.update_record(
            transaction.subscription_record_id,
            status=STATUS_CANCELED,
            tier_id=self._tier_id(FREE_TIER_NAME),
            canceled_at=datetime.now(timezone.utc),
        )
        logger.info(
            "Charge %s refunded, %d refund request(s) completed", charge.get("id"), completed
        )

    # Payment intent events --------------------------------------------------
    def _on_payment_intent_succeeded(self, intent: Dict[str, Any]) -> None:
        metadata = intent.get("metadata") or {}
        user_id = _metadata_user(metadata)
        if not user_id:
            logger.info("Payment intent %s carries no user id", intent.get("id"))
            return
        record = self._persistence.get_record_by_user(user_id)
        if not record:
            logger.warning("No subscription record for user %s on payment intent %s", user_id, intent.get("id"))
            return
        requested = metadata.get("tier") or PREMIUM_TIER_NAME
        tier = self._persistence.get_tier_by_name(requested)
        if tier:
            tier_id = tier.tier_id
        else:
            logger.warning(
                "Payment intent %s names unknown tier %r, granting %s",
                intent.get("id"),
                requested,
                PREMIUM_TIER_NAME,
            )
            tier_id = self._tier_id(PREMIUM_TIER_NAME)
        self._persistence.update_record(record.id, status=STATUS_ACTIVE, tier_id=tier_id)
        logger.info("Payment intent %s succeeded, user %s on %s", intent.get("id"), user_id, tier_id)

    def _on_payment_intent_failed(self, intent: Dict[str, Any]) -> None:
        user_id = _metadata_user(intent.get("metadata"))
        record = self._persistence.get_record_by_user(user_id) if user_id else None
        if not record:
            customer_id = _identifier(intent.get("customer"))
            record = self._persistence.get_record_by_customer(customer_id) if customer_id else None
        if not record:
            logger.warning("No subscription record for failed payment intent %s", intent.get("id"))
            return
        self._persistence.update_record(record.id, status=STATUS_PAYMENT_FAILED)
        logger.warning("Payment intent %s failed for user %s", intent.get("id"), record.user_id)
