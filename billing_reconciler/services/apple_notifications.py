"""App Store Server Notifications (V2) handling."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..core.config import BillingConfig
from ..core.logging import emit_outcome
from ..domain.catalog import FREE_TIER_NAME, billing_cycle_for_product, tier_name_for_product
from ..domain.errors import InvalidBillingRequestError
from ..domain.models.subscription import (
    PROVIDER_APPLE,
    STATUS_ACTIVE,
    STATUS_CANCELED,
    STATUS_PAST_DUE,
)
from ..domain.ports.persistence import PersistenceGateway
from .apple_jws import SignedPayloadVerifier
from .idempotency import SOURCE_APPLE_NOTIFICATION, IdempotencyLedger, ledger_key

logger = logging.getLogger(__name__)

SUBSCRIBED = "SUBSCRIBED"
DID_RENEW = "DID_RENEW"
DID_FAIL_TO_RENEW = "DID_FAIL_TO_RENEW"
DID_CHANGE_RENEWAL_STATUS = "DID_CHANGE_RENEWAL_STATUS"
EXPIRED = "EXPIRED"
GRACE_PERIOD_EXPIRED = "GRACE_PERIOD_EXPIRED"
REFUND = "REFUND"
REVOKED = "REVOKED"

_DOWNGRADE_TYPES = (EXPIRED, GRACE_PERIOD_EXPIRED, REFUND, REVOKED)


def _from_ms(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


@dataclass(slots=True)
class NotificationOutcome:
    notification_id: str
    notification_type: str
    outcome: str
    duplicate: bool = False
    error: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        if self.duplicate:
            return {"received": True, "duplicate": True}
        return {"received": True}


class AppleNotificationProcessor:
    """Applies App Store lifecycle notifications to the subscription record.

    Every signed payload goes through ``verifier`` first; a notification whose
    signature does not check out is rejected before the ledger is touched.
    """

    def __init__(
        self,
        persistence: PersistenceGateway,
        ledger: IdempotencyLedger,
        config: BillingConfig,
        verifier: SignedPayloadVerifier,
    ) -> None:
        self._persistence = persistence
        self._ledger = ledger
        self._config = config
        self._verifier = verifier

    def handle(self, signed_payload: Optional[str]) -> NotificationOutcome:
        if not signed_payload:
            raise InvalidBillingRequestError("Missing signedPayload")
        payload = self._verifier.verify(signed_payload)
        notification_id = payload.get("notificationUUID")
        notification_type = payload.get("notificationType") or "UNKNOWN"
        data = payload.get("data") or {}
        if not notification_id:
            raise InvalidBillingRequestError("Notification has no notificationUUID")
        if data.get("bundleId") != self._config.bundle_id:
            logger.error("Notification bundle id %s does not match", data.get("bundleId"))
            raise InvalidBillingRequestError("Notification bundle ID does not match app")

        key = ledger_key(SOURCE_APPLE_NOTIFICATION, notification_id)
        previous = self._ledger.lookup(key)
        if previous:
            logger.info(
                "Apple notification %s already processed at %s", notification_id, previous.processed_at
            )
            emit_outcome(
                "billing.apple_notification.duplicate",
                event_id=notification_id,
                event_type=notification_type,
                first_processed_at=previous.processed_at,
            )
            return NotificationOutcome(notification_id, notification_type, "duplicate", duplicate=True)

        outcome = NotificationOutcome(notification_id, notification_type, "processed")
        try:
            self._apply(notification_type, data)
        except Exception as exc:
            logger.exception("Apple notification %s (%s) failed", notification_id, notification_type)
            outcome.outcome = "failed"
            outcome.error = str(exc)

        try:
            self._ledger.mark_processed(key, notification_type, payload)
        except Exception as exc:
            logger.exception("Unable to record Apple notification %s in the ledger", notification_id)
            outcome.outcome = "failed"
            outcome.error = outcome.error or str(exc)

        emit_outcome(
            f"billing.apple_notification.{outcome.outcome}",
            event_id=notification_id,
            event_type=notification_type,
            subtype=payload.get("subtype"),
            outcome=outcome.outcome,
            error=outcome.error,
        )
        return outcome

    def _apply(self, notification_type: str, data: Dict[str, Any]) -> None:
        signed_transaction = data.get("signedTransactionInfo")
        if not signed_transaction:
            raise ValueError("Notification carries no transaction info")
        transaction = self._verifier.verify(signed_transaction)
        renewal = (
            self._verifier.verify(data["signedRenewalInfo"]) if data.get("signedRenewalInfo") else None
        )

        original_id = str(transaction["originalTransactionId"])
        user_id = self._persistence.find_user_by_original_transaction(original_id)
        if not user_id:
            raise LookupError(f"User not found for transaction {original_id}")

        product_id = transaction.get("productId") or ""
        expires = _from_ms(transaction.get("expiresDate"))
        self._persistence.record_apple_transaction(
            user_id=user_id,
            transaction_id=str(transaction["transactionId"]),
            original_transaction_id=original_id,
            product_id=product_id,
            purchase_date=_from_ms(transaction.get("purchaseDate")) or datetime.now(timezone.utc),
            expiration_date=expires,
            notification_type=notification_type,
            environment=data.get("environment"),
        )

        if notification_type in (SUBSCRIBED, DID_RENEW):
            tier = self._persistence.get_tier_by_name(tier_name_for_product(product_id))
            self._persistence.upsert_record(
                user_id,
                tier_id=tier.tier_id if tier else tier_name_for_product(product_id),
                status=STATUS_ACTIVE,
                provider=PROVIDER_APPLE,
                provider_subscription_id=original_id,
                product_id=product_id,
                billing_cycle=billing_cycle_for_product(product_id),
                current_period_end=expires,
                cancel_at_period_end=False,
                canceled_at=None,
            )
        elif notification_type == DID_FAIL_TO_RENEW:
            self._persistence.upsert_record(user_id, status=STATUS_PAST_DUE)
        elif notification_type == DID_CHANGE_RENEWAL_STATUS:
            if renewal is None:
                logger.info("Renewal status change for %s without renewal info", original_id)
                return
            will_renew = renewal.get("autoRenewStatus") == 1
            self._persistence.upsert_record(
                user_id,
                cancel_at_period_end=not will_renew,
                canceled_at=None if will_renew else datetime.now(timezone.utc),
            )
        elif notification_type in _DOWNGRADE_TYPES:
            free = self._persistence.get_tier_by_name(FREE_TIER_NAME)
            self._persistence.upsert_record(
                user_id,
                tier_id=free.tier_id if free else FREE_TIER_NAME,
                status=STATUS_CANCELED,
                canceled_at=datetime.now(timezone.utc),
                cancel_at_period_end=False,
            )
        else:
            logger.info("Ignoring Apple notification type %s", notification_type)
            return
        logger.info("Apple %s applied for user %s", notification_type, user_id)
