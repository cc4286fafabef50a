"""Server-side validation of App Store receipts."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Dict, List, Optional

from ..core.config import BillingConfig
from ..domain.catalog import billing_cycle_for_product, tier_name_for_product
from ..domain.errors import BillingError
from ..domain.models.subscription import PROVIDER_APPLE, STATUS_ACTIVE
from ..domain.ports.persistence import PersistenceGateway
from .apple_client import AppleReceiptClient, AppleVerificationError
from .idempotency import SOURCE_APPLE, IdempotencyLedger, ledger_key

logger = logging.getLogger(__name__)

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")

NOTIFICATION_PURCHASE = "PURCHASE"


class ReceiptStatus(IntEnum):
    VALID = 0
    MALFORMED = 21002
    NOT_AUTHENTICATED = 21003
    SHARED_SECRET_MISMATCH = 21004
    SERVER_UNAVAILABLE = 21005
    SUBSCRIPTION_EXPIRED = 21006
    SANDBOX_RECEIPT_IN_PRODUCTION = 21007
    PRODUCTION_RECEIPT_IN_SANDBOX = 21008
    INTERNAL_ERROR = 21009
    ACCOUNT_NOT_FOUND = 21010


_STATUS_MESSAGES: Dict[int, str] = {
    ReceiptStatus.MALFORMED: "Receipt data is malformed or corrupted (21002)",
    ReceiptStatus.NOT_AUTHENTICATED: "Receipt could not be authenticated (21003)",
    ReceiptStatus.SHARED_SECRET_MISMATCH: "Shared secret does not match (21004)",
    ReceiptStatus.SERVER_UNAVAILABLE: "Apple receipt server is temporarily unavailable (21005)",
    ReceiptStatus.SUBSCRIPTION_EXPIRED: "Subscription has expired (21006)",
    ReceiptStatus.INTERNAL_ERROR: "Apple internal error (21009)",
    ReceiptStatus.ACCOUNT_NOT_FOUND: "Account not found (21010)",
}

# Only these two are transient on Apple's side.
RETRYABLE_STATUSES = frozenset({ReceiptStatus.SERVER_UNAVAILABLE, ReceiptStatus.INTERNAL_ERROR})


def describe_status(status: int) -> str:
    return _STATUS_MESSAGES.get(status, f"Unknown receipt validation error (status: {status})")


class ReceiptRejectedError(BillingError):
    """A receipt could not be turned into an entitlement."""

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        apple_status: Optional[int] = None,
        should_retry: Optional[bool] = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.apple_status = apple_status
        self.should_retry = should_retry

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "error": self.message}
        if self.apple_status is not None:
            body["status"] = self.apple_status
        if self.should_retry is not None:
            body["shouldRetry"] = self.should_retry
        return body


@dataclass(slots=True)
class ReceiptValidationResult:
    tier: str
    product_id: str
    transaction_id: str
    original_transaction_id: str
    purchase_date: datetime
    expiration_date: Optional[datetime]
    environment: Optional[str]
    already_processed: bool = False

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": True,
            "subscription": {
                "tier": self.tier,
                "productId": self.product_id,
                "transactionId": self.transaction_id,
                "originalTransactionId": self.original_transaction_id,
                "purchaseDate": self.purchase_date.isoformat(),
                "expirationDate": self.expiration_date.isoformat() if self.expiration_date else None,
                "environment": self.environment,
            },
        }
        if self.already_processed:
            body["alreadyProcessed"] = True
        return body


def _from_ms(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def select_active_purchase(
    purchases: List[Dict[str, Any]], now: Optional[datetime] = None
) -> Optional[Dict[str, Any]]:
    """Return the purchase expiring last among those not yet expired."""
    now_ms = int((now or datetime.now(timezone.utc)).timestamp() * 1000)
    active = [p for p in purchases if int(p.get("expires_date_ms") or 0) > now_ms]
    if not active:
        return None
    return max(active, key=lambda p: int(p["expires_date_ms"]))


class AppleReceiptValidator:
    """Verifies a receipt with Apple and grants the matching entitlement."""

    def __init__(
        self,
        persistence: PersistenceGateway,
        ledger: IdempotencyLedger,
        client: AppleReceiptClient,
        config: BillingConfig,
    ) -> None:
        self._persistence = persistence
        self._ledger = ledger
        self._client = client
        self._config = config

    async def validate(self, receipt_data: Optional[str], user_id: Optional[str]) -> ReceiptValidationResult:
        self._check_format(receipt_data, user_id)
        response = await self._verify(receipt_data)

        status = response.get("status")
        if status != ReceiptStatus.VALID:
            should_retry = status in RETRYABLE_STATUSES
            logger.error("Apple rejected receipt for user %s with status %s", user_id, status)
            raise ReceiptRejectedError(
                describe_status(status),
                apple_status=status,
                should_retry=should_retry,
            )

        receipt = response.get("receipt") or {}
        if receipt.get("bundle_id") != self._config.bundle_id:
            logger.error("Receipt bundle id %s does not match", receipt.get("bundle_id"))
            raise ReceiptRejectedError("Receipt bundle ID does not match app")

        purchases = response.get("latest_receipt_info") or receipt.get("in_app") or []
        if not purchases:
            raise ReceiptRejectedError("No purchase information found in receipt")
        purchase = select_active_purchase(purchases)
        if not purchase:
            raise ReceiptRejectedError("No active subscription found in receipt")

        product_id = purchase["product_id"]
        tier = self._persistence.get_tier_by_name(tier_name_for_product(product_id))
        tier_id = tier.tier_id if tier else tier_name_for_product(product_id)
        result = ReceiptValidationResult(
            tier=tier_id,
            product_id=product_id,
            transaction_id=purchase["transaction_id"],
            original_transaction_id=purchase["original_transaction_id"],
            purchase_date=_from_ms(purchase.get("purchase_date_ms")) or datetime.now(timezone.utc),
            expiration_date=_from_ms(purchase.get("expires_date_ms")),
            environment=response.get("environment"),
        )

        key = ledger_key(SOURCE_APPLE, result.transaction_id)
        if self._ledger.has_processed(key):
            logger.info("Apple transaction %s already processed", result.transaction_id)
            result.already_processed = True
            return result

        self._apply(user_id, result)
        self._ledger.mark_processed(
            key,
            "apple.receipt",
            {
                "user_id": user_id,
                "product_id": product_id,
                "original_transaction_id": result.original_transaction_id,
                "environment": result.environment,
            },
        )
        logger.info("Apple receipt validated for user %s (%s)", user_id, product_id)
        return result

    @staticmethod
    def _check_format(receipt_data: Optional[str], user_id: Optional[str]) -> None:
        if not receipt_data or not user_id:
            raise ReceiptRejectedError("Missing required fields: receiptData and userId")
        if receipt_data.startswith("eyJ"):
            raise ReceiptRejectedError(
                "Invalid receipt format: JWS tokens are not supported. Please send base64 encoded receipt."
            )
        if not _BASE64_RE.match(receipt_data):
            raise ReceiptRejectedError("Invalid receipt format: not valid base64 encoded data")

    async def _verify(self, receipt_data: str) -> Dict[str, Any]:
        try:
            response = await self._client.verify(receipt_data, production=True)
            if response.get("status") == ReceiptStatus.SANDBOX_RECEIPT_IN_PRODUCTION:
                logger.info("Sandbox receipt detected, retrying against the sandbox endpoint")
                response = await self._client.verify(receipt_data, production=False)
        except AppleVerificationError as exc:
            raise ReceiptRejectedError("Failed to validate receipt with Apple", status_code=500) from exc
        return response

    def _apply(self, user_id: str, result: ReceiptValidationResult) -> None:
        inserted = self._persistence.record_apple_transaction(
            user_id=user_id,
            transaction_id=result.transaction_id,
            original_transaction_id=result.original_transaction_id,
            product_id=result.product_id,
            purchase_date=result.purchase_date,
            expiration_date=result.expiration_date,
            notification_type=NOTIFICATION_PURCHASE,
            environment=result.environment,
        )
        if not inserted:
            logger.warning(
                "Audit row for Apple transaction %s already existed; retrying entitlement update",
                result.transaction_id,
            )
        try:
            self._persistence.upsert_record(
                user_id,
                tier_id=result.tier,
                status=STATUS_ACTIVE,
                provider=PROVIDER_APPLE,
                provider_subscription_id=result.original_transaction_id,
                product_id=result.product_id,
                billing_cycle=billing_cycle_for_product(result.product_id),
                current_period_start=result.purchase_date,
                current_period_end=result.expiration_date,
                cancel_at_period_end=False,
                canceled_at=None,
            )
        except Exception as exc:
            logger.exception("Failed to update subscription for user %s", user_id)
            raise ReceiptRejectedError(
                "Failed to update user subscription status", status_code=500
            ) from exc
