from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from ..models import (
    AppleTransaction,
    PaymentTransaction,
    ProcessedEvent,
    RefundRequest,
    SubscriptionRecord,
    Tier,
)


class TierRepository(Protocol):
    """Read access to the tier catalog plus startup seeding."""

    def seed_tiers(self, tiers: Iterable[Tier]) -> None:
        ...

    def get_tier(self, tier_id: str) -> Optional[Tier]:
        ...

    def get_tier_by_name(self, name: str) -> Optional[Tier]:
        ...


class SubscriptionRecordRepository(Protocol):
    """Storage for the single subscription record owned by each user."""

    def get_record_by_id(self, record_id: int) -> Optional[SubscriptionRecord]:
        ...

    def get_record_by_user(self, user_id: str) -> Optional[SubscriptionRecord]:
        ...

    def get_record_by_provider_subscription(
        self, provider_subscription_id: str
    ) -> Optional[SubscriptionRecord]:
        ...

    def get_record_by_customer(self, provider_customer_id: str) -> Optional[SubscriptionRecord]:
        ...

    def upsert_record(self, user_id: str, **fields: Any) -> SubscriptionRecord:
        ...

    def update_record(self, record_id: int, **fields: Any) -> SubscriptionRecord:
        ...


class PaymentTransactionRepository(Protocol):
    """Append-only log of charge attempts."""

    def record_transaction(
        self,
        subscription_record_id: Optional[int],
        provider_payment_id: str,
        provider_invoice_id: Optional[str],
        amount: Decimal,
        currency: str,
        status: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[PaymentTransaction, bool]:
        ...

    def get_transaction_by_payment_id(self, provider_payment_id: str) -> Optional[PaymentTransaction]:
        ...

    def get_transaction_by_invoice(self, provider_invoice_id: str) -> Optional[PaymentTransaction]:
        ...

    def get_latest_succeeded_transaction(
        self, subscription_record_id: int, since: Optional[datetime] = None
    ) -> Optional[PaymentTransaction]:
        ...

    def list_transactions(self, subscription_record_id: Optional[int] = None) -> List[PaymentTransaction]:
        ...

    def mark_transaction_refunded(self, transaction_id: int) -> None:
        ...


class ProcessedEventRepository(Protocol):
    """Durable set of already-applied event keys."""

    def has_processed_event(self, event_key: str) -> bool:
        ...

    def get_processed_event(self, event_key: str) -> Optional[ProcessedEvent]:
        ...

    def record_processed_event(
        self, event_key: str, event_type: str, raw_payload: Dict[str, Any]
    ) -> bool:
        ...

    def count_processed_events(self) -> int:
        ...


class AppleTransactionRepository(Protocol):
    """Audit trail of Apple transactions seen by the receipt and notification paths."""

    def record_apple_transaction(
        self,
        user_id: str,
        transaction_id: str,
        original_transaction_id: str,
        product_id: str,
        purchase_date: datetime,
        expiration_date: Optional[datetime],
        notification_type: str,
        environment: Optional[str] = None,
    ) -> bool:
        ...

    def get_apple_transaction(self, transaction_id: str) -> Optional[AppleTransaction]:
        ...

    def find_user_by_original_transaction(self, original_transaction_id: str) -> Optional[str]:
        ...


class RefundRequestRepository(Protocol):
    """Refund requests raised by users and settled by the refund webhook."""

    def create_refund_request(
        self,
        subscription_record_id: int,
        provider_subscription_id: Optional[str],
        transaction_id: Optional[int],
        amount: Decimal,
        reason: str,
        status: str,
    ) -> RefundRequest:
        ...

    def get_open_refund_request(
        self, subscription_record_id: int, provider_subscription_id: Optional[str]
    ) -> Optional[RefundRequest]:
        ...

    def update_refund_request(
        self,
        refund_request_id: int,
        status: str,
        provider_refund_id: Optional[str] = None,
    ) -> None:
        ...

    def complete_approved_refunds(
        self, subscription_record_id: int, provider_refund_id: Optional[str]
    ) -> int:
        ...


class PersistenceGateway(
    TierRepository,
    SubscriptionRecordRepository,
    PaymentTransactionRepository,
    ProcessedEventRepository,
    AppleTransactionRepository,
    RefundRequestRepository,
    Protocol,
):
    """Composite gateway combining every persistence concern used by the service."""

    pass
