"""Domain models for the billing reconciliation service."""

from .apple import AppleTransaction
from .ledger import ProcessedEvent
from .payment import PaymentTransaction, RefundRequest
from .subscription import SubscriptionRecord
from .tier import Tier

__all__ = [
    "AppleTransaction",
    "PaymentTransaction",
    "ProcessedEvent",
    "RefundRequest",
    "SubscriptionRecord",
    "Tier",
]
