from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

TRANSACTION_SUCCEEDED = "succeeded"
TRANSACTION_FAILED = "failed"
TRANSACTION_REFUNDED = "refunded"

REFUND_PENDING = "pending"
REFUND_APPROVED = "approved"
REFUND_REJECTED = "rejected"
REFUND_COMPLETED = "completed"


@dataclass(slots=True)
class PaymentTransaction:
    id: int
    subscription_record_id: Optional[int]
    provider_payment_id: str
    provider_invoice_id: Optional[str]
    amount: Decimal
    currency: str
    status: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None


@dataclass(slots=True)
class RefundRequest:
    id: int
    subscription_record_id: int
    provider_subscription_id: Optional[str]
    transaction_id: Optional[int]
    amount: Decimal
    reason: str
    status: str
    provider_refund_id: Optional[str]
    processed_at: Optional[datetime]
    created_at: datetime
