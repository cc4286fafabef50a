from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(slots=True)
class AppleTransaction:
    id: int
    user_id: str
    transaction_id: str
    original_transaction_id: str
    product_id: str
    purchase_date: datetime
    expiration_date: Optional[datetime]
    notification_type: str
    environment: Optional[str]
    created_at: datetime
