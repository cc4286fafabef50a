from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List

UNLIMITED_ITEMS = -1


@dataclass(slots=True)
class Tier:
    tier_id: str
    name: str
    monthly_price: Decimal
    annual_price: Decimal
    subscription_item_limit: int
    features: List[str] = field(default_factory=list)
    is_active: bool = True

    @property
    def is_unlimited(self) -> bool:
        return self.subscription_item_limit == UNLIMITED_ITEMS
