"""Single duplicate-detection interface shared by the Stripe and Apple paths."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from ..domain.models import ProcessedEvent
from ..domain.ports.persistence import ProcessedEventRepository

logger = logging.getLogger(__name__)

SOURCE_STRIPE = "stripe"
SOURCE_APPLE = "apple"
SOURCE_APPLE_NOTIFICATION = "apple-notification"


def ledger_key(source: str, identifier: str) -> str:
    """Namespace a provider identifier so two sources can never collide."""
    if not identifier:
        raise ValueError("Idempotency key requires a non-empty identifier.")
    return f"{source}:{identifier}"


class IdempotencyLedger:
    """Durable record of event and transaction identifiers already applied."""

    def __init__(self, repository: ProcessedEventRepository) -> None:
        self._repository = repository

    def has_processed(self, key: str) -> bool:
        return self._repository.has_processed_event(key)

    def lookup(self, key: str) -> Optional[ProcessedEvent]:
        """Return the ledger row for ``key``, including when it was first applied."""
        return self._repository.get_processed_event(key)

    def mark_processed(
        self,
        key: str,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Record ``key``; returns False when another delivery already recorded it."""
        inserted = self._repository.record_processed_event(key, event_type, payload or {})
        if not inserted:
            logger.info("Ledger key %s was already recorded", key)
        return inserted
