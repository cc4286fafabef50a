from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict


@dataclass(slots=True)
class ProcessedEvent:
    """Idempotency ledger row; ``event_key`` is namespaced as ``source:id``."""

    event_key: str
    event_type: str
    raw_payload: Dict[str, Any]
    processed_at: datetime
