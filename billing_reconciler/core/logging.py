import json
import logging
import os
from typing import Any, Optional

OBSERVABILITY_LOGGER = "billing_reconciler.observability"

_observability = logging.getLogger(OBSERVABILITY_LOGGER)


def configure_logging() -> None:
    """Configure structured logging defaults for the application."""
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def emit_outcome(name: str, *, error: Optional[str] = None, **fields: Any) -> None:
    """Publish one processing outcome on the observability channel.

    Webhook and notification handlers acknowledge the sender independently of
    what happened internally; this is where the internal result goes.
    """
    record = {"event": name, **fields}
    if error is not None:
        record["error"] = error
    level = logging.ERROR if error is not None else logging.INFO
    _observability.log(level, json.dumps(record, default=str, sort_keys=True), extra={"outcome": record})
