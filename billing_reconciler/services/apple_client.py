"""HTTP client for Apple's legacy ``verifyReceipt`` endpoint."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

PRODUCTION_URL = "https://buy.itunes.apple.com/verifyReceipt"
SANDBOX_URL = "https://sandbox.itunes.apple.com/verifyReceipt"


class AppleVerificationError(Exception):
    """Raised when Apple cannot be reached or answers with a non-2xx response."""


class AppleReceiptClient:
    """Posts receipts to Apple over one pooled ``httpx.AsyncClient``.

    The pool is shared by every request; call ``close`` on shutdown.
    """

    def __init__(
        self,
        shared_secret: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._shared_secret = shared_secret
        self._timeout = httpx.Timeout(timeout, connect=5.0)
        self._client = client or httpx.AsyncClient(timeout=self._timeout)

    async def verify(self, receipt_data: str, production: bool = True) -> Dict[str, Any]:
        url = PRODUCTION_URL if production else SANDBOX_URL
        body = {
            "receipt-data": receipt_data,
            "password": self._shared_secret,
            "exclude-old-transactions": True,
        }
        started = time.monotonic()
        try:
            response = await self._client.post(url, json=body, timeout=self._timeout)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error("Apple verifyReceipt returned %d", exc.response.status_code)
            raise AppleVerificationError(f"Apple API request failed: {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            logger.error("Cannot reach Apple verifyReceipt at %s: %s", url, exc)
            raise AppleVerificationError("Apple API request failed") from exc
        except ValueError as exc:
            raise AppleVerificationError("Apple API returned a non-JSON body") from exc

        logger.info(
            "Apple %s verifyReceipt answered status %s in %.0fms",
            "production" if production else "sandbox",
            payload.get("status"),
            (time.monotonic() - started) * 1000,
        )
        return payload

    async def close(self) -> None:
        await self._client.aclose()
