"""Client-side confirmation loop run right after a purchase is authorized.

The webhook or receipt path updates entitlement asynchronously. The poller
re-reads the entitlement endpoint a bounded number of times and reports whether
premium access showed up inside that window. Not seeing it is a normal
outcome: callers should tell the user the upgrade is still processing.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 7
POLL_INTERVAL = 1.5

EntitlementSource = Callable[[], Awaitable[bool]]


@dataclass(slots=True)
class PollResult:
    confirmed: bool
    attempts: int
    elapsed: float


class HttpEntitlementSource:
    """Reads ``isPremium`` from the entitlement endpoint, bypassing caches."""

    def __init__(
        self,
        base_url: str,
        access_token: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 5.0,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/api/billing/entitlement"
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "Cache-Control": "no-cache",
            "Pragma": "no-cache",
        }
        self._client = client
        self._timeout = timeout

    async def __call__(self) -> bool:
        if self._client is not None:
            response = await self._client.get(self._url, headers=self._headers, timeout=self._timeout)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(self._url, headers=self._headers)
        response.raise_for_status()
        body = response.json()
        return isinstance(body, dict) and bool(body.get("isPremium"))


class EntitlementPoller:
    """Polls an entitlement source until premium shows up or the time budget is spent.

    The budget is ``max_attempts * interval`` seconds. Each attempt gets at most
    the time left in that budget, so a hung request cannot stretch the window.
    """

    def __init__(
        self,
        source: EntitlementSource,
        max_attempts: int = MAX_ATTEMPTS,
        interval: float = POLL_INTERVAL,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._source = source
        self._max_attempts = max_attempts
        self._interval = interval
        self._budget = max_attempts * interval
        self._sleep = sleep
        self._clock = clock

    async def wait_for_premium(self) -> PollResult:
        started = self._clock()
        deadline = started + self._budget
        attempts = 0
        while attempts < self._max_attempts:
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            attempts += 1
            try:
                confirmed = await asyncio.wait_for(self._source(), timeout=remaining)
            except Exception as exc:
                logger.warning(
                    "Entitlement poll attempt %d/%d failed: %r", attempts, self._max_attempts, exc
                )
                confirmed = False
            if confirmed:
                logger.info("Premium status confirmed on attempt %d", attempts)
                return PollResult(True, attempts, self._clock() - started)
            # No wait after the final attempt.
            if attempts < self._max_attempts:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    break
                await self._sleep(min(self._interval, remaining))

        elapsed = self._clock() - started
        logger.info("Premium status not confirmed after %d attempts (%.1fs)", attempts, elapsed)
        return PollResult(False, attempts, elapsed)
