"""
Readiness barrier: poll an HTTP endpoint until it answers 2xx.

Polling runs on a fixed interval with no backoff. The dependency is expected
to come up within a few seconds, and a predictable cadence keeps the worst
case easy to reason about. The only way to stop a poll is its own timeout.
"""
from __future__ import annotations

import asyncio
import time
from typing import Optional

import httpx
import structlog

from ..core.exceptions import HealthCheckTimeoutError

logger = structlog.get_logger(__name__)

DEFAULT_INTERVAL = 0.5
DEFAULT_REQUEST_TIMEOUT = 2.0


class HealthGate:
    """
    Usage:
        gate = HealthGate()
        await gate.poll("http://127.0.0.1:3401/health", timeout=20.0)
    """

    def __init__(
        self,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.request_timeout = request_timeout
        self._transport = transport
        self.attempts = 0

    async def _attempt(self, client: httpx.AsyncClient, url: str) -> bool:
        self.attempts += 1
        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            # Connection refused, per-attempt timeout, protocol errors
            logger.debug("health_attempt_failed", url=url, attempt=self.attempts, error=type(e).__name__)
            return False
        if response.is_success:
            return True
        logger.debug("health_attempt_not_ready", url=url, attempt=self.attempts, status=response.status_code)
        return False

    async def poll(self, url: str, timeout: float, interval: float = DEFAULT_INTERVAL) -> bool:
        """
        Returns:
            True as soon as one attempt gets a 2xx response

        Raises:
            HealthCheckTimeoutError: no success within ``timeout`` seconds
        """
        self.attempts = 0
        started = time.monotonic()
        logger.info("health_wait_started", url=url, timeout=timeout, interval=interval)

        async with httpx.AsyncClient(timeout=self.request_timeout, transport=self._transport) as client:
            while True:
                elapsed = time.monotonic() - started
                if elapsed > timeout:
                    logger.error("health_check_timed_out", url=url, attempts=self.attempts, elapsed=round(elapsed, 3))
                    raise HealthCheckTimeoutError(url, elapsed, self.attempts)

                if await self._attempt(client, url):
                    elapsed = time.monotonic() - started
                    logger.info("health_check_passed", url=url, attempts=self.attempts, elapsed=round(elapsed, 3))
                    return True

                await asyncio.sleep(interval)


__all__ = ["HealthGate", "DEFAULT_INTERVAL", "DEFAULT_REQUEST_TIMEOUT"]
