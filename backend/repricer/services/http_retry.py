"""Outbound HTTP helpers for eBay calls: bounded retry and call spacing."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Optional

import httpx

from repricer.config import settings
from repricer.utils.logger import logger


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def backoff_delay(attempt: int) -> float:
    """Delay before retry number ``attempt`` (1-based): base * 2**(attempt-1), capped."""
    delay = settings.EBAY_RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1))
    return min(delay, settings.EBAY_RETRY_MAX_DELAY_SECONDS)


async def send_with_retry(
    method: str,
    url: str,
    *,
    max_attempts: Optional[int] = None,
    timeout: Optional[float] = None,
    label: str = "ebay",
    **request_kwargs: Any,
) -> httpx.Response:
    """Send one HTTP request with exponential backoff.

    429, 5xx and transport errors (connection reset, timeout) are retried up
    to ``max_attempts`` in total. Other 4xx responses are returned at once.
    When attempts run out the last response is returned, or the last
    transport error is re-raised.
    """

    attempts = max_attempts or settings.EBAY_HTTP_MAX_ATTEMPTS
    request_timeout = timeout or settings.EBAY_REQUEST_TIMEOUT_SECONDS

    last_exc: Optional[httpx.TransportError] = None
    response: Optional[httpx.Response] = None

    for attempt in range(1, attempts + 1):
        try:
            async with httpx.AsyncClient(timeout=request_timeout) as client:
                response = await client.request(method, url, **request_kwargs)
        except httpx.TransportError as exc:
            last_exc = exc
            response = None
            if attempt >= attempts:
                logger.warning(
                    "[%s] %s %s failed after %s attempts: %s",
                    label, method, url, attempts, type(exc).__name__,
                )
                raise
            wait = backoff_delay(attempt)
            logger.info(
                "[%s] transport error %s, retrying in %.2fs (attempt %s/%s)",
                label, type(exc).__name__, wait, attempt, attempts,
            )
            await asyncio.sleep(wait)
            continue

        if not is_retryable_status(response.status_code) or attempt >= attempts:
            return response

        wait = backoff_delay(attempt)
        logger.info(
            "[%s] HTTP %s from %s, retrying in %.2fs (attempt %s/%s)",
            label, response.status_code, url, wait, attempt, attempts,
        )
        await asyncio.sleep(wait)

    # Only reachable with attempts < 1.
    if response is not None:
        return response
    if last_exc is not None:
        raise last_exc
    raise ValueError("max_attempts must be at least 1")


class RequestThrottle:
    """Keep a minimum spacing between calls to one eBay API family in this process."""

    def __init__(self, name: str, min_interval_ms: Optional[int] = None):
        self.name = name
        self._min_interval_ms = min_interval_ms
        self._lock = asyncio.Lock()
        self._last_call: Optional[float] = None

    @property
    def min_interval_seconds(self) -> float:
        interval = self._min_interval_ms
        if interval is None:
            interval = settings.EBAY_API_MIN_INTERVAL_MS
        return max(interval, 0) / 1000.0

    async def wait(self) -> None:
        async with self._lock:
            interval = self.min_interval_seconds
            if self._last_call is not None and interval > 0:
                elapsed = time.monotonic() - self._last_call
                if elapsed < interval:
                    await asyncio.sleep(interval - elapsed)
            self._last_call = time.monotonic()

    def reset(self) -> None:
        self._lock = asyncio.Lock()
        self._last_call = None


browse_throttle = RequestThrottle("browse")
sell_throttle = RequestThrottle("sell")
