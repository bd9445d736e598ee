"""HTTP helpers with retry/backoff for outbound integrations."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

DEFAULT_RETRY_STATUSES = frozenset({429, 500, 502, 503, 504})
AUTH_FAILURE_STATUSES = frozenset({401, 403})

Sleep = Callable[[float], Awaitable[None]]


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential delay for a 0-based attempt, with up to 50% jitter."""
    delay = min(max_delay, base_delay * (2**attempt))
    if delay:
        delay += random.uniform(0, delay / 2)
    return delay


async def request_with_retries(
    request_fn: Callable[[], Awaitable[httpx.Response]],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 4.0,
    retry_statuses: frozenset[int] | set[int] | None = None,
    sleep: Sleep = asyncio.sleep,
) -> httpx.Response:
    """Execute an HTTP request, retrying transport errors and retryable statuses.

    The final response is returned even when its status is retryable;
    the last transport error is re-raised.
    """
    statuses = retry_statuses or DEFAULT_RETRY_STATUSES

    for attempt in range(max_attempts):
        last_attempt = attempt >= max_attempts - 1
        try:
            response = await request_fn()
        except httpx.RequestError as exc:
            if last_attempt:
                raise
            logger.warning("HTTP request failed (attempt %s), retrying", attempt + 1, exc_info=exc)
            await sleep(backoff_delay(attempt, base_delay, max_delay))
            continue

        if response.status_code in statuses and not last_attempt:
            logger.warning(
                "HTTP request returned %s (attempt %s), retrying",
                response.status_code,
                attempt + 1,
            )
            await sleep(backoff_delay(attempt, base_delay, max_delay))
            continue

        return response

    raise RuntimeError("request_with_retries called with max_attempts < 1")
