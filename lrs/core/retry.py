"""Bounded exponential backoff for storage operations.

Attempt ``n`` (0-based) that fails with a transient error sleeps
``base_delay_ms * 2**n + uniform(0, jitter_ms)`` milliseconds before the
next try.  After ``max_attempts`` tries the last error is re-raised.

Errors whose ``status_code`` is a 4xx other than 429 are permanent: a
malformed request will be just as malformed on the second try, and
retrying it only hides the bug behind a few seconds of latency.
Everything else (429, 5xx, network errors with no status) is retried.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from lrs.core.metrics import STORE_RETRIES

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def is_retryable(exc: BaseException) -> bool:
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and 400 <= status < 500 and status != 429:
        return False
    return True


async def retry_operation(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay_ms: int = 1000,
    jitter_ms: int = 500,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds, fails permanently, or runs out of attempts."""
    attempts = max(1, max_attempts)
    for attempt in range(attempts):
        try:
            return await operation()
        except Exception as exc:
            if not is_retryable(exc):
                STORE_RETRIES.labels(outcome="permanent").inc()
                raise
            if attempt == attempts - 1:
                STORE_RETRIES.labels(outcome="exhausted").inc()
                logger.warning(
                    "Storage operation failed after %d attempts: %s", attempts, exc
                )
                raise

            backoff_ms = base_delay_ms * (2**attempt) + random.uniform(0, jitter_ms)
            STORE_RETRIES.labels(outcome="retried").inc()
            logger.debug(
                "Retrying storage operation attempt=%d backoff_ms=%.0f error=%s",
                attempt + 1,
                backoff_ms,
                exc,
            )
            await sleep(backoff_ms / 1000)

    raise AssertionError("unreachable")  # pragma: no cover


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Retry settings bundled so stores can share one configured policy."""

    max_attempts: int = 3
    base_delay_ms: int = 1000
    jitter_ms: int = 500

    async def run(
        self, operation: Callable[[], Awaitable[T]], *, sleep: Sleep = asyncio.sleep
    ) -> T:
        return await retry_operation(
            operation,
            max_attempts=self.max_attempts,
            base_delay_ms=self.base_delay_ms,
            jitter_ms=self.jitter_ms,
            sleep=sleep,
        )
