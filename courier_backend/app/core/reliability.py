"""
Reliability utilities.

Bounded retry with exponential backoff around a whole atomic operation.
Only errors flagged ``retryable`` (TransientStoreError) are retried; every
other failure propagates on the first attempt.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

from courier_backend.app.core.config import settings
from courier_backend.app.core.exceptions import AppException

logger = logging.getLogger("courier.reliability")


async def run_with_retry(
    operation: Callable[[], Awaitable[Any]],
    attempts: int = None,
    backoff_base: float = None,
) -> Any:
    """
    Run ``operation`` and retry it on retryable application errors.

    Args:
        operation: Zero-argument coroutine factory. Called once per attempt so
            each attempt starts a fresh transaction.
        attempts: Maximum number of attempts (defaults to settings.retry_attempts)
        backoff_base: First sleep in seconds, doubled after each failure

    Returns:
        Whatever the operation returns on its first successful attempt
    """
    attempts = attempts or settings.retry_attempts
    backoff_base = settings.retry_backoff_base if backoff_base is None else backoff_base

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except AppException as e:
            if not e.retryable or attempt >= attempts:
                raise
            delay = backoff_base * (2 ** (attempt - 1))
            logger.warning(
                "Transient failure (attempt %d/%d), retrying in %.2fs: %s",
                attempt, attempts, delay, e.message
            )
            await asyncio.sleep(delay)
