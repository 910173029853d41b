"""Exponential backoff for calls to the payment processor.

Only outbound calls made while a user waits (checkout and portal session
creation) are retried.  Webhook handling never retries internally; the
processor's own redelivery covers it.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig(BaseModel):
    """Backoff schedule: ``base_delay * 2**attempt``, capped at ``max_delay``.

    With the defaults a checkout creation that keeps failing is attempted
    three times over roughly 1.5 s before the caller sees a 503, which keeps
    the user-facing request well inside the gateway's own timeout.
    """

    max_retries: int = Field(default=2, ge=0, description="Retries after the first attempt.")
    base_delay: float = Field(default=0.5, gt=0.0, description="Seconds before the first retry.")
    max_delay: float = Field(default=5.0, gt=0.0, description="Ceiling for any single wait.")
    jitter: bool = Field(default=True, description="Scale each wait by a random factor in [0.5, 1.5].")


def compute_delay(attempt: int, config: RetryConfig) -> float:
    """Seconds to wait after the zero-based failed *attempt*."""
    capped = min(config.base_delay * 2**attempt, config.max_delay)
    if not config.jitter:
        return capped
    return capped * random.uniform(0.5, 1.5)  # noqa: S311


async def async_retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig,
    retryable_exceptions: tuple[type[BaseException], ...] = (Exception,),
    *,
    operation: str = "call",
) -> T:
    """Await ``fn()`` until it succeeds or the retry budget runs out.

    Parameters
    ----------
    fn:
        Zero-argument coroutine factory, called afresh for every attempt.
        Callers pass the same idempotency key on each attempt so the
        processor never creates two sessions for one click.
    config:
        Backoff schedule.
    retryable_exceptions:
        Exception types worth another attempt.  Anything else (a rejected
        request, a programming error) propagates on the first failure.
    operation:
        Label for the warning logged before each retry.

    Raises
    ------
    Exception
        The final retryable exception once the budget is spent.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except retryable_exceptions as exc:
            if attempt == config.max_retries:
                logger.error("%s gave up after %d attempts: %r", operation, attempt + 1, exc)
                raise
            delay = compute_delay(attempt, config)
            attempt += 1
            logger.warning(
                "%s failed (%r); retry %d/%d in %.2fs",
                operation,
                exc,
                attempt,
                config.max_retries,
                delay,
            )
            await asyncio.sleep(delay)
