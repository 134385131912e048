"""Retry utilities with exponential backoff for page-context messaging."""

import logging
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)
import structlog

from listscout.core.exceptions import TransientPageError


logger = structlog.get_logger(__name__)

T = TypeVar("T")


def transient_retrying(attempts: int = 3, backoff_seconds: float = 1.0) -> AsyncRetrying:
    """Build a bounded retry loop for transient page-context failures.

    Only TransientPageError is retried; anything else (including
    ContextLostError) propagates on the first failure.

    Args:
        attempts: Total attempts including the first call
        backoff_seconds: Base of the exponential backoff (0 disables sleeping)

    Returns:
        Configured AsyncRetrying iterator
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=backoff_seconds, min=0, max=backoff_seconds * 8),
        retry=retry_if_exception_type(TransientPageError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    attempts: int = 3,
    backoff_seconds: float = 1.0,
) -> T:
    """Await func(), retrying TransientPageError with exponential backoff."""
    async for attempt in transient_retrying(attempts, backoff_seconds):
        with attempt:
            return await func()
    raise RuntimeError("retry loop exited without a result")  # pragma: no cover
