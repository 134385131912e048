"""Cancellable "wait until a condition holds" primitive."""

import asyncio
import inspect
import time
from typing import Awaitable, Callable, Union

import structlog

logger = structlog.get_logger(__name__)

Condition = Callable[[], Union[bool, Awaitable[bool]]]


async def wait_for_condition(
    condition: Condition,
    timeout: float,
    interval: float = 0.3,
    description: str = "condition",
) -> bool:
    """Poll condition until it is truthy or timeout seconds have passed.

    A timeout is not an error: the caller decides whether to continue
    optimistically. Cancelling the surrounding task cancels the wait.
    Exceptions raised by the condition propagate.

    Args:
        condition: Sync or async callable returning a bool
        timeout: Maximum seconds to wait (0 checks exactly once)
        interval: Seconds between checks
        description: Name used in log events

    Returns:
        True if the condition held before the deadline, False on timeout
    """
    deadline = time.monotonic() + max(0.0, timeout)

    while True:
        result = condition()
        if inspect.isawaitable(result):
            result = await result
        if result:
            return True

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.debug("wait_timed_out", condition=description, timeout=timeout)
            return False

        await asyncio.sleep(min(interval, remaining))
