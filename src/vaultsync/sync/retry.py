"""Retry wrapper for individual Notion calls.

Independent of the Scheduler: a jittered exponential backoff around a
single call, for call sites that don't need queue-based serialization.
"""

import asyncio
import functools
import logging
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .notion import is_throttled, is_transient

logger = logging.getLogger(__name__)

T = TypeVar("T")

THROTTLE_FLOOR = 5.0  # seconds


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    throttled: bool = False,
    jitter: Optional[float] = None,
) -> float:
    """Delay before retry number ``attempt`` (1-based).

    Args:
        attempt: Attempt that just failed, starting at 1
        base_delay: Delay after the first failure, in seconds
        max_delay: Upper bound before the throttle floor is applied
        throttled: Apply the rate-limit floor
        jitter: Multiplier in [0.75, 1.0]; random if not provided
    """
    if jitter is None:
        jitter = random.uniform(0.75, 1.0)
    delay = min(max_delay, base_delay * (2 ** (attempt - 1)) * jitter)
    if throttled:
        delay = max(delay, THROTTLE_FLOOR)
    return delay


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    retries: int = 6,
    base_delay: float = 1.0,
    max_delay: float = 15.0,
    is_retriable: Optional[Callable[[BaseException], bool]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Execute operation with exponential backoff retry.

    Args:
        operation: Zero-argument coroutine function
        retries: Retries after the first attempt
        base_delay: Initial backoff delay in seconds
        max_delay: Largest backoff delay in seconds
        is_retriable: Error classifier (throttling and 5xx by default)
        sleep: Coroutine used to wait between attempts

    Returns:
        Result of operation
    """
    classify = is_retriable or is_transient
    attempt = 0

    while True:
        try:
            return await operation()
        except Exception as e:
            attempt += 1
            if attempt > retries or not classify(e):
                raise
            delay = backoff_delay(attempt, base_delay, max_delay, throttled=is_throttled(e))
            logger.warning(
                "Retrying after %s (attempt %d/%d) in %.2fs",
                type(e).__name__,
                attempt,
                retries,
                delay,
            )
            await sleep(delay)


def retrying(**options: Any):
    """Decorator form of with_retry for coroutine functions."""

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await with_retry(lambda: func(*args, **kwargs), **options)

        return wrapper

    return decorator


class RetryExecutor:
    """Adapts with_retry to the Scheduler's submit signature.

    Priority and labels are accepted and ignored; every call runs
    immediately.
    """

    def __init__(self, **options: Any):
        self.options = options

    async def __call__(
        self,
        operation: Callable[[], Awaitable[T]],
        priority: int = 0,
        **_labels: Any,
    ) -> T:
        return await with_retry(operation, **self.options)
