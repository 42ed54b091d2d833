"""
Retry helpers.

Exponential backoff policy and a generic async retry wrapper, kept apart
from any I/O so both can be exercised in isolation.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


def backoff_delay(attempt: int, base_delay: float) -> float:
    """
    Delay before retry number ``attempt``.

    Args:
        attempt: 1-based retry number (1 = first retry)
        base_delay: Delay before the first retry, in seconds

    Returns:
        base_delay * 2 ** (attempt - 1)
    """
    if attempt < 1:
        return 0.0
    return base_delay * (2 ** (attempt - 1))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    should_retry: Callable[[BaseException], bool],
    max_retries: int,
    base_delay: float,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: Optional[str] = None
) -> T:
    """
    Run ``operation`` and retry it on retryable errors.

    The operation is attempted once, then retried up to ``max_retries``
    additional times while ``should_retry`` accepts the raised error.
    Non-retryable errors and the final failure propagate unchanged.

    Args:
        operation: Zero-argument coroutine factory
        should_retry: Classifies a raised exception as retryable
        max_retries: Additional attempts after the first
        base_delay: Backoff base in seconds
        sleep: Awaitable sleep (injectable for tests)
        label: Name used in log messages

    Returns:
        The operation's result
    """
    label = label or getattr(operation, '__name__', 'operation')
    attempt = 0

    while True:
        try:
            return await operation()
        except Exception as e:
            if attempt >= max_retries or not should_retry(e):
                raise

            attempt += 1
            delay = backoff_delay(attempt, base_delay)
            logger.warning(
                f"{label} failed ({e}); retry {attempt}/{max_retries} "
                f"in {delay * 1000:.0f}ms"
            )
            await sleep(delay)
