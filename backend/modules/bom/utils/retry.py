# backend/modules/bom/utils/retry.py

import asyncio
import logging
from typing import TypeVar, Callable, Awaitable

import httpx

from ..exceptions.bom_exceptions import CommerceAPIError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable_error(error: Exception) -> bool:
    """
    Check if a commerce platform failure is worth retrying

    Args:
        error: The exception to check

    Returns:
        True for transient conditions (network, 5xx, throttling)
    """
    if isinstance(error, CommerceAPIError):
        return error.retryable
    if isinstance(error, (httpx.TransportError, asyncio.TimeoutError)):
        return True
    return False


async def with_retry(
    func: Callable[..., Awaitable[T]],
    *args,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    context: str = "operation",
    **kwargs,
) -> T:
    """
    Retry an async call with exponential backoff

    Args:
        func: The async function to retry
        *args: Positional arguments for the function
        max_attempts: Total number of attempts, including the first
        base_delay: Delay before the second attempt; doubles after each failure
        context: Label used in log messages
        **kwargs: Keyword arguments for the function

    Returns:
        The result of the function call

    Raises:
        The last exception if all attempts fail, or the first non-retryable one
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_error(e) or attempt == max_attempts:
                raise

            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(
                f"{context} failed (attempt {attempt}/{max_attempts}), "
                f"retrying in {delay:.2f}s. Error: {str(e)}"
            )
            await asyncio.sleep(delay)

    raise RuntimeError(f"{context}: retry loop exited without result")

