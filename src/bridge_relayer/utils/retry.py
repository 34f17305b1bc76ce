"""
Timeout and retry helpers for blocking RPC calls.

Web3's HTTP provider is synchronous; calls are moved off the event loop with
``asyncio.to_thread`` so independent polling loops keep running while one of
them waits on a slow endpoint.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any, TypeVar

import requests

from ..exceptions import TransientRPCError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient_error(exc: BaseException) -> bool:
    """Classify an exception as a transient infrastructure failure.

    Timeouts, dropped connections, rate limiting (429) and server errors (5xx)
    are transient. Anything else (bad parameters, reverts, decode errors) is not
    and should not be retried blindly.
    """
    if isinstance(exc, requests.exceptions.HTTPError):
        response = exc.response
        if response is None:
            return True
        return response.status_code == 429 or response.status_code >= 500
    return isinstance(exc, (
        asyncio.TimeoutError,
        TimeoutError,
        ConnectionError,
        requests.exceptions.Timeout,
        requests.exceptions.ConnectionError,
    ))


async def call_with_timeout(func: Callable[..., T], *args: Any, timeout: float) -> T:
    """Run a blocking call in a worker thread, giving up after ``timeout`` seconds."""
    return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)


async def with_retry(
    operation: Callable[[], T],
    label: str,
    retry_count: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    timeout: float = 30.0,
    multiplier: float = 2.0,
) -> T:
    """
    Run a blocking operation with a timeout and exponential backoff.

    Args:
        operation: Zero-argument blocking callable
        label: Action name used in log lines
        retry_count: Maximum number of attempts
        base_delay: Delay before the second attempt, in seconds
        max_delay: Upper bound for the delay between attempts
        timeout: Timeout for a single attempt, in seconds
        multiplier: Factor applied to the delay after each failed attempt

    Returns:
        The operation's result

    Raises:
        TransientRPCError: If every attempt failed with a transient error
        Exception: Non-transient errors are re-raised immediately
    """
    attempts = max(1, retry_count)
    delay = base_delay
    for attempt in range(1, attempts + 1):
        try:
            return await call_with_timeout(operation, timeout=timeout)
        except Exception as e:
            if not is_transient_error(e):
                raise
            logger.warning(
                f"{label}.retry",
                extra={
                    "data": {"attempt": attempt, "maxRetries": attempts, "delay": delay},
                    "error": repr(e),
                },
            )
            if attempt == attempts:
                raise TransientRPCError(label, attempts, e) from e
            await asyncio.sleep(delay)
            delay = min(delay * multiplier, max_delay)

    raise TransientRPCError(label, attempts)
