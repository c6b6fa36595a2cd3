"""Retry with exponential backoff and jitter for destination API calls."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, TypeVar

from ..exceptions import TransientAPIError

T = TypeVar("T")
logger = logging.getLogger(__name__)

MAX_RETRIES = 3
BASE_DELAY = 1.0


async def call_with_backoff(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    **kwargs: Any,
) -> T:
    """Await ``func(*args, **kwargs)``, retrying transient failures.

    Only ``TransientAPIError`` (rate limit, 5xx, network) is retried.
    The delay before attempt ``n`` is ``base_delay * 2**n`` plus up to
    ``base_delay`` of random jitter.  After ``max_retries`` retries the
    last error propagates so the caller can mark the task as errored.

    Args:
        func: Coroutine function to call.
        *args: Positional arguments for func.
        max_retries: Retries after the first attempt.
        base_delay: Base delay in seconds.
        sleep: Awaitable sleep; injectable for tests.
        **kwargs: Keyword arguments for func.

    Returns:
        Result of func.

    Raises:
        TransientAPIError: When every attempt failed transiently.
    """
    attempt = 0
    while True:
        try:
            return await func(*args, **kwargs)
        except TransientAPIError as exc:
            if attempt >= max_retries:
                logger.error(
                    "Giving up after %d retries: %s", max_retries, exc
                )
                raise
            delay = base_delay * (2**attempt) + random.uniform(0, base_delay)
            attempt += 1
            logger.warning(
                "Transient destination error (%s), retry %d/%d in %.2fs",
                exc,
                attempt,
                max_retries,
                delay,
            )
            await sleep(delay)
