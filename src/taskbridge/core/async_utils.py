"""Thread offloading for the blocking parts of a sync run.

The Todoist client is built on ``requests`` and the JSON store does plain
file I/O, so both run in worker threads.  Destination requests share one
semaphore sized by ``max_parallel_requests``; store I/O does not.
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Sequence, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)

_request_slots: asyncio.Semaphore | None = None
_request_limit: int | None = None


def init_semaphore(max_parallel: int = 5) -> None:
    """Size the destination request pool.  Called by the bridge lifespan."""
    global _request_slots, _request_limit
    if max_parallel < 1:
        raise ValueError(f"max_parallel must be at least 1, got {max_parallel}")
    _request_slots = asyncio.Semaphore(max_parallel)
    _request_limit = max_parallel
    logger.info("Destination requests limited to %d in flight", max_parallel)


def request_limit() -> int | None:
    """Configured pool size, or ``None`` before ``init_semaphore``."""
    return _request_limit


async def run_sync(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Call *func* in a worker thread, outside the request pool."""
    return await asyncio.to_thread(func, *args, **kwargs)


async def run_sync_limited(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Call *func* in a worker thread while holding a request slot.

    Without ``init_semaphore`` the call is unbounded, which is what unit
    tests and one-off scripts get.

    Example:
        projects = await run_sync_limited(client.get_projects)
    """
    slots = _request_slots
    if slots is None:
        return await asyncio.to_thread(func, *args, **kwargs)
    async with slots:
        return await asyncio.to_thread(func, *args, **kwargs)


async def gather_limited(
    coros: Sequence[Coroutine[Any, Any, T]],
) -> list[T]:
    """Await *coros* together and return their results in input order.

    The coroutines are expected to take their own slot through
    ``run_sync_limited``.  The first exception propagates.
    """
    if not coros:
        return []
    return list(await asyncio.gather(*coros))
