"""Async plumbing and retry policy shared by the sync engine and the
destination client.

The client itself lives in ``core.client`` and is imported from there.
"""

from .async_utils import (
    gather_limited,
    init_semaphore,
    request_limit,
    run_sync,
    run_sync_limited,
)
from .retry import call_with_backoff

__all__ = [
    "call_with_backoff",
    "gather_limited",
    "init_semaphore",
    "request_limit",
    "run_sync",
    "run_sync_limited",
]
