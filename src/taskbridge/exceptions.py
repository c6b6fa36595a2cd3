"""Exception taxonomy for taskbridge.

The orchestrator distinguishes these classes when deciding whether to
retry, report a per-task error, treat an outcome as benign success, or
abort the whole run:

- ``TransientAPIError`` -- rate limit, 5xx or network failure; retried
  with backoff, then reported per task.
- ``TaskNotFoundError`` -- the task is already gone on the destination;
  success for close/delete.
- ``SyncInProgressError`` -- lock contention; surfaced to the caller
  immediately.
- ``ManualResolutionRequired`` -- raised by the conflict resolver for the
  ``manual`` strategy; routed to conflict storage.
- ``MalformedTaskError`` -- inbound record rejected; batch continues.
- ``MappingStoreCorruptError`` -- aggregate record unreadable; fatal.
"""

from __future__ import annotations


class TaskBridgeError(Exception):
    """Base class for all taskbridge errors."""


class ConfigError(TaskBridgeError, ValueError):
    """Invalid configuration value."""


class DestinationAPIError(TaskBridgeError):
    """A destination-system API call failed.

    Attributes:
        status: HTTP-like status code, or ``None`` for non-HTTP failures.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TransientAPIError(DestinationAPIError):
    """Retryable failure: rate limit, server error or network problem."""


class TaskNotFoundError(DestinationAPIError):
    """The referenced task does not exist on the destination system."""

    def __init__(self, message: str, status: int | None = 404) -> None:
        super().__init__(message, status)


class SyncInProgressError(TaskBridgeError):
    """Another sync run holds the lock; retry later."""

    def __init__(self, retry_after: float = 30.0) -> None:
        super().__init__(
            f"Sync already in progress, retry after {retry_after:g}s"
        )
        self.retry_after = retry_after


class ManualResolutionRequired(TaskBridgeError):
    """A conflict must be decided by a human."""

    def __init__(self, conflict_id: str) -> None:
        super().__init__(
            f"Manual conflict resolution required for {conflict_id}"
        )
        self.conflict_id = conflict_id


class MalformedTaskError(TaskBridgeError, ValueError):
    """An inbound task record is missing required fields."""


class MappingStoreCorruptError(TaskBridgeError):
    """The aggregate mapping record could not be parsed."""
