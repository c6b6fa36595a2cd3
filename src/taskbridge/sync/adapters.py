"""Contract between the sync engine and the two task systems.

The orchestrator never talks to a task system directly.  Each side is a
``TaskAdapter``: the hosted service is ``core.client.TodoistAdapter``,
the desktop application is supplied by the caller (typically a thin
wrapper around OS automation).
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from .models import NewTask, TaskRecord, TaskUpdate


@runtime_checkable
class TaskAdapter(Protocol):
    """Protocol that both task-system adapters must satisfy."""

    async def list_active_tasks(
        self, exclude_already_synced: bool = False
    ) -> list[TaskRecord]:
        """Return every active (not completed) task.

        Args:
            exclude_already_synced: Drop tasks the adapter itself can tell
                were synced before (e.g. by a marker label).
        """
        ...  # pragma: no cover

    async def create_task(self, task: NewTask) -> str:
        """Create a task and return its new native id."""
        ...  # pragma: no cover

    async def update_task(self, task_id: str, update: TaskUpdate) -> None:
        """Apply the set fields of *update* to an existing task."""
        ...  # pragma: no cover

    async def close_task(self, task_id: str) -> bool:
        """Complete a task.

        Closing an already-closed or deleted task is success, not an
        error.
        """
        ...  # pragma: no cover

    async def delete_task(self, task_id: str) -> None:
        """Delete a task; a missing task is not an error."""
        ...  # pragma: no cover
