"""Project and tag filtering applied before fingerprinting.

Rules:

* A task in an excluded project is skipped.  When an enabled-project
  list is configured, tasks outside it are skipped too.
* Excluded tags are stripped from the task.  When an enabled-tag list is
  configured only enabled tags are kept, and a task left with none of
  them is skipped.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .models import TaskRecord

if TYPE_CHECKING:
    from ..config_schema import SyncSettings


def should_sync_project(project: str | None, settings: SyncSettings) -> bool:
    if project is not None and project in settings.excluded_projects:
        return False
    if settings.enabled_projects:
        return project is not None and project in settings.enabled_projects
    return True


def should_sync_tag(tag: str, settings: SyncSettings) -> bool:
    if tag in settings.excluded_tags:
        return False
    if settings.enabled_tags:
        return tag in settings.enabled_tags
    return True


def filter_tags(tags: list[str], settings: SyncSettings) -> list[str]:
    return [t for t in tags if should_sync_tag(t, settings)]


def apply_filters(
    task: TaskRecord, settings: SyncSettings
) -> tuple[TaskRecord | None, str | None]:
    """Filter one inbound task.

    Returns:
        ``(task, None)`` with tags filtered when the task should sync,
        otherwise ``(None, reason)``.
    """
    if not should_sync_project(task.project, settings):
        return None, f"project '{task.project}' is not synced"

    tags = filter_tags(task.tags, settings)
    if settings.enabled_tags and not tags:
        return None, "no enabled tags"

    if tags != task.tags:
        task = task.model_copy(update={"tags": tags})
    return task, None
