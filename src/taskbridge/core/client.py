"""REST client for the hosted task service (System B).

``TodoistClient`` is a blocking ``requests`` client with one session per
thread.  HTTP failures are mapped onto the exception taxonomy:

* 429, 5xx and connection/timeout errors -> ``TransientAPIError``
* 404 -> ``TaskNotFoundError``
* any other non-2xx -> ``DestinationAPIError``

Retrying is left to ``core.retry.call_with_backoff`` at the call site.

``TodoistAdapter`` exposes the client through the async ``TaskAdapter``
interface used by the orchestrator, running each call in the bounded
thread pool.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

import requests

from ..exceptions import (
    DestinationAPIError,
    TaskNotFoundError,
    TransientAPIError,
)
from ..sync.models import NewTask, TaskRecord, TaskUpdate
from .async_utils import run_sync_limited

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.todoist.com/rest/v2"
SYNCED_LABEL = "synced-to-things"


class TodoistClient:
    def __init__(
        self,
        token: str,
        api_url: str = DEFAULT_API_URL,
        timeout: tuple[float, float] = (10, 30),
    ):
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._thread_local = threading.local()

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            session = requests.Session()
            session.headers.update(
                {
                    "Authorization": f"Bearer {self.token}",
                    "Content-Type": "application/json",
                }
            )
            self._thread_local.session = session
        return self._thread_local.session

    def _request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        """
        Make a request against the REST API and decode the JSON body.
        """
        url = f"{self.api_url}{endpoint}"
        try:
            response = self._get_session().request(
                method,
                url,
                params=params,
                json=payload,
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientAPIError(
                f"Network error calling {method} {endpoint}: {exc}"
            ) from exc

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientAPIError(
                f"Todoist API error: {status} {response.reason}", status
            )
        if status == 404:
            raise TaskNotFoundError(
                f"Todoist API error: 404 {method} {endpoint}"
            )
        if not response.ok:
            raise DestinationAPIError(
                f"Todoist API error: {status} {response.reason}", status
            )
        if status == 204 or not response.content:
            return None
        return response.json()

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def get_projects(self) -> list[dict[str, Any]]:
        """
        List all projects.
        """
        return self._request("GET", "/projects") or []

    def get_inbox_project(self) -> dict[str, Any]:
        """
        Return the inbox project.

        Raises:
            DestinationAPIError: If the account has no inbox project.
        """
        for project in self.get_projects():
            if project.get("is_inbox_project"):
                return project
        raise DestinationAPIError("Inbox project not found")

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def list_tasks(self, project_id: str | None = None) -> list[dict[str, Any]]:
        """
        List active tasks, optionally restricted to one project.
        """
        params = {"project_id": project_id} if project_id else None
        tasks = self._request("GET", "/tasks", params=params) or []
        return [t for t in tasks if not t.get("is_completed")]

    def get_task(self, task_id: str) -> dict[str, Any]:
        """
        Get a single task by id.
        """
        return self._request("GET", f"/tasks/{task_id}")

    def create_task(
        self,
        content: str,
        description: str | None = None,
        due_date: str | None = None,
        labels: list[str] | None = None,
        project_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Create a task and return the API representation.

        Args:
            content: Task title (required)
            description: Task notes
            due_date: Due date string
            labels: Label names
            project_id: Target project; defaults to the inbox

        Raises:
            ValueError: If content is empty
        """
        if not content or not content.strip():
            raise ValueError("Content is required and cannot be empty")
        if project_id is None:
            project_id = self.get_inbox_project()["id"]

        payload: dict[str, Any] = {"content": content, "project_id": project_id}
        if description:
            payload["description"] = description
        if due_date:
            payload["due_date"] = due_date
        if labels:
            payload["labels"] = labels
        return self._request("POST", "/tasks", payload=payload)

    def update_task(self, task_id: str, fields: dict[str, Any]) -> Any:
        """
        Update the given fields of a task.
        """
        return self._request("POST", f"/tasks/{task_id}", payload=fields)

    def close_task(self, task_id: str) -> bool:
        """
        Complete a task.  Already-completed and missing tasks count as
        success.
        """
        try:
            task = self.get_task(task_id)
            if task and task.get("is_completed"):
                logger.info("Task %s is already completed", task_id)
                return True
            self._request("POST", f"/tasks/{task_id}/close")
        except TaskNotFoundError:
            logger.info("Task %s not found, treating as closed", task_id)
        return True

    def delete_task(self, task_id: str) -> None:
        """
        Delete a task.  A missing task is not an error.
        """
        try:
            self._request("DELETE", f"/tasks/{task_id}")
        except TaskNotFoundError:
            logger.info("Task %s already deleted", task_id)


# ---------------------------------------------------------------------------
# Record conversion
# ---------------------------------------------------------------------------


def task_from_api(
    payload: dict[str, Any], project_names: dict[str, str] | None = None
) -> TaskRecord:
    """Convert a REST task payload into a ``TaskRecord``."""
    due = payload.get("due") or {}
    project_id = payload.get("project_id")
    project = (project_names or {}).get(str(project_id), project_id)
    return TaskRecord(
        id=str(payload["id"]),
        title=payload.get("content", ""),
        notes=payload.get("description") or None,
        due=due.get("datetime") or due.get("date"),
        tags=list(payload.get("labels") or []),
        project=project,
        modified_at=payload.get("updated_at"),
    )


def update_to_api(update: TaskUpdate) -> dict[str, Any]:
    """Map a ``TaskUpdate`` to REST field names, skipping unset fields."""
    fields: dict[str, Any] = {}
    if update.title is not None:
        fields["content"] = update.title
    if update.notes is not None:
        fields["description"] = update.notes
    if update.due is not None:
        fields["due_date"] = update.due
    if update.tags is not None:
        fields["labels"] = update.tags
    return fields


class TodoistAdapter:
    """Async ``TaskAdapter`` over ``TodoistClient``, scoped to the inbox.

    Args:
        client: The blocking REST client.
    """

    def __init__(self, client: TodoistClient) -> None:
        self.client = client

    async def list_active_tasks(
        self, exclude_already_synced: bool = False
    ) -> list[TaskRecord]:
        projects = await run_sync_limited(self.client.get_projects)
        names = {str(p["id"]): p.get("name", "") for p in projects}
        inbox = next((p for p in projects if p.get("is_inbox_project")), None)
        if inbox is None:
            raise DestinationAPIError("Inbox project not found")

        raw = await run_sync_limited(self.client.list_tasks, inbox["id"])
        tasks = [task_from_api(t, names) for t in raw]
        if exclude_already_synced:
            # Label-based exclusion; the orchestrator's pending_tasks()
            # does the mapping-store based exclusion.
            tasks = [t for t in tasks if SYNCED_LABEL not in t.tags]
        return tasks

    async def create_task(self, task: NewTask) -> str:
        created = await run_sync_limited(
            self.client.create_task,
            task.title,
            task.notes,
            task.due,
            task.tags,
        )
        return str(created["id"])

    async def update_task(self, task_id: str, update: TaskUpdate) -> None:
        fields = update_to_api(update)
        if fields:
            await run_sync_limited(self.client.update_task, task_id, fields)

    async def close_task(self, task_id: str) -> bool:
        return await run_sync_limited(self.client.close_task, task_id)

    async def delete_task(self, task_id: str) -> None:
        await run_sync_limited(self.client.delete_task, task_id)
