"""
Input validation for inbound task records.

Adapters hand the orchestrator plain records; these helpers check them
before any fingerprinting or destination call so that a malformed record
fails on its own without affecting the rest of the batch.
"""

from typing import Any, Mapping

from pydantic import ValidationError

from .exceptions import MalformedTaskError
from .sync.models import TaskRecord

MAX_TITLE_LENGTH = 500

# ---------------------------------------------------------------------------
# Error message formatting helpers
# ---------------------------------------------------------------------------


def format_validation_error(field_name: str, reason: str) -> str:
    """
    Generate consistent error message for validation failures.

    Args:
        field_name: Human-readable field name (e.g., "Task title")
        reason: Description of validation failure (e.g., "cannot be empty")

    Returns:
        Formatted error message string
    """
    return f"{field_name} {reason}"


def validate_title(title: Any) -> tuple[bool, str]:
    """
    Validate a task title.

    Returns:
        Tuple of (is_valid, error_message).
        Returns (True, "") if valid, (False, reason) if invalid.
    """
    if not isinstance(title, str):
        return False, format_validation_error("Task title", "must be a string")
    if not title.strip():
        return False, format_validation_error("Task title", "cannot be empty")
    if len(title) > MAX_TITLE_LENGTH:
        return (
            False,
            format_validation_error(
                "Task title",
                f"cannot exceed {MAX_TITLE_LENGTH} characters",
            ),
        )
    return True, ""


def validate_task_id(task_id: Any) -> tuple[bool, str]:
    """
    Validate a task id.

    Returns:
        Tuple of (is_valid, error_message).
    """
    if task_id is None or not str(task_id).strip():
        return False, format_validation_error("Task id", "cannot be empty")
    return True, ""


def coerce_task_record(raw: TaskRecord | Mapping[str, Any]) -> TaskRecord:
    """
    Turn an inbound record into a validated ``TaskRecord``.

    Mappings may use either field names (``title``/``notes``/``tags``) or
    the hosted service's names (``content``/``description``/``labels``).

    Raises:
        MalformedTaskError: If the id or title is missing or invalid.
    """
    if isinstance(raw, TaskRecord):
        record = raw
    elif isinstance(raw, Mapping):
        data = dict(raw)
        for alias, name in (
            ("content", "title"),
            ("description", "notes"),
            ("labels", "tags"),
        ):
            if name not in data and alias in data:
                data[name] = data.pop(alias)
        ok, msg = validate_task_id(data.get("id"))
        if not ok:
            raise MalformedTaskError(msg)
        data["id"] = str(data["id"])
        ok, msg = validate_title(data.get("title"))
        if not ok:
            raise MalformedTaskError(msg)
        if data.get("tags") is None:
            data["tags"] = []
        try:
            record = TaskRecord.model_validate(data)
        except ValidationError as exc:
            raise MalformedTaskError(
                f"Invalid task record {data['id']}: {exc.errors()[0]['msg']}"
            ) from exc
    else:
        raise MalformedTaskError(
            f"Task record must be a mapping, got {type(raw).__name__}"
        )

    for check in (validate_task_id(record.id), validate_title(record.title)):
        if not check[0]:
            raise MalformedTaskError(check[1])
    return record


def record_id(raw: Any) -> str:
    """Best-effort id of a possibly malformed record, for reporting."""
    if isinstance(raw, TaskRecord):
        return raw.id
    if isinstance(raw, Mapping) and raw.get("id") is not None:
        return str(raw["id"])
    return ""


def record_title(raw: Any) -> str | None:
    """Best-effort title of a possibly malformed record, for reporting."""
    if isinstance(raw, TaskRecord):
        return raw.title
    if isinstance(raw, Mapping):
        title = raw.get("title", raw.get("content"))
        return title if isinstance(title, str) else None
    return None
