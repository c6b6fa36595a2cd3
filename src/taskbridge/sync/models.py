"""Pydantic models for the task bridge.

Defines the data contracts shared by every sync module:

- ``Side``: which of the two task systems a record belongs to.
- ``TaskRecord``: an inbound task as handed over by an adapter.
- ``TaskFingerprint``: derived identity hash plus matching variants.
- ``SyncedContent``: the last agreed snapshot of a linked pair.
- ``TaskMapping``: the durable link between a System A and a System B task.
- ``BatchState``: the single aggregate record holding every mapping.
- ``SyncConflict``: both sides of a pair diverged from the snapshot.
- ``TaskSyncResult`` / ``SyncReport``: per-task and per-run outcomes.
- ``DailyMetrics`` / ``MetricsSummary``: per-day run counters and their
  aggregate.

Most models are frozen (immutable); ``BatchState`` is mutable because the
mapping store edits it in memory and persists it once per run.  The
metrics counters are mutable for the same reason.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class Side(str, Enum):
    """One of the two bridged task systems.

    ``SYSTEM_A`` is the desktop application, ``SYSTEM_B`` the hosted
    service.  The legacy names and back-reference labels match the keys
    and note tags written by earlier releases.
    """

    SYSTEM_A = "system_a"
    SYSTEM_B = "system_b"

    @property
    def other(self) -> Side:
        return Side.SYSTEM_B if self is Side.SYSTEM_A else Side.SYSTEM_A

    @property
    def legacy_name(self) -> str:
        return "things" if self is Side.SYSTEM_A else "todoist"

    @property
    def backref_label(self) -> str:
        return f"{self.legacy_name}-id"


class MappingSource(str, Enum):
    """How a mapping (or a match) was established."""

    EXACT = "exact"
    FUZZY = "fuzzy"
    HASH = "hash"
    LEGACY = "legacy"


class ConflictStrategy(str, Enum):
    """Conflict resolution strategies.

    The camel-case spellings used by older configuration files
    (``systemA_wins``) are accepted as aliases.
    """

    SYSTEM_A_WINS = "system_a_wins"
    SYSTEM_B_WINS = "system_b_wins"
    NEWEST_WINS = "newest_wins"
    MERGE = "merge"
    MANUAL = "manual"

    @classmethod
    def _missing_(cls, value: object) -> ConflictStrategy | None:
        if isinstance(value, str):
            key = value.strip().lower().replace("-", "_")
            key = {
                "systema_wins": "system_a_wins",
                "systemb_wins": "system_b_wins",
                "things_wins": "system_a_wins",
                "todoist_wins": "system_b_wins",
            }.get(key, key)
            for member in cls:
                if member.value == key:
                    return member
        return None


class SyncStatus(str, Enum):
    """Closed set of per-task outcomes reported by a sync run."""

    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    UPDATED = "updated"
    CONFLICT_RESOLVED = "conflict_resolved"
    CONFLICT_STORED = "conflict_stored"
    SKIPPED = "skipped"
    COMPLETED = "completed"
    NOT_FOUND = "not_found"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Task records
# ---------------------------------------------------------------------------


class TaskRecord(BaseModel):
    """A task as read from one of the systems.

    Attributes:
        id: Opaque, system-scoped identifier.
        title: Task title (Todoist ``content``).
        notes: Free-text notes (Todoist ``description``).
        due: Due date or datetime string.
        tags: Tags / labels.
        project: Project or list name, used only for filtering.
        modified_at: ISO 8601 last-modification time, when known.
    """

    id: str
    title: str
    notes: str | None = None
    due: str | None = None
    tags: list[str] = []
    project: str | None = None
    modified_at: str | None = None

    model_config = {"frozen": True}


class NewTask(BaseModel):
    """Content for a task to be created on a destination system."""

    title: str
    notes: str | None = None
    due: str | None = None
    tags: list[str] = []

    model_config = {"frozen": True}


class TaskUpdate(BaseModel):
    """Partial update for an existing task; unset fields are untouched."""

    title: str | None = None
    notes: str | None = None
    due: str | None = None
    tags: list[str] | None = None

    model_config = {"frozen": True}


class CompletionRecord(BaseModel):
    """A task that was completed on its own system."""

    task_id: str
    completed_at: str | None = None

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Fingerprints and mappings
# ---------------------------------------------------------------------------


class TaskFingerprint(BaseModel):
    """Derived identity of a task.

    Attributes:
        primary_hash: Short digest over normalized title, notes and due.
        title_variations: Normalization forms of the title alone.
        fuzzy_searchable: Fully normalized title for edit distance.
    """

    primary_hash: str
    title_variations: list[str] = []
    fuzzy_searchable: str = ""

    model_config = {"frozen": True}


class SyncedContent(BaseModel):
    """Last-observed agreed content of a linked pair (merge base)."""

    title: str
    notes: str | None = None
    due: str | None = None
    tags: list[str] | None = None

    model_config = {"frozen": True}


class TaskMapping(BaseModel):
    """Durable link between one System A task and one System B task."""

    system_a_id: str
    system_b_id: str
    fingerprint: TaskFingerprint
    last_synced: str
    source: MappingSource = MappingSource.EXACT
    schema_version: int = 2
    system_a_modified_at: str | None = None
    system_b_modified_at: str | None = None
    last_synced_content: SyncedContent | None = None

    model_config = {"frozen": True}

    def id_for(self, side: Side) -> str:
        """Return the task id this mapping holds for *side*."""
        if side is Side.SYSTEM_A:
            return self.system_a_id
        return self.system_b_id


class BatchStats(BaseModel):
    """Counters kept alongside the aggregate record."""

    mapping_count: int = 0
    migrated_legacy_mappings: int = 0
    pending_legacy_migration: int = 0


class BatchState(BaseModel):
    """The single aggregate record holding all mappings.

    Both secondary indexes always point to a fingerprint present in
    ``mappings``.
    """

    schema_version: int = 2
    last_updated: str | None = None
    mappings: dict[str, TaskMapping] = Field(default_factory=dict)
    system_a_index: dict[str, str] = Field(default_factory=dict)
    system_b_index: dict[str, str] = Field(default_factory=dict)
    stats: BatchStats = Field(default_factory=BatchStats)

    def index_for(self, side: Side) -> dict[str, str]:
        if side is Side.SYSTEM_A:
            return self.system_a_index
        return self.system_b_index


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


class TaskVersion(BaseModel):
    """One side's content at the time a conflict was detected."""

    title: str
    notes: str | None = None
    due: str | None = None
    tags: list[str] = []
    modified_at: str | None = None

    model_config = {"frozen": True}


class SyncConflict(BaseModel):
    """Both linked tasks changed independently since the last sync."""

    id: str
    system_a_id: str
    system_b_id: str
    detected_at: str
    system_a_version: TaskVersion
    system_b_version: TaskVersion
    last_synced_version: SyncedContent | None = None
    suggested_resolution: ConflictStrategy | None = None
    resolved: bool = False

    model_config = {"frozen": True}


class ResolvedTask(BaseModel):
    """Content chosen by a resolution strategy."""

    title: str
    notes: str | None = None
    due: str | None = None
    tags: list[str] = []

    model_config = {"frozen": True}


class Resolution(BaseModel):
    """Outcome of ``ConflictResolver.resolve``."""

    resolved_task: ResolvedTask
    applied_strategy: ConflictStrategy

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Locks and idempotency
# ---------------------------------------------------------------------------


class LockToken(BaseModel):
    """Proof of holding the sync lock; required to release it."""

    token: str
    timestamp: float

    model_config = {"frozen": True}


class IdempotencyRecord(BaseModel):
    """Cached result of a request carrying a client request id."""

    request_id: str
    result: Any = None
    timestamp: float
    ttl_seconds: int

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class TaskSyncResult(BaseModel):
    """Outcome of processing one inbound task.

    Attributes:
        task_id: Id of the inbound task on its own system.
        title: Inbound title, for display.
        status: One of ``SyncStatus``.
        match_type: How an existing counterpart was found, if any.
        counterpart_id: Id of the linked task on the other system.
        conflict_id: Id of a detected conflict, if any.
        message: Error or informational message.
    """

    task_id: str
    title: str | None = None
    status: SyncStatus
    match_type: MappingSource | None = None
    counterpart_id: str | None = None
    conflict_id: str | None = None
    message: str | None = None

    model_config = {"frozen": True}


class SyncSummary(BaseModel):
    """Aggregate counts for a sync run."""

    created: int = 0
    existing: int = 0
    updated: int = 0
    conflicts_detected: int = 0
    conflicts_resolved: int = 0
    skipped: int = 0
    completed: int = 0
    not_found: int = 0
    errors: int = 0
    total: int = 0

    model_config = {"frozen": True}


class SyncReport(BaseModel):
    """Aggregate report for one orchestrator operation.

    Attributes:
        operation: ``"sync"``, ``"complete"`` or ``"mark_synced"``.
        source: System the inbound tasks came from.
        results: Per-task results, in input order.
        started_at: ISO 8601 timestamp when the run started.
        completed_at: ISO 8601 timestamp when the run finished.
        from_cache: True when served by the idempotency layer.
    """

    operation: str = "sync"
    source: Side
    results: list[TaskSyncResult] = []
    started_at: str
    completed_at: str | None = None
    from_cache: bool = False

    model_config = {"frozen": True}

    def count(self, *statuses: SyncStatus) -> int:
        return sum(1 for r in self.results if r.status in statuses)

    @property
    def errors(self) -> list[TaskSyncResult]:
        """Results whose status is ERROR."""
        return [r for r in self.results if r.status == SyncStatus.ERROR]

    @property
    def summary(self) -> SyncSummary:
        """Counts by status."""
        return SyncSummary(
            created=self.count(SyncStatus.CREATED),
            existing=self.count(
                SyncStatus.ALREADY_EXISTS, SyncStatus.UPDATED
            ),
            updated=self.count(SyncStatus.UPDATED),
            conflicts_detected=self.count(
                SyncStatus.CONFLICT_RESOLVED, SyncStatus.CONFLICT_STORED
            ),
            conflicts_resolved=self.count(SyncStatus.CONFLICT_RESOLVED),
            skipped=self.count(SyncStatus.SKIPPED),
            completed=self.count(SyncStatus.COMPLETED),
            not_found=self.count(SyncStatus.NOT_FOUND),
            errors=self.count(SyncStatus.ERROR),
            total=len(self.results),
        )


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class MetricError(BaseModel):
    """A failed run, kept in the day's recent-error list."""

    timestamp: str
    operation: str
    message: str

    model_config = {"frozen": True}


class SlowestRun(BaseModel):
    timestamp: str = ""
    operation: str = ""
    duration: float = 0.0


class OperationStats(BaseModel):
    """Per-operation counters for one day.

    ``durations`` keeps the most recent run durations (seconds) for
    percentile estimates.
    """

    count: int = 0
    success: int = 0
    failures: int = 0
    total_duration: float = 0.0
    tasks_processed: int = 0
    created: int = 0
    existing: int = 0
    completed: int = 0
    conflicts: int = 0
    task_errors: int = 0
    durations: list[float] = []


class DailyMetrics(BaseModel):
    """One ``metrics:daily:<date>`` record.  Mutable while recording."""

    date: str
    by_operation: dict[str, OperationStats] = Field(default_factory=dict)
    recent_errors: list[MetricError] = []
    slowest: SlowestRun = Field(default_factory=SlowestRun)


class OperationSummary(BaseModel):
    count: int = 0
    success_rate: float = 0.0
    average_duration: float = 0.0
    tasks_processed: int = 0


class TaskCounts(BaseModel):
    processed: int = 0
    created: int = 0
    existing: int = 0
    completed: int = 0
    conflicts: int = 0
    errors: int = 0


class MetricsSummary(BaseModel):
    """Aggregate over the daily records of a look-back window."""

    period_hours: int
    total_runs: int = 0
    success_rate: float = 0.0
    average_duration: float = 0.0
    by_operation: dict[str, OperationSummary] = Field(default_factory=dict)
    recent_errors: list[MetricError] = []
    tasks: TaskCounts = Field(default_factory=TaskCounts)
    p50_duration: float = 0.0
    p90_duration: float = 0.0
    p99_duration: float = 0.0
    slowest: SlowestRun = Field(default_factory=SlowestRun)

    model_config = {"frozen": True}
