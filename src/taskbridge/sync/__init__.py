"""Deduplicating two-way task sync engine.

Public API for mirroring tasks between a desktop task application
(System A) and a hosted task service (System B) without creating
duplicates, even when a sync is retried or interrupted.

Architecture
------------
Every task is identified by a **content fingerprint** (normalized title,
notes and due date).  Links between the two systems live in one
aggregate mapping record that is loaded once per run and flushed once at
the end.  Each link keeps a snapshot of the last agreed content; both
live versions are compared against it to tell a one-sided edit from a
conflict.

Modules:

- ``engine``        -- ``SyncOrchestrator``: batch sync, completion
  propagation, conflict resolution and maintenance operations.
- ``fingerprint``   -- normalization, hashing and fuzzy similarity.
- ``mapping_store`` -- ``MappingStore``: the aggregate mapping record.
- ``resolver``      -- ``ConflictResolver`` strategies and
  ``ConflictStore``.
- ``lock``          -- ``SyncLock``: one run at a time.
- ``idempotency``   -- ``IdempotencyLayer``: request-id result cache.
- ``metrics``       -- ``MetricsTracker``: daily run counters.
- ``filters``       -- project and tag rules.
- ``adapters``      -- ``TaskAdapter`` protocol for both systems.
- ``models``        -- data contracts.
- ``reporter``      -- human-readable and JSON report formatting.

Usage example
-------------
::

    from taskbridge.core.client import TodoistAdapter, TodoistClient
    from taskbridge.storage import JsonFileKVStore
    from taskbridge.sync import Side, SyncOrchestrator, format_sync_report

    orchestrator = SyncOrchestrator(
        system_a=things_adapter,     # any TaskAdapter
        system_b=TodoistAdapter(TodoistClient(token)),
        kv=JsonFileKVStore("~/.taskbridge/state.json"),
    )

    report = await orchestrator.sync_batch(
        tasks, Side.SYSTEM_A, request_id="run-42"
    )
    print(format_sync_report(report))
"""

from .adapters import TaskAdapter
from .fingerprint import fingerprint, is_similar_enough, normalize, similarity
from .idempotency import IdempotencyLayer
from .lock import SyncLock
from .mapping_store import MappingStore
from .metrics import MetricsTracker
from .models import (
    CompletionRecord,
    ConflictStrategy,
    MappingSource,
    NewTask,
    Side,
    SyncConflict,
    SyncReport,
    SyncStatus,
    TaskMapping,
    TaskRecord,
    TaskSyncResult,
    TaskUpdate,
)
from .resolver import ConflictResolver, ConflictStore
from .engine import SyncOrchestrator
from .reporter import (
    format_conflict,
    format_status,
    format_sync_report,
    report_to_json,
)

__all__ = [
    "CompletionRecord",
    "ConflictResolver",
    "ConflictStore",
    "ConflictStrategy",
    "IdempotencyLayer",
    "MappingSource",
    "MappingStore",
    "MetricsTracker",
    "NewTask",
    "Side",
    "SyncConflict",
    "SyncLock",
    "SyncOrchestrator",
    "SyncReport",
    "SyncStatus",
    "TaskAdapter",
    "TaskMapping",
    "TaskRecord",
    "TaskSyncResult",
    "TaskUpdate",
    "fingerprint",
    "format_conflict",
    "format_status",
    "format_sync_report",
    "is_similar_enough",
    "normalize",
    "similarity",
    "report_to_json",
]
