"""Sync orchestrator: deduplicating, conflict-aware task mirroring.

``SyncOrchestrator`` takes a batch of tasks read from one system and
mirrors them into the other.  For every inbound task it:

1. Validates and filters the record (project / tag rules).
2. Fingerprints title, notes and due date.
3. Looks for an existing counterpart, cheapest lookup first:
   exact fingerprint, then the source task id (batch index, then the
   pre-fingerprint legacy key), then the title variations, then a scan
   of the destination's active tasks (back-reference tag, exact title,
   fuzzy title).
4. Creates the task on the destination when nothing matches, otherwise
   compares both live versions against the last agreed snapshot and
   propagates a one-sided change or resolves / stores a conflict.

Every run holds the sync lock, works on one ``MappingStore`` instance
and flushes it once at the end.  Errors are per task: a failed task is
reported with status ``error`` and the batch continues.  Only a corrupt
mapping record aborts the run.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Mapping, Sequence

from .. import validators
from ..core.async_utils import gather_limited, run_sync_limited
from ..core.retry import BASE_DELAY, call_with_backoff
from ..exceptions import (
    DestinationAPIError,
    ManualResolutionRequired,
    MappingStoreCorruptError,
)
from ..logger import request_context
from ..storage.kv import KVStore
from .adapters import TaskAdapter
from .filters import apply_filters
from .fingerprint import (
    extract_backref,
    fingerprint,
    is_similar_enough,
    primary_hash,
)
from .idempotency import IdempotencyLayer
from .lock import SyncLock
from .mapping_store import MappingStore
from .metrics import MetricsTracker, report_details
from .models import (
    CompletionRecord,
    ConflictStrategy,
    MappingSource,
    NewTask,
    Resolution,
    ResolvedTask,
    Side,
    SyncedContent,
    SyncReport,
    SyncStatus,
    TaskFingerprint,
    TaskMapping,
    TaskRecord,
    TaskSyncResult,
    TaskUpdate,
)
from .resolver import ConflictResolver, ConflictStore, changed_fields

if TYPE_CHECKING:
    from ..config_schema import SyncSettings

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "manual-sync-"


def is_placeholder(task_id: str | None) -> bool:
    """``True`` for ids recorded by ``mark_synced`` instead of a real task."""
    return bool(task_id) and task_id.startswith(PLACEHOLDER_PREFIX)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _content(task: TaskRecord | ResolvedTask) -> SyncedContent:
    return SyncedContent(
        title=task.title,
        notes=task.notes,
        due=task.due,
        tags=list(task.tags),
    )


def _update_between(
    current: TaskRecord,
    target: SyncedContent | ResolvedTask,
    include_tags: bool = False,
) -> TaskUpdate | None:
    """Fields that turn *current* into *target*, or ``None`` if equal."""
    fields: dict[str, Any] = {}
    if current.title != target.title:
        fields["title"] = target.title
    if (current.notes or "") != (target.notes or ""):
        fields["notes"] = target.notes or ""
    if (current.due or "").strip() != (target.due or "").strip():
        fields["due"] = target.due or ""
    target_tags = list(target.tags or [])
    if include_tags and sorted(current.tags) != sorted(target_tags):
        fields["tags"] = target_tags
    return TaskUpdate(**fields) if fields else None


@dataclass
class _Match:
    """A counterpart found for an inbound task."""

    match_type: MappingSource
    counterpart_id: str
    mapping: TaskMapping | None = None
    counterpart: TaskRecord | None = None


class _SyncRun:
    """Per-run state: the mapping store and a lazily fetched, cached
    listing of the destination system.
    """

    def __init__(
        self,
        store: MappingStore,
        source: Side,
        dest_adapter: TaskAdapter,
        retry_base_delay: float,
    ) -> None:
        self.store = store
        self.source = source
        self.dest = source.other
        self._dest_adapter = dest_adapter
        self._retry_base_delay = retry_base_delay
        self._dest_tasks: list[TaskRecord] | None = None
        self._dest_error: DestinationAPIError | None = None

    async def dest_tasks(self) -> list[TaskRecord]:
        """Active destination tasks, listed once per run.

        A listing failure is remembered and re-raised for every later
        task of the run instead of being retried again.
        """
        if self._dest_error is not None:
            raise self._dest_error
        if self._dest_tasks is None:
            try:
                self._dest_tasks = list(
                    await call_with_backoff(
                        self._dest_adapter.list_active_tasks,
                        False,
                        base_delay=self._retry_base_delay,
                    )
                )
            except DestinationAPIError as exc:
                self._dest_error = exc
                raise
        return self._dest_tasks

    async def find_dest(self, task_id: str) -> TaskRecord | None:
        for task in await self.dest_tasks():
            if task.id == task_id:
                return task
        return None

    def remember_dest(self, task: TaskRecord) -> None:
        """Insert or replace *task* in the cached listing, if loaded."""
        if self._dest_tasks is None:
            return
        self._dest_tasks = [t for t in self._dest_tasks if t.id != task.id]
        self._dest_tasks.append(task)


class SyncOrchestrator:
    """Mirror tasks between two systems without creating duplicates.

    Args:
        system_a: Adapter for the desktop task application.
        system_b: Adapter for the hosted task service.
        kv: Backing store shared by mappings, lock, idempotency records
            and conflicts.
        settings: Sync behaviour and filters; defaults apply when
            omitted.
        retry_base_delay: Base delay for destination retries.
        clock: Returns the current time in seconds; injectable for tests.
    """

    def __init__(
        self,
        system_a: TaskAdapter,
        system_b: TaskAdapter,
        kv: KVStore,
        settings: SyncSettings | None = None,
        *,
        retry_base_delay: float = BASE_DELAY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if settings is None:
            # Import here to avoid circular imports
            from ..config_schema import SyncSettings

            settings = SyncSettings()
        self.settings = settings
        self.adapters: dict[Side, TaskAdapter] = {
            Side.SYSTEM_A: system_a,
            Side.SYSTEM_B: system_b,
        }
        self.kv = kv
        self.retry_base_delay = retry_base_delay
        self.lock = SyncLock(kv, timeout=self.settings.lock_timeout, clock=clock)
        self.idempotency = IdempotencyLayer(
            kv, ttl_seconds=self.settings.idempotency_ttl, clock=clock
        )
        self.resolver = ConflictResolver(
            self.settings.conflict_strategy, clock=clock
        )
        self.conflicts = ConflictStore(kv, clock=clock)
        self.metrics = MetricsTracker(kv, clock=clock)

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        return await call_with_backoff(
            func, *args, base_delay=self.retry_base_delay
        )

    def _ids(self, source: Side, source_id: str, dest_id: str) -> tuple[str, str]:
        if source is Side.SYSTEM_A:
            return source_id, dest_id
        return dest_id, source_id

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync_batch(
        self,
        tasks: Sequence[TaskRecord | Mapping[str, Any]],
        source: Side,
        request_id: str | None = None,
    ) -> SyncReport:
        """Mirror *tasks* read from *source* into the other system.

        Args:
            tasks: Inbound records, in order.
            source: System the records were read from.
            request_id: Client request id; a repeat within the TTL returns
                the first report with ``from_cache=True``.

        Returns:
            ``SyncReport`` with one result per inbound task, input order.

        Raises:
            SyncInProgressError: Another run holds the lock.
            MappingStoreCorruptError: The mapping record is unreadable.
        """
        with request_context(request_id):
            outcome = await self.idempotency.with_idempotency(
                request_id,
                lambda: self.metrics.track(
                    "sync", lambda: self._run_sync(tasks, source), report_details
                ),
            )
        report = SyncReport.model_validate(outcome.result)
        if outcome.from_cache:
            report = report.model_copy(update={"from_cache": True})
        return report

    async def _run_sync(
        self, tasks: Sequence[TaskRecord | Mapping[str, Any]], source: Side
    ) -> SyncReport:
        started_at = _now_iso()
        logger.info(
            "Sync of %d tasks from %s starting", len(tasks), source.value
        )
        async with self.lock.held():
            run = _SyncRun(
                MappingStore(self.kv),
                source,
                self.adapters[source.other],
                self.retry_base_delay,
            )
            await run.store.load()
            results: list[TaskSyncResult] = []
            for raw in tasks:
                try:
                    result = await self._sync_one(run, raw)
                except MappingStoreCorruptError:
                    raise
                except Exception as exc:
                    task_id = validators.record_id(raw)
                    logger.error("Error syncing task %s: %s", task_id, exc)
                    result = TaskSyncResult(
                        task_id=task_id,
                        title=validators.record_title(raw),
                        status=SyncStatus.ERROR,
                        message=str(exc),
                    )
                results.append(result)
            await run.store.flush()

        report = SyncReport(
            operation="sync",
            source=source,
            results=results,
            started_at=started_at,
            completed_at=_now_iso(),
        )
        summary = report.summary
        logger.info(
            "Sync from %s finished: %d created, %d existing, %d conflicts, "
            "%d errors",
            source.value,
            summary.created,
            summary.existing,
            summary.conflicts_detected,
            summary.errors,
        )
        return report

    async def _sync_one(
        self, run: _SyncRun, raw: TaskRecord | Mapping[str, Any]
    ) -> TaskSyncResult:
        task = validators.coerce_task_record(raw)
        filtered, reason = apply_filters(task, self.settings)
        if filtered is None:
            logger.debug("Skipping task %s: %s", task.id, reason)
            return TaskSyncResult(
                task_id=task.id,
                title=task.title,
                status=SyncStatus.SKIPPED,
                message=reason,
            )
        task = filtered

        fp = fingerprint(task.title, task.notes, task.due)
        match = await self._find_match(run, task, fp)
        if match is None:
            return await self._create(run, task, fp)
        return await self._reconcile(run, task, match)

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    async def _find_match(
        self, run: _SyncRun, task: TaskRecord, fp: TaskFingerprint
    ) -> _Match | None:
        store = run.store
        source, dest = run.source, run.dest

        mapping = await store.get_by_fingerprint(fp.primary_hash)
        if mapping is not None:
            return _Match(MappingSource.HASH, mapping.id_for(dest), mapping)

        mapping = await store.get_by_side_id(source, task.id)
        if mapping is None:
            mapping = await store.get_legacy_by_side_id(
                source, task.id, default_hash=fp.primary_hash
            )
        if mapping is not None:
            return _Match(MappingSource.LEGACY, mapping.id_for(dest), mapping)

        for variation in fp.title_variations:
            mapping = await store.get_by_fingerprint(
                primary_hash(variation, task.notes, task.due)
            )
            if mapping is not None:
                return _Match(MappingSource.FUZZY, mapping.id_for(dest), mapping)

        return await self._scan_destination(run, task)

    async def _scan_destination(
        self, run: _SyncRun, task: TaskRecord
    ) -> _Match | None:
        """Degraded-mode fallback over the destination's active tasks."""
        store = run.store
        candidates: list[tuple[TaskRecord, TaskMapping | None]] = []
        for dest_task in await run.dest_tasks():
            existing = await store.get_by_side_id(run.dest, dest_task.id)
            if existing is not None:
                owner = existing.id_for(run.source)
                if owner and not is_placeholder(owner) and owner != task.id:
                    continue
            candidates.append((dest_task, existing))

        label = run.source.backref_label
        for dest_task, existing in candidates:
            if extract_backref(dest_task.notes, label) == task.id:
                return _Match(
                    MappingSource.LEGACY, dest_task.id, existing, dest_task
                )
        for dest_task, existing in candidates:
            if dest_task.title == task.title:
                return _Match(
                    MappingSource.EXACT, dest_task.id, existing, dest_task
                )
        for dest_task, existing in candidates:
            if is_similar_enough(dest_task.title, task.title):
                return _Match(
                    MappingSource.FUZZY, dest_task.id, existing, dest_task
                )
        return None

    # ------------------------------------------------------------------
    # Create / link / update
    # ------------------------------------------------------------------

    async def _save_mapping(
        self,
        store: MappingStore,
        previous: TaskMapping | None,
        *,
        system_a_id: str,
        system_b_id: str,
        content: SyncedContent | None,
        source: MappingSource,
        fp: TaskFingerprint | None = None,
        system_a_modified_at: str | None = None,
        system_b_modified_at: str | None = None,
    ) -> TaskMapping:
        """Store a mapping keyed by the fingerprint of *content*.

        Mappings previously holding either id are replaced.  Nothing is
        written when *previous* is already stored with the same values.
        """
        if fp is None:
            if content is not None:
                fp = fingerprint(content.title, content.notes, content.due)
            else:
                fp = previous.fingerprint  # type: ignore[union-attr]
        mapping = TaskMapping(
            system_a_id=system_a_id,
            system_b_id=system_b_id,
            fingerprint=fp,
            last_synced=_now_iso(),
            source=source,
            system_a_modified_at=system_a_modified_at,
            system_b_modified_at=system_b_modified_at,
            last_synced_content=content,
        )
        if previous is not None:
            same = previous.model_copy(
                update={"last_synced": mapping.last_synced}
            ) == mapping
            stored = await store.get_by_fingerprint(
                previous.fingerprint.primary_hash
            )
            if same and stored == previous:
                return previous
        await store.add(mapping)
        return mapping

    def _modified_times(
        self,
        source: Side,
        previous: TaskMapping | None,
        source_modified: str | None,
        dest_modified: str | None = None,
    ) -> dict[str, str | None]:
        a_prev = previous.system_a_modified_at if previous else None
        b_prev = previous.system_b_modified_at if previous else None
        if source is Side.SYSTEM_A:
            return {
                "system_a_modified_at": source_modified or a_prev,
                "system_b_modified_at": dest_modified or b_prev,
            }
        return {
            "system_a_modified_at": dest_modified or a_prev,
            "system_b_modified_at": source_modified or b_prev,
        }

    async def _create(
        self, run: _SyncRun, task: TaskRecord, fp: TaskFingerprint
    ) -> TaskSyncResult:
        new_task = NewTask(
            title=task.title, notes=task.notes, due=task.due, tags=task.tags
        )
        new_id = await self._call(self.adapters[run.dest].create_task, new_task)
        system_a_id, system_b_id = self._ids(run.source, task.id, new_id)
        await self._save_mapping(
            run.store,
            None,
            system_a_id=system_a_id,
            system_b_id=system_b_id,
            content=_content(task),
            source=MappingSource.EXACT,
            fp=fp,
            **self._modified_times(run.source, None, task.modified_at),
        )
        run.remember_dest(
            TaskRecord(
                id=new_id,
                title=task.title,
                notes=task.notes,
                due=task.due,
                tags=task.tags,
            )
        )
        logger.info(
            "Created %s task %s for %s", run.dest.value, new_id, task.id
        )
        return TaskSyncResult(
            task_id=task.id,
            title=task.title,
            status=SyncStatus.CREATED,
            counterpart_id=new_id,
        )

    async def _reconcile(
        self, run: _SyncRun, task: TaskRecord, match: _Match
    ) -> TaskSyncResult:
        mapping = match.mapping
        dest_id = match.counterpart_id

        # Keep the recorded source id unless it is missing or a
        # placeholder; a second source task with identical content maps
        # onto the same counterpart.
        source_id = task.id
        if mapping is not None:
            recorded = mapping.id_for(run.source)
            if recorded and not is_placeholder(recorded):
                source_id = recorded
        system_a_id, system_b_id = self._ids(run.source, source_id, dest_id)
        source_kind = mapping.source if mapping is not None else match.match_type

        def result(status: SyncStatus, **extra: Any) -> TaskSyncResult:
            return TaskSyncResult(
                task_id=task.id,
                title=task.title,
                status=status,
                match_type=match.match_type,
                counterpart_id=dest_id,
                **extra,
            )

        base = mapping.last_synced_content if mapping is not None else None
        if base is None or not dest_id or is_placeholder(dest_id):
            await self._save_mapping(
                run.store,
                mapping,
                system_a_id=system_a_id,
                system_b_id=system_b_id,
                content=base or _content(task),
                source=source_kind,
                **self._modified_times(run.source, mapping, task.modified_at),
            )
            return result(SyncStatus.ALREADY_EXISTS)

        live_dest = match.counterpart or await run.find_dest(dest_id)
        if live_dest is None:
            logger.info(
                "Counterpart %s of %s is not active, leaving it", dest_id, task.id
            )
            return result(
                SyncStatus.ALREADY_EXISTS, message="counterpart not active"
            )

        source_changed = changed_fields(task, base)
        dest_changed = changed_fields(live_dest, base)

        if source_changed and dest_changed:
            if not changed_fields(task, _content(live_dest)):
                # Both sides made the same edit.
                await self._save_mapping(
                    run.store,
                    mapping,
                    system_a_id=system_a_id,
                    system_b_id=system_b_id,
                    content=_content(task),
                    source=source_kind,
                    **self._modified_times(
                        run.source, mapping, task.modified_at, live_dest.modified_at
                    ),
                )
                return result(SyncStatus.ALREADY_EXISTS)
            return await self._handle_conflict(
                run, task, live_dest, mapping, result  # type: ignore[arg-type]
            )

        if source_changed:
            target = _content(task)
            update = _update_between(live_dest, target)
            if update is not None:
                await self._call(
                    self.adapters[run.dest].update_task, dest_id, update
                )
            run.remember_dest(
                live_dest.model_copy(
                    update={"title": task.title, "notes": task.notes, "due": task.due}
                )
            )
            await self._save_mapping(
                run.store,
                mapping,
                system_a_id=system_a_id,
                system_b_id=system_b_id,
                content=target,
                source=source_kind,
                **self._modified_times(run.source, mapping, task.modified_at),
            )
            logger.info(
                "Updated %s task %s from %s", run.dest.value, dest_id, task.id
            )
            return result(SyncStatus.UPDATED)

        await self._save_mapping(
            run.store,
            mapping,
            system_a_id=system_a_id,
            system_b_id=system_b_id,
            content=base,
            source=source_kind,
            fp=mapping.fingerprint,  # type: ignore[union-attr]
            **self._modified_times(run.source, mapping, task.modified_at),
        )
        return result(SyncStatus.ALREADY_EXISTS)

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    async def _handle_conflict(
        self,
        run: _SyncRun,
        task: TaskRecord,
        live_dest: TaskRecord,
        mapping: TaskMapping,
        result: Callable[..., TaskSyncResult],
    ) -> TaskSyncResult:
        if run.source is Side.SYSTEM_A:
            live_a, live_b = task, live_dest
        else:
            live_a, live_b = live_dest, task

        conflict = self.resolver.detect_conflict(live_a, live_b, mapping)
        if conflict is None:
            return result(SyncStatus.ALREADY_EXISTS)

        strategy = self.settings.conflict_strategy
        if (
            self.settings.auto_resolve_conflicts
            and strategy is not ConflictStrategy.MANUAL
        ):
            try:
                resolution = self.resolver.resolve(conflict)
            except ManualResolutionRequired:
                pass
            else:
                await self._apply_resolution(
                    run.store, mapping, live_a, live_b, resolution
                )
                run.remember_dest(
                    live_dest.model_copy(
                        update=resolution.resolved_task.model_dump()
                    )
                )
                logger.info(
                    "Conflict %s resolved with %s",
                    conflict.id,
                    resolution.applied_strategy.value,
                )
                return result(
                    SyncStatus.CONFLICT_RESOLVED, conflict_id=conflict.id
                )

        stored = await self.conflicts.store_conflict(conflict)
        return result(SyncStatus.CONFLICT_STORED, conflict_id=stored.id)

    async def _apply_resolution(
        self,
        store: MappingStore,
        mapping: TaskMapping,
        live_a: TaskRecord,
        live_b: TaskRecord,
        resolution: Resolution,
    ) -> TaskMapping:
        """Push resolved content to whichever side lacks it and re-key."""
        resolved = resolution.resolved_task
        for side, live in ((Side.SYSTEM_A, live_a), (Side.SYSTEM_B, live_b)):
            update = _update_between(live, resolved, include_tags=True)
            if update is not None:
                await self._call(self.adapters[side].update_task, live.id, update)

        now = _now_iso()
        return await self._save_mapping(
            store,
            mapping,
            system_a_id=mapping.system_a_id or live_a.id,
            system_b_id=mapping.system_b_id or live_b.id,
            content=_content(resolved),
            source=mapping.source,
            system_a_modified_at=now,
            system_b_modified_at=now,
        )

    async def resolve_stored_conflict(
        self,
        conflict_id: str,
        strategy: str | ConflictStrategy | None = None,
    ) -> Resolution:
        """Apply a human decision to a stored conflict.

        The resolved content is pushed to both systems, the mapping
        snapshot is updated and the conflict is marked resolved.

        Raises:
            ValueError: If no such conflict is stored, or the strategy
                is unknown.
            ManualResolutionRequired: If *strategy* is ``manual``.
            SyncInProgressError: Another run holds the lock.
        """
        conflict = await self.conflicts.get_conflict(conflict_id)
        if conflict is None:
            raise ValueError(f"Unknown conflict: '{conflict_id}'")
        resolution = self.resolver.resolve(
            conflict, strategy or self.settings.conflict_strategy
        )

        async with self.lock.held():
            store = MappingStore(self.kv)
            mapping = await store.get_by_system_a_id(
                conflict.system_a_id
            ) or await store.get_by_system_b_id(conflict.system_b_id)
            live_a = TaskRecord(
                id=conflict.system_a_id,
                **conflict.system_a_version.model_dump(exclude={"modified_at"}),
            )
            live_b = TaskRecord(
                id=conflict.system_b_id,
                **conflict.system_b_version.model_dump(exclude={"modified_at"}),
            )
            if mapping is None:
                mapping = TaskMapping(
                    system_a_id=conflict.system_a_id,
                    system_b_id=conflict.system_b_id,
                    fingerprint=fingerprint(live_a.title, live_a.notes, live_a.due),
                    last_synced=_now_iso(),
                )
            await self._apply_resolution(store, mapping, live_a, live_b, resolution)
            await store.flush()

        await self.conflicts.mark_resolved(conflict_id)
        logger.info(
            "Stored conflict %s resolved with %s",
            conflict_id,
            resolution.applied_strategy.value,
        )
        return resolution

    # ------------------------------------------------------------------
    # Completion propagation
    # ------------------------------------------------------------------

    async def sync_completed(
        self,
        completions: Sequence[CompletionRecord],
        source: Side,
        request_id: str | None = None,
    ) -> SyncReport:
        """Close the counterparts of tasks completed on *source*.

        Already closed or deleted counterparts count as completed.
        """
        with request_context(request_id):
            outcome = await self.idempotency.with_idempotency(
                request_id,
                lambda: self.metrics.track(
                    "complete",
                    lambda: self._run_completed(completions, source),
                    report_details,
                ),
            )
        report = SyncReport.model_validate(outcome.result)
        if outcome.from_cache:
            report = report.model_copy(update={"from_cache": True})
        return report

    async def _run_completed(
        self, completions: Sequence[CompletionRecord], source: Side
    ) -> SyncReport:
        started_at = _now_iso()
        async with self.lock.held():
            run = _SyncRun(
                MappingStore(self.kv),
                source,
                self.adapters[source.other],
                self.retry_base_delay,
            )
            await run.store.load()
            results = []
            for record in completions:
                try:
                    result = await self._complete_one(run, record)
                except MappingStoreCorruptError:
                    raise
                except Exception as exc:
                    logger.error(
                        "Error completing task %s: %s", record.task_id, exc
                    )
                    result = TaskSyncResult(
                        task_id=record.task_id,
                        status=SyncStatus.ERROR,
                        message=str(exc),
                    )
                results.append(result)
            await run.store.flush()

        return SyncReport(
            operation="complete",
            source=source,
            results=results,
            started_at=started_at,
            completed_at=_now_iso(),
        )

    async def _complete_one(
        self, run: _SyncRun, record: CompletionRecord
    ) -> TaskSyncResult:
        match_type = MappingSource.LEGACY
        mapping = await run.store.get_by_side_id(run.source, record.task_id)
        if mapping is None:
            mapping = await run.store.get_legacy_by_side_id(
                run.source, record.task_id
            )

        dest_id = mapping.id_for(run.dest) if mapping is not None else ""
        if not dest_id:
            label = run.source.backref_label
            for dest_task in await run.dest_tasks():
                if extract_backref(dest_task.notes, label) == record.task_id:
                    dest_id = dest_task.id
                    break

        if not dest_id or is_placeholder(dest_id):
            return TaskSyncResult(
                task_id=record.task_id,
                status=SyncStatus.NOT_FOUND,
                message="no counterpart",
            )

        closed = await self._call(self.adapters[run.dest].close_task, dest_id)
        if not closed:
            return TaskSyncResult(
                task_id=record.task_id,
                status=SyncStatus.ERROR,
                match_type=match_type,
                counterpart_id=dest_id,
                message="close failed",
            )
        logger.info(
            "Closed %s task %s (completed %s)",
            run.dest.value,
            dest_id,
            record.task_id,
        )
        return TaskSyncResult(
            task_id=record.task_id,
            status=SyncStatus.COMPLETED,
            match_type=match_type,
            counterpart_id=dest_id,
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def mark_synced(self, side: Side) -> SyncReport:
        """Record every active task of *side* as already synced.

        Unmapped tasks get a mapping with a ``manual-sync-`` placeholder
        counterpart so later runs neither create nor match them.
        """
        started_at = _now_iso()
        tasks = await self._call(self.adapters[side].list_active_tasks, False)
        async with self.lock.held():
            store = MappingStore(self.kv)
            results: list[TaskSyncResult] = []
            for task in tasks:
                fp = fingerprint(task.title, task.notes, task.due)
                if await store.get_by_side_id(side, task.id) or await store.has(
                    fp.primary_hash
                ):
                    results.append(
                        TaskSyncResult(
                            task_id=task.id,
                            title=task.title,
                            status=SyncStatus.SKIPPED,
                            message="already mapped",
                        )
                    )
                    continue
                placeholder = f"{PLACEHOLDER_PREFIX}{uuid.uuid4().hex}"
                system_a_id, system_b_id = self._ids(side, task.id, placeholder)
                await self._save_mapping(
                    store,
                    None,
                    system_a_id=system_a_id,
                    system_b_id=system_b_id,
                    content=None,
                    source=MappingSource.EXACT,
                    fp=fp,
                )
                results.append(
                    TaskSyncResult(
                        task_id=task.id,
                        title=task.title,
                        status=SyncStatus.CREATED,
                        counterpart_id=placeholder,
                        message="marked as synced",
                    )
                )
            await store.flush()

        return SyncReport(
            operation="mark_synced",
            source=side,
            results=results,
            started_at=started_at,
            completed_at=_now_iso(),
        )

    async def unlink(self, primary_hash: str) -> bool:
        """Remove one mapping by fingerprint.

        Returns:
            ``False`` if no mapping had that fingerprint.
        """
        async with self.lock.held():
            store = MappingStore(self.kv)
            existed = await store.has(primary_hash)
            await store.remove(primary_hash)
            await store.flush()
        if existed:
            logger.info("Unlinked mapping %s", primary_hash)
        return existed

    async def migrate_legacy(
        self, page_size: int = 100, max_pages: int | None = None
    ) -> int:
        """Fold legacy per-key mappings into the aggregate record."""
        async with self.lock.held():
            store = MappingStore(self.kv)
            return await store.migrate_legacy_entries(page_size, max_pages)

    async def pending_tasks(self, side: Side) -> list[TaskRecord]:
        """Active tasks of *side* that no mapping covers yet.

        Fingerprints are computed concurrently; lookups run against one
        loaded mapping store.
        """
        tasks = await self._call(self.adapters[side].list_active_tasks, True)
        store = MappingStore(self.kv)
        await store.load()
        fingerprints = await gather_limited(
            [
                run_sync_limited(fingerprint, t.title, t.notes, t.due)
                for t in tasks
            ]
        )
        pending = []
        for task, fp in zip(tasks, fingerprints):
            if await store.get_by_side_id(side, task.id):
                continue
            if await store.has(fp.primary_hash):
                continue
            pending.append(task)
        return pending

    async def status(self, metrics_hours: int = 24) -> dict[str, Any]:
        """Snapshot of lock, mapping and conflict state.

        ``metrics`` summarises the runs of the last *metrics_hours*.
        """
        store = MappingStore(self.kv)
        state = await store.load()
        unresolved = await self.conflicts.get_unresolved_conflicts()
        return {
            "lock_held": await self.lock.is_held(),
            "mapping_count": len(state.mappings),
            "last_updated": state.last_updated,
            "stats": state.stats.model_dump(),
            "unresolved_conflicts": len(unresolved),
            "metrics": (
                await self.metrics.get_metrics_summary(metrics_hours)
            ).model_dump(mode="json"),
        }

    async def cleanup(self) -> dict[str, int]:
        """Drop expired conflicts and metrics records older than a week.

        Returns:
            ``{"conflicts": n, "metrics": m}`` counts of removed records.
        """
        return {
            "conflicts": await self.conflicts.cleanup_expired(),
            "metrics": await self.metrics.cleanup_old_metrics(),
        }
