"""End-to-end tests for the sync orchestrator over fake task systems."""

from __future__ import annotations

import json

import pytest

from taskbridge.exceptions import (
    DestinationAPIError,
    MappingStoreCorruptError,
    SyncInProgressError,
    TransientAPIError,
)
from taskbridge.logger import current_request_id
from taskbridge.sync.engine import PLACEHOLDER_PREFIX, is_placeholder
from taskbridge.sync.fingerprint import fingerprint
from taskbridge.sync.lock import SyncLock
from taskbridge.sync.mapping_store import STATE_KEY, MappingStore, legacy_mapping_key
from taskbridge.sync.models import (
    CompletionRecord,
    ConflictStrategy,
    MappingSource,
    Side,
    SyncStatus,
    TaskMapping,
    TaskRecord,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _task(task_id: str, title: str, **fields) -> TaskRecord:
    return TaskRecord(id=task_id, title=title, **fields)


MILK = _task("b1", "Buy milk", notes="2%")


async def _mapping_for(kv, side: Side, task_id: str):
    return await MappingStore(kv).get_by_side_id(side, task_id)


async def _linked(orchestrator, system_a, system_b):
    """Sync MILK from System B and return the System A counterpart id."""
    system_b.add(MILK)
    report = await orchestrator.sync_batch([MILK], Side.SYSTEM_B)
    assert report.results[0].status == SyncStatus.CREATED
    return report.results[0].counterpart_id


# ---------------------------------------------------------------------------
# Create and re-sync
# ---------------------------------------------------------------------------


class TestCreateAndMatch:
    async def test_new_task_is_created(self, orchestrator, system_a, kv) -> None:
        report = await orchestrator.sync_batch([MILK], Side.SYSTEM_B)

        assert report.summary.created == 1
        assert report.summary.total == 1
        result = report.results[0]
        assert result.status == SyncStatus.CREATED
        created = system_a.tasks[result.counterpart_id]
        assert created.title == "Buy milk"
        assert created.notes == "2%"

        fp = fingerprint("Buy milk", "2%", None).primary_hash
        mapping = await MappingStore(kv).get_by_fingerprint(fp)
        assert mapping.source == MappingSource.EXACT
        assert mapping.system_b_id == "b1"
        assert mapping.system_a_id == result.counterpart_id
        assert mapping.last_synced_content.title == "Buy milk"

    async def test_resync_matches_existing(self, orchestrator, system_a, kv) -> None:
        await orchestrator.sync_batch([MILK], Side.SYSTEM_B)
        report = await orchestrator.sync_batch([MILK], Side.SYSTEM_B)

        assert report.summary.created == 0
        assert report.summary.existing == 1
        assert report.results[0].status == SyncStatus.ALREADY_EXISTS
        assert report.results[0].match_type == MappingSource.HASH
        assert len(system_a.created()) == 1
        assert await MappingStore(kv).count() == 1

    async def test_duplicate_within_batch_created_once(
        self, orchestrator, system_a
    ) -> None:
        twin = _task("b2", "Buy milk", notes="2%")
        report = await orchestrator.sync_batch([MILK, twin], Side.SYSTEM_B)

        assert [r.status for r in report.results] == [
            SyncStatus.CREATED,
            SyncStatus.ALREADY_EXISTS,
        ]
        assert len(system_a.created()) == 1

    async def test_results_preserve_input_order(self, orchestrator) -> None:
        tasks = [_task(f"b{i}", f"Task number {i}") for i in range(5)]
        report = await orchestrator.sync_batch(tasks, Side.SYSTEM_B)
        assert [r.task_id for r in report.results] == [t.id for t in tasks]

    async def test_accepts_plain_mappings(self, orchestrator, system_a) -> None:
        raw = {"id": 7, "content": "Call Bob", "description": "re: taxes", "labels": None}
        report = await orchestrator.sync_batch([raw], Side.SYSTEM_B)
        assert report.results[0].status == SyncStatus.CREATED
        assert report.results[0].task_id == "7"
        (created,) = system_a.tasks.values()
        assert created.notes == "re: taxes"

    async def test_single_flush_per_run(self, orchestrator, kv) -> None:
        puts = []
        original = kv.put

        async def _put(key, value, ttl_seconds=None):
            puts.append(key)
            await original(key, value, ttl_seconds)

        kv.put = _put
        tasks = [_task(f"b{i}", f"Task number {i}") for i in range(4)]
        await orchestrator.sync_batch(tasks, Side.SYSTEM_B)
        assert puts.count(STATE_KEY) == 1

    async def test_request_id_bound_for_logging(self, orchestrator, system_a) -> None:
        seen = []
        original = system_a.create_task

        async def _create(task):
            seen.append(current_request_id.get())
            return await original(task)

        system_a.create_task = _create
        await orchestrator.sync_batch([MILK], Side.SYSTEM_B, request_id="req-7")
        assert seen == ["req-7"]
        assert current_request_id.get() is None


# ---------------------------------------------------------------------------
# Fallback matching
# ---------------------------------------------------------------------------


class TestFallbackMatching:
    async def test_fuzzy_title_links_without_create(
        self, orchestrator, system_a, kv
    ) -> None:
        system_a.add(_task("A7", "Prepare quarterly report"))
        inbound = _task("b1", "Prepare quarterly reports")

        report = await orchestrator.sync_batch([inbound], Side.SYSTEM_B)

        result = report.results[0]
        assert result.status == SyncStatus.ALREADY_EXISTS
        assert result.match_type == MappingSource.FUZZY
        assert result.counterpart_id == "A7"
        assert system_a.created() == []
        mapping = await _mapping_for(kv, Side.SYSTEM_B, "b1")
        assert mapping.system_a_id == "A7"
        assert mapping.source == MappingSource.FUZZY

    async def test_title_variation_hash_hit(self, orchestrator, system_a, kv) -> None:
        # Linked earlier as "BuyMilk"; its hash equals the space-removed
        # variation of "Buy milk".
        store = MappingStore(kv)
        await store.add(
            TaskMapping(
                system_a_id="A7",
                system_b_id="b0",
                fingerprint=fingerprint("BuyMilk", "2%"),
                last_synced="2024-04-01T00:00:00+00:00",
            )
        )
        await store.flush()
        system_a.add(_task("A7", "BuyMilk", notes="2%"))

        report = await orchestrator.sync_batch([MILK], Side.SYSTEM_B)

        result = report.results[0]
        assert result.status == SyncStatus.ALREADY_EXISTS
        assert result.match_type == MappingSource.FUZZY
        assert result.counterpart_id == "A7"
        assert system_a.created() == []
        assert ("list_active_tasks", False) not in system_a.calls

    async def test_exact_title_match(self, orchestrator, system_a) -> None:
        system_a.add(_task("A7", "Buy milk", notes="different notes"))
        report = await orchestrator.sync_batch([MILK], Side.SYSTEM_B)
        assert report.results[0].match_type == MappingSource.EXACT
        assert report.results[0].counterpart_id == "A7"

    async def test_backref_in_notes(self, orchestrator, system_a) -> None:
        system_a.add(_task("A7", "Something else", notes="[todoist-id:b1]"))
        report = await orchestrator.sync_batch([MILK], Side.SYSTEM_B)
        assert report.results[0].match_type == MappingSource.LEGACY
        assert report.results[0].counterpart_id == "A7"

    async def test_dest_task_linked_to_other_source_is_skipped(
        self, orchestrator, system_a
    ) -> None:
        await orchestrator.sync_batch([MILK], Side.SYSTEM_B)
        similar = _task("b2", "Buy milk!", notes="3%")
        report = await orchestrator.sync_batch([similar], Side.SYSTEM_B)
        assert report.results[0].status == SyncStatus.CREATED
        assert len(system_a.created()) == 2

    async def test_legacy_per_task_record(self, orchestrator, kv, system_a) -> None:
        await kv.put(
            legacy_mapping_key(Side.SYSTEM_B, "b1"),
            json.dumps({"thingsId": "T9", "todoistId": "b1", "version": 1}),
        )
        report = await orchestrator.sync_batch([MILK], Side.SYSTEM_B)

        result = report.results[0]
        assert result.status == SyncStatus.ALREADY_EXISTS
        assert result.match_type == MappingSource.LEGACY
        assert result.counterpart_id == "T9"
        assert system_a.created() == []
        assert (await _mapping_for(kv, Side.SYSTEM_B, "b1")).system_a_id == "T9"


# ---------------------------------------------------------------------------
# Updates and conflicts
# ---------------------------------------------------------------------------


class TestUpdatesAndConflicts:
    async def test_one_sided_change_is_pushed(
        self, orchestrator, system_a, system_b, kv
    ) -> None:
        a_id = await _linked(orchestrator, system_a, system_b)
        edited = system_a.tasks[a_id].model_copy(update={"title": "Buy oat milk"})
        system_a.add(edited)

        report = await orchestrator.sync_batch([edited], Side.SYSTEM_A)

        assert report.results[0].status == SyncStatus.UPDATED
        assert system_b.tasks["b1"].title == "Buy oat milk"
        mapping = await _mapping_for(kv, Side.SYSTEM_A, a_id)
        assert mapping.last_synced_content.title == "Buy oat milk"
        assert mapping.fingerprint == fingerprint("Buy oat milk", "2%", None)
        assert await MappingStore(kv).count() == 1

    async def test_change_only_on_destination_is_left_alone(
        self, orchestrator, system_a, system_b
    ) -> None:
        a_id = await _linked(orchestrator, system_a, system_b)
        system_a.add(system_a.tasks[a_id].model_copy(update={"title": "Edited in A"}))

        report = await orchestrator.sync_batch([MILK], Side.SYSTEM_B)

        assert report.results[0].status == SyncStatus.ALREADY_EXISTS
        assert system_a.updates() == []
        assert system_a.tasks[a_id].title == "Edited in A"

    async def test_conflict_auto_resolved_newest_wins(
        self, orchestrator, system_a, system_b, kv
    ) -> None:
        a_id = await _linked(orchestrator, system_a, system_b)
        system_a.add(
            system_a.tasks[a_id].model_copy(
                update={"title": "Updated A", "modified_at": "2024-05-01T12:00:00Z"}
            )
        )
        b_edit = MILK.model_copy(
            update={"title": "Updated B", "modified_at": "2024-05-01T10:00:00Z"}
        )
        system_b.add(b_edit)

        report = await orchestrator.sync_batch([b_edit], Side.SYSTEM_B)

        result = report.results[0]
        assert result.status == SyncStatus.CONFLICT_RESOLVED
        assert result.conflict_id.startswith("conflict-")
        assert report.summary.conflicts_detected == 1
        assert report.summary.conflicts_resolved == 1
        assert system_b.tasks["b1"].title == "Updated A"
        assert system_a.tasks[a_id].title == "Updated A"
        mapping = await _mapping_for(kv, Side.SYSTEM_B, "b1")
        assert mapping.last_synced_content.title == "Updated A"

    async def test_conflict_merge_pushes_to_both_sides(
        self, make_orchestrator, system_a, system_b
    ) -> None:
        orchestrator = make_orchestrator(conflict_strategy="merge")
        a_id = await _linked(orchestrator, system_a, system_b)
        system_a.add(
            system_a.tasks[a_id].model_copy(
                update={"title": "Buy oat milk", "due": "2024-06-01"}
            )
        )
        b_edit = MILK.model_copy(update={"notes": "skim"})
        system_b.add(b_edit)

        report = await orchestrator.sync_batch([b_edit], Side.SYSTEM_B)

        assert report.results[0].status == SyncStatus.CONFLICT_RESOLVED
        for system, task_id in ((system_a, a_id), (system_b, "b1")):
            assert system.tasks[task_id].title == "Buy oat milk"
            assert system.tasks[task_id].notes == "skim"
            assert system.tasks[task_id].due == "2024-06-01"

    async def test_identical_edits_on_both_sides(
        self, orchestrator, system_a, system_b, kv
    ) -> None:
        a_id = await _linked(orchestrator, system_a, system_b)
        system_a.add(system_a.tasks[a_id].model_copy(update={"title": "Same"}))
        b_edit = MILK.model_copy(update={"title": "Same"})

        report = await orchestrator.sync_batch([b_edit], Side.SYSTEM_B)

        assert report.results[0].status == SyncStatus.ALREADY_EXISTS
        assert system_a.updates() == []
        mapping = await _mapping_for(kv, Side.SYSTEM_B, "b1")
        assert mapping.last_synced_content.title == "Same"

    async def test_manual_strategy_stores_conflict(
        self, make_orchestrator, system_a, system_b
    ) -> None:
        orchestrator = make_orchestrator(conflict_strategy="manual")
        a_id = await _linked(orchestrator, system_a, system_b)
        system_a.add(system_a.tasks[a_id].model_copy(update={"title": "Updated A"}))
        b_edit = MILK.model_copy(update={"title": "Updated B"})
        system_b.add(b_edit)

        report = await orchestrator.sync_batch([b_edit], Side.SYSTEM_B)

        result = report.results[0]
        assert result.status == SyncStatus.CONFLICT_STORED
        assert system_a.updates() == system_b.updates() == []
        unresolved = await orchestrator.conflicts.get_unresolved_conflicts()
        assert [c.id for c in unresolved] == [result.conflict_id]
        assert unresolved[0].system_a_version.title == "Updated A"
        assert unresolved[0].system_b_version.title == "Updated B"

    async def test_rerun_keeps_one_pending_conflict(
        self, make_orchestrator, system_a, system_b, clock
    ) -> None:
        orchestrator = make_orchestrator(conflict_strategy="manual")
        a_id = await _linked(orchestrator, system_a, system_b)
        system_a.add(system_a.tasks[a_id].model_copy(update={"title": "Updated A"}))
        b_edit = MILK.model_copy(update={"title": "Updated B"})
        system_b.add(b_edit)

        ids = []
        for _ in range(3):
            report = await orchestrator.sync_batch([b_edit], Side.SYSTEM_B)
            assert report.results[0].status == SyncStatus.CONFLICT_STORED
            ids.append(report.results[0].conflict_id)
            clock.advance(1)

        unresolved = await orchestrator.conflicts.get_unresolved_conflicts()
        assert [c.id for c in unresolved] == [ids[-1]]

        await orchestrator.resolve_stored_conflict(ids[-1], "system_a_wins")
        assert await orchestrator.conflicts.get_unresolved_conflicts() == []

    async def test_auto_resolve_off_stores_conflict(
        self, make_orchestrator, system_a, system_b
    ) -> None:
        orchestrator = make_orchestrator(auto_resolve_conflicts=False)
        a_id = await _linked(orchestrator, system_a, system_b)
        system_a.add(system_a.tasks[a_id].model_copy(update={"title": "Updated A"}))
        b_edit = MILK.model_copy(update={"title": "Updated B"})

        report = await orchestrator.sync_batch([b_edit], Side.SYSTEM_B)
        assert report.results[0].status == SyncStatus.CONFLICT_STORED

    async def test_resolve_stored_conflict(
        self, make_orchestrator, system_a, system_b, kv
    ) -> None:
        orchestrator = make_orchestrator(conflict_strategy="manual")
        a_id = await _linked(orchestrator, system_a, system_b)
        system_a.add(system_a.tasks[a_id].model_copy(update={"title": "Updated A"}))
        b_edit = MILK.model_copy(update={"title": "Updated B"})
        system_b.add(b_edit)
        report = await orchestrator.sync_batch([b_edit], Side.SYSTEM_B)
        conflict_id = report.results[0].conflict_id

        resolution = await orchestrator.resolve_stored_conflict(
            conflict_id, "system_b_wins"
        )

        assert resolution.applied_strategy == ConflictStrategy.SYSTEM_B_WINS
        assert system_a.tasks[a_id].title == "Updated B"
        assert await orchestrator.conflicts.get_unresolved_conflicts() == []
        mapping = await _mapping_for(kv, Side.SYSTEM_A, a_id)
        assert mapping.last_synced_content.title == "Updated B"
        assert not await orchestrator.lock.is_held()

        again = await orchestrator.sync_batch(
            [system_b.tasks["b1"]], Side.SYSTEM_B
        )
        assert again.results[0].status == SyncStatus.ALREADY_EXISTS

    async def test_resolve_unknown_conflict(self, orchestrator) -> None:
        with pytest.raises(ValueError, match="Unknown conflict"):
            await orchestrator.resolve_stored_conflict("conflict-nope", "merge")


# ---------------------------------------------------------------------------
# Errors, filters, locking, idempotency
# ---------------------------------------------------------------------------


class TestFailures:
    async def test_one_failure_does_not_abort_batch(
        self, orchestrator, system_a
    ) -> None:
        system_a.fail_next["create_task"] = [DestinationAPIError("bad request", 400)]
        tasks = [_task("b1", "First task"), _task("b2", "Second task")]

        report = await orchestrator.sync_batch(tasks, Side.SYSTEM_B)

        assert [r.status for r in report.results] == [
            SyncStatus.ERROR,
            SyncStatus.CREATED,
        ]
        assert report.results[0].message == "bad request"
        assert report.summary.errors == 1
        assert len(report.errors) == 1

    async def test_transient_errors_retried(self, orchestrator, system_a) -> None:
        system_a.fail_next["create_task"] = [
            TransientAPIError("429", 429),
            TransientAPIError("503", 503),
        ]
        report = await orchestrator.sync_batch([MILK], Side.SYSTEM_B)
        assert report.results[0].status == SyncStatus.CREATED
        assert len(system_a.created()) == 3

    async def test_transient_errors_give_up_after_cap(
        self, orchestrator, system_a
    ) -> None:
        system_a.fail_next["create_task"] = [TransientAPIError("503", 503)] * 4
        report = await orchestrator.sync_batch([MILK], Side.SYSTEM_B)
        assert report.results[0].status == SyncStatus.ERROR
        assert len(system_a.created()) == 4

    async def test_listing_failure_reported_per_task(
        self, orchestrator, system_a
    ) -> None:
        system_a.fail_next["list_active_tasks"] = [DestinationAPIError("down")]
        tasks = [_task("b1", "First task"), _task("b2", "Second task")]

        report = await orchestrator.sync_batch(tasks, Side.SYSTEM_B)

        assert [r.status for r in report.results] == [SyncStatus.ERROR] * 2
        assert [c for c in system_a.calls if c[0] == "list_active_tasks"] == [
            ("list_active_tasks", False)
        ]
        assert system_a.created() == []

    async def test_malformed_record(self, orchestrator) -> None:
        report = await orchestrator.sync_batch(
            [{"id": "x1"}, {"title": "no id"}, MILK], Side.SYSTEM_B
        )
        statuses = [r.status for r in report.results]
        assert statuses == [SyncStatus.ERROR, SyncStatus.ERROR, SyncStatus.CREATED]
        assert report.results[0].task_id == "x1"
        assert "title" in report.results[0].message
        assert report.results[1].title == "no id"
        assert report.results[1].task_id == ""

    async def test_corrupt_store_is_fatal(self, orchestrator, kv) -> None:
        await kv.put(STATE_KEY, "{corrupt")
        with pytest.raises(MappingStoreCorruptError):
            await orchestrator.sync_batch([MILK], Side.SYSTEM_B)
        assert not await orchestrator.lock.is_held()

    async def test_lock_contention(self, orchestrator, kv, clock) -> None:
        await SyncLock(kv, clock=clock).acquire()
        with pytest.raises(SyncInProgressError):
            await orchestrator.sync_batch([MILK], Side.SYSTEM_B)

    async def test_lock_released_after_run(self, orchestrator) -> None:
        await orchestrator.sync_batch([MILK], Side.SYSTEM_B)
        assert not await orchestrator.lock.is_held()

    async def test_filters(self, make_orchestrator, system_a) -> None:
        orchestrator = make_orchestrator(
            excluded_projects=["Someday"], excluded_tags=["private"]
        )
        tasks = [
            _task("b1", "Skip me", project="Someday"),
            _task("b2", "Keep me", tags=["private", "home"]),
        ]
        report = await orchestrator.sync_batch(tasks, Side.SYSTEM_B)

        assert report.results[0].status == SyncStatus.SKIPPED
        assert "Someday" in report.results[0].message
        assert report.results[1].status == SyncStatus.CREATED
        (created,) = system_a.tasks.values()
        assert created.tags == ["home"]

    async def test_idempotent_request(self, orchestrator, system_a) -> None:
        first = await orchestrator.sync_batch([MILK], Side.SYSTEM_B, request_id="r1")
        second = await orchestrator.sync_batch([MILK], Side.SYSTEM_B, request_id="r1")

        assert not first.from_cache
        assert second.from_cache
        assert second.results == first.results
        assert len(system_a.created()) == 1


# ---------------------------------------------------------------------------
# Completion, mark-synced and maintenance
# ---------------------------------------------------------------------------


class TestSupplementedOperations:
    async def test_completion_closes_counterpart(
        self, orchestrator, system_a, system_b
    ) -> None:
        a_id = await _linked(orchestrator, system_a, system_b)
        report = await orchestrator.sync_completed(
            [CompletionRecord(task_id="b1"), CompletionRecord(task_id="zzz")],
            Side.SYSTEM_B,
        )

        assert report.operation == "complete"
        assert [r.status for r in report.results] == [
            SyncStatus.COMPLETED,
            SyncStatus.NOT_FOUND,
        ]
        assert report.results[0].counterpart_id == a_id
        assert a_id in system_a.closed
        assert report.summary.completed == 1
        assert report.summary.not_found == 1

    async def test_completion_via_backref(self, orchestrator, system_b) -> None:
        system_b.add(_task("42", "Old task", notes="[things-id:T1]"))
        report = await orchestrator.sync_completed(
            [CompletionRecord(task_id="T1")], Side.SYSTEM_A
        )
        assert report.results[0].status == SyncStatus.COMPLETED
        assert "42" in system_b.closed

    async def test_mark_synced_prevents_creation(
        self, orchestrator, system_a, system_b
    ) -> None:
        system_a.add(_task("A1", "Already handled"))
        marked = await orchestrator.mark_synced(Side.SYSTEM_A)

        assert marked.operation == "mark_synced"
        assert marked.results[0].status == SyncStatus.CREATED
        assert is_placeholder(marked.results[0].counterpart_id)
        assert marked.results[0].counterpart_id.startswith(PLACEHOLDER_PREFIX)

        report = await orchestrator.sync_batch(
            [system_a.tasks["A1"]], Side.SYSTEM_A
        )
        assert report.results[0].status == SyncStatus.ALREADY_EXISTS
        assert system_b.created() == []

        again = await orchestrator.mark_synced(Side.SYSTEM_A)
        assert again.results[0].status == SyncStatus.SKIPPED

    async def test_completion_of_placeholder_is_not_found(
        self, orchestrator, system_a
    ) -> None:
        system_a.add(_task("A1", "Already handled"))
        await orchestrator.mark_synced(Side.SYSTEM_A)
        report = await orchestrator.sync_completed(
            [CompletionRecord(task_id="A1")], Side.SYSTEM_A
        )
        assert report.results[0].status == SyncStatus.NOT_FOUND

    async def test_pending_tasks(self, orchestrator, system_a, system_b) -> None:
        await _linked(orchestrator, system_a, system_b)
        system_b.add(_task("b2", "Not synced yet"))

        pending = await orchestrator.pending_tasks(Side.SYSTEM_B)

        assert [t.id for t in pending] == ["b2"]
        assert ("list_active_tasks", True) in system_b.calls

    async def test_unlink(self, orchestrator, system_a, kv) -> None:
        await orchestrator.sync_batch([MILK], Side.SYSTEM_B)
        fp = fingerprint("Buy milk", "2%").primary_hash

        assert await orchestrator.unlink(fp)
        assert not await orchestrator.unlink(fp)
        assert await MappingStore(kv).count() == 0

    async def test_status(self, make_orchestrator, system_a, system_b) -> None:
        orchestrator = make_orchestrator(conflict_strategy="manual")
        a_id = await _linked(orchestrator, system_a, system_b)
        system_a.add(system_a.tasks[a_id].model_copy(update={"title": "Updated A"}))
        await orchestrator.sync_batch(
            [MILK.model_copy(update={"title": "Updated B"})], Side.SYSTEM_B
        )

        status = await orchestrator.status()

        assert status["lock_held"] is False
        assert status["mapping_count"] == 1
        assert status["unresolved_conflicts"] == 1
        assert status["stats"]["mapping_count"] == 1
        assert status["last_updated"]
        # One create run, one conflicting run.
        assert status["metrics"]["total_runs"] == 2
        assert status["metrics"]["tasks"]["conflicts"] == 1

    async def test_runs_recorded_in_metrics(
        self, orchestrator, system_a, system_b, kv, clock
    ) -> None:
        await _linked(orchestrator, system_a, system_b)
        await orchestrator.sync_batch([MILK], Side.SYSTEM_B, request_id="r1")
        await orchestrator.sync_batch([MILK], Side.SYSTEM_B, request_id="r1")
        await orchestrator.sync_completed(
            [CompletionRecord(task_id="b1")], Side.SYSTEM_B
        )
        await SyncLock(kv, clock=clock).acquire()
        with pytest.raises(SyncInProgressError):
            await orchestrator.sync_batch([MILK], Side.SYSTEM_B)

        metrics = (await orchestrator.status())["metrics"]

        # The cached replay of r1 is not a run.
        assert metrics["by_operation"]["sync"]["count"] == 3
        assert metrics["by_operation"]["sync"]["success_rate"] == pytest.approx(2 / 3)
        assert metrics["by_operation"]["complete"]["count"] == 1
        assert metrics["tasks"]["created"] == 1
        assert metrics["tasks"]["existing"] == 1
        assert metrics["tasks"]["completed"] == 1
        assert metrics["recent_errors"][0]["operation"] == "sync"

    async def test_cleanup(self, orchestrator, clock) -> None:
        await orchestrator.metrics.record_metric(
            "sync", success=True, duration=1.0, timestamp=clock() - 30 * 86400
        )
        await orchestrator.sync_batch([MILK], Side.SYSTEM_B)

        assert await orchestrator.cleanup() == {"conflicts": 0, "metrics": 1}
        assert (await orchestrator.status())["metrics"]["total_runs"] == 1

    async def test_migrate_legacy(self, orchestrator, kv) -> None:
        await kv.put(
            "hash:abc", json.dumps({"thingsId": "T1", "todoistId": "9"})
        )
        assert await orchestrator.migrate_legacy() == 1
        assert (await _mapping_for(kv, Side.SYSTEM_B, "9")).system_a_id == "T1"
