"""Shared pytest fixtures for taskbridge tests."""

from __future__ import annotations

import itertools

import pytest

from taskbridge.config_schema import SyncSettings
from taskbridge.exceptions import TaskNotFoundError
from taskbridge.storage.kv import MemoryKVStore
from taskbridge.sync.engine import SyncOrchestrator
from taskbridge.sync.models import NewTask, TaskRecord, TaskUpdate


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAdapter:
    """In-memory ``TaskAdapter`` for one task system.

    Tasks live in ``self.tasks`` keyed by id.  Every call is appended to
    ``self.calls``.  Exceptions queued in ``self.fail_next[method]`` are
    raised, one per call, before the method does anything.
    """

    def __init__(self, prefix: str, tasks: list[TaskRecord] | None = None) -> None:
        self.prefix = prefix
        self.tasks: dict[str, TaskRecord] = {t.id: t for t in tasks or []}
        self.closed: set[str] = set()
        self.calls: list[tuple] = []
        self.fail_next: dict[str, list[Exception]] = {}
        self._ids = itertools.count(1)

    def _maybe_fail(self, method: str) -> None:
        queue = self.fail_next.get(method)
        if queue:
            raise queue.pop(0)

    def add(self, task: TaskRecord) -> TaskRecord:
        self.tasks[task.id] = task
        return task

    def created(self) -> list[tuple]:
        return [c for c in self.calls if c[0] == "create_task"]

    def updates(self) -> list[tuple]:
        return [c for c in self.calls if c[0] == "update_task"]

    async def list_active_tasks(
        self, exclude_already_synced: bool = False
    ) -> list[TaskRecord]:
        self.calls.append(("list_active_tasks", exclude_already_synced))
        self._maybe_fail("list_active_tasks")
        return [t for t in self.tasks.values() if t.id not in self.closed]

    async def create_task(self, task: NewTask) -> str:
        self.calls.append(("create_task", task))
        self._maybe_fail("create_task")
        task_id = f"{self.prefix}-{next(self._ids)}"
        self.tasks[task_id] = TaskRecord(
            id=task_id,
            title=task.title,
            notes=task.notes,
            due=task.due,
            tags=list(task.tags),
        )
        return task_id

    async def update_task(self, task_id: str, update: TaskUpdate) -> None:
        self.calls.append(("update_task", task_id, update))
        self._maybe_fail("update_task")
        if task_id not in self.tasks:
            raise TaskNotFoundError(f"no task {task_id}")
        fields = update.model_dump(exclude_none=True)
        if fields.get("due") == "":
            fields["due"] = None
        self.tasks[task_id] = self.tasks[task_id].model_copy(update=fields)

    async def close_task(self, task_id: str) -> bool:
        self.calls.append(("close_task", task_id))
        self._maybe_fail("close_task")
        self.closed.add(task_id)
        return True

    async def delete_task(self, task_id: str) -> None:
        self.calls.append(("delete_task", task_id))
        self.tasks.pop(task_id, None)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def kv(clock) -> MemoryKVStore:
    return MemoryKVStore(clock=clock)


@pytest.fixture
def system_a() -> FakeAdapter:
    return FakeAdapter("a")


@pytest.fixture
def system_b() -> FakeAdapter:
    return FakeAdapter("b")


@pytest.fixture
def make_orchestrator(system_a, system_b, kv, clock):
    """Factory building an orchestrator over the fake systems."""

    def _make(**settings) -> SyncOrchestrator:
        return SyncOrchestrator(
            system_a,
            system_b,
            kv,
            SyncSettings(**settings),
            retry_base_delay=0,
            clock=clock,
        )

    return _make


@pytest.fixture
def orchestrator(make_orchestrator) -> SyncOrchestrator:
    return make_orchestrator()
