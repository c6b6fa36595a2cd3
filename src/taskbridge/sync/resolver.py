"""Conflict detection, resolution strategies and pending-conflict storage.

A conflict exists when both linked tasks changed since the last agreed
snapshot (``TaskMapping.last_synced_content``).  A one-sided change is
not a conflict; the orchestrator simply propagates it.

Strategies:

- ``system_a_wins`` / ``system_b_wins``: take that side verbatim.
- ``newest_wins``: compare modification times (missing = epoch 0);
  ties go to System B.
- ``merge``: per-field -- changed title wins (System A if both),
  notes concatenated when both changed, earliest due date when both
  changed, tags always unioned.
- ``manual``: raises ``ManualResolutionRequired``; the caller stores the
  conflict instead.

``ConflictStore`` keeps unresolved conflicts in the backing store: one
``conflict:{id}`` record each (7-day TTL) plus the ``conflicts:unresolved``
id index.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Callable

from ..exceptions import ManualResolutionRequired
from ..storage.kv import KVStore
from .models import (
    ConflictStrategy,
    Resolution,
    ResolvedTask,
    SyncConflict,
    SyncedContent,
    TaskMapping,
    TaskRecord,
    TaskVersion,
)

logger = logging.getLogger(__name__)

NEWEST_WINS_MIN_GAP = 60.0
CONFLICT_RETENTION_SECONDS = 7 * 86400
CONFLICT_INDEX_KEY = "conflicts:unresolved"

_FIELDS = ("title", "notes", "due")


# ---------------------------------------------------------------------------
# Field comparison helpers
# ---------------------------------------------------------------------------


def _norm_due(due: str | None) -> str | None:
    if due is None:
        return None
    due = due.strip()
    return due or None


def _field(item: TaskRecord | TaskVersion | SyncedContent, name: str) -> str | None:
    value = getattr(item, name)
    if name == "notes":
        return value or ""
    if name == "due":
        return _norm_due(value)
    return value


def changed_fields(
    live: TaskRecord | TaskVersion, base: SyncedContent | None
) -> set[str]:
    """Names of the title/notes/due fields where *live* differs from *base*.

    Exact comparison: notes treat ``None`` as empty, due dates are
    stripped.  With no base every field counts as changed.
    """
    if base is None:
        return set(_FIELDS)
    return {f for f in _FIELDS if _field(live, f) != _field(base, f)}


def _to_epoch(value: str) -> float:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def parse_timestamp(value: str | None) -> float:
    """ISO 8601 to epoch seconds; missing or unparseable values give 0."""
    if not value:
        return 0.0
    try:
        return _to_epoch(value)
    except ValueError:
        logger.warning("Unparseable timestamp %r treated as epoch", value)
        return 0.0


def _earliest_due(a: str | None, b: str | None) -> str | None:
    if a is None or b is None:
        return a if a is not None else b
    try:
        return a if _to_epoch(a) <= _to_epoch(b) else b
    except ValueError:
        return min(a, b)


def new_conflict_id(now: float) -> str:
    return f"conflict-{int(now * 1000)}-{uuid.uuid4().hex[:9]}"


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def _take(version: TaskVersion) -> ResolvedTask:
    return ResolvedTask(
        title=version.title,
        notes=version.notes,
        due=version.due,
        tags=list(version.tags),
    )


def _system_a_wins(conflict: SyncConflict) -> Resolution:
    return Resolution(
        resolved_task=_take(conflict.system_a_version),
        applied_strategy=ConflictStrategy.SYSTEM_A_WINS,
    )


def _system_b_wins(conflict: SyncConflict) -> Resolution:
    return Resolution(
        resolved_task=_take(conflict.system_b_version),
        applied_strategy=ConflictStrategy.SYSTEM_B_WINS,
    )


def _newest_wins(conflict: SyncConflict) -> Resolution:
    a_time = parse_timestamp(conflict.system_a_version.modified_at)
    b_time = parse_timestamp(conflict.system_b_version.modified_at)
    winner = _system_a_wins if a_time > b_time else _system_b_wins
    resolution = winner(conflict)
    return resolution.model_copy(
        update={"applied_strategy": ConflictStrategy.NEWEST_WINS}
    )


def _merge(conflict: SyncConflict) -> Resolution:
    a = conflict.system_a_version
    b = conflict.system_b_version
    base = conflict.last_synced_version
    a_changed = changed_fields(a, base)
    b_changed = changed_fields(b, base)

    if "title" in a_changed or "title" not in b_changed:
        title = a.title
    else:
        title = b.title

    if "notes" in a_changed and "notes" in b_changed:
        notes: str | None = f"{a.notes or ''}\n---\n{b.notes or ''}"
    elif "notes" in b_changed:
        notes = b.notes
    else:
        notes = a.notes

    if "due" in a_changed and "due" in b_changed:
        due = _earliest_due(_norm_due(a.due), _norm_due(b.due))
    elif "due" in b_changed:
        due = b.due
    else:
        due = a.due

    return Resolution(
        resolved_task=ResolvedTask(
            title=title,
            notes=notes,
            due=due,
            tags=sorted(set(a.tags) | set(b.tags)),
        ),
        applied_strategy=ConflictStrategy.MERGE,
    )


def _manual(conflict: SyncConflict) -> Resolution:
    raise ManualResolutionRequired(conflict.id)


_STRATEGY_MAP: dict[ConflictStrategy, Callable[[SyncConflict], Resolution]] = {
    ConflictStrategy.SYSTEM_A_WINS: _system_a_wins,
    ConflictStrategy.SYSTEM_B_WINS: _system_b_wins,
    ConflictStrategy.NEWEST_WINS: _newest_wins,
    ConflictStrategy.MERGE: _merge,
    ConflictStrategy.MANUAL: _manual,
}


def parse_strategy(strategy: str | ConflictStrategy) -> ConflictStrategy:
    """Coerce a strategy name to ``ConflictStrategy``.

    Raises:
        ValueError: If the strategy string is not recognised.
    """
    try:
        return ConflictStrategy(strategy)
    except ValueError:
        raise ValueError(
            f"Unknown conflict strategy: '{strategy}'. Valid strategies: "
            f"{sorted(s.value for s in ConflictStrategy)}"
        ) from None


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class ConflictResolver:
    """Detect and resolve conflicts between two linked tasks.

    Args:
        default_strategy: Fallback when no heuristic applies and no
            strategy is passed to ``resolve()``.
        clock: Returns the current time in seconds; injectable for tests.
    """

    def __init__(
        self,
        default_strategy: str | ConflictStrategy = ConflictStrategy.NEWEST_WINS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.default_strategy = parse_strategy(default_strategy)
        self._clock = clock

    def detect_conflict(
        self,
        live_a: TaskRecord,
        live_b: TaskRecord,
        mapping: TaskMapping,
    ) -> SyncConflict | None:
        """Return a ``SyncConflict`` iff both sides left the snapshot.

        Args:
            live_a: Current System A task.
            live_b: Current System B task.
            mapping: The link between them.

        Returns:
            ``None`` when the mapping has no snapshot or at most one side
            changed.
        """
        base = mapping.last_synced_content
        if base is None:
            return None
        if not changed_fields(live_a, base) or not changed_fields(live_b, base):
            return None

        now = self._clock()
        conflict = SyncConflict(
            id=new_conflict_id(now),
            system_a_id=live_a.id,
            system_b_id=live_b.id,
            detected_at=datetime.fromtimestamp(now, timezone.utc).isoformat(),
            system_a_version=self._version(
                live_a, mapping.system_a_modified_at
            ),
            system_b_version=self._version(
                live_b, mapping.system_b_modified_at
            ),
            last_synced_version=base,
            suggested_resolution=self.suggest_resolution(
                live_a, live_b, mapping
            ),
        )
        logger.info(
            "Conflict %s detected between %s and %s",
            conflict.id,
            live_a.id,
            live_b.id,
        )
        return conflict

    @staticmethod
    def _version(task: TaskRecord, stored_modified_at: str | None) -> TaskVersion:
        return TaskVersion(
            title=task.title,
            notes=task.notes,
            due=task.due,
            tags=list(task.tags),
            modified_at=task.modified_at or stored_modified_at,
        )

    def suggest_resolution(
        self,
        live_a: TaskRecord,
        live_b: TaskRecord,
        mapping: TaskMapping,
    ) -> ConflictStrategy:
        """Heuristic strategy for a detected conflict.

        1. Both modification times known and more than a minute apart:
           ``newest_wins``.
        2. The sides changed disjoint fields.  A title-only edit against a
           notes-only edit favours the side that retitled the task;
           any wider disjoint change suggests ``merge``.
        3. Otherwise the configured default.
        """
        a_modified = live_a.modified_at or mapping.system_a_modified_at
        b_modified = live_b.modified_at or mapping.system_b_modified_at
        if a_modified and b_modified:
            gap = abs(parse_timestamp(a_modified) - parse_timestamp(b_modified))
            if gap > NEWEST_WINS_MIN_GAP:
                return ConflictStrategy.NEWEST_WINS

        base = mapping.last_synced_content
        a_changed = changed_fields(live_a, base)
        b_changed = changed_fields(live_b, base)
        if not a_changed & b_changed:
            if a_changed == {"title"} and b_changed == {"notes"}:
                return ConflictStrategy.SYSTEM_A_WINS
            if a_changed == {"notes"} and b_changed == {"title"}:
                return ConflictStrategy.SYSTEM_B_WINS
            return ConflictStrategy.MERGE

        return self.default_strategy

    def resolve(
        self,
        conflict: SyncConflict,
        strategy: str | ConflictStrategy | None = None,
    ) -> Resolution:
        """Apply a strategy to *conflict*.

        Uses *strategy*, else the conflict's suggestion, else the default.

        Raises:
            ManualResolutionRequired: For the ``manual`` strategy.
            ValueError: If the strategy string is not recognised.
        """
        chosen = parse_strategy(
            strategy or conflict.suggested_resolution or self.default_strategy
        )
        resolution = _STRATEGY_MAP[chosen](conflict)
        logger.debug(
            "Conflict %s resolved with %s",
            conflict.id,
            resolution.applied_strategy.value,
        )
        return resolution


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def conflict_key(conflict_id: str) -> str:
    return f"conflict:{conflict_id}"


class ConflictStore:
    """Pending conflicts in the backing store.

    Args:
        kv: Backing key-value store.
        retention_seconds: How long a conflict record is kept, resolved
            or not.
        clock: Returns the current time in seconds; injectable for tests.
    """

    def __init__(
        self,
        kv: KVStore,
        retention_seconds: int = CONFLICT_RETENTION_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._kv = kv
        self.retention_seconds = retention_seconds
        self._clock = clock

    async def _read_index(self) -> list[str]:
        raw = await self._kv.get(CONFLICT_INDEX_KEY)
        if raw is None:
            return []
        try:
            ids = json.loads(raw)
        except ValueError:
            logger.error("Conflict index is unreadable, starting a new one")
            return []
        return [str(i) for i in ids] if isinstance(ids, list) else []

    async def _write_index(self, ids: list[str]) -> None:
        await self._kv.put(CONFLICT_INDEX_KEY, json.dumps(ids))

    def _remaining_ttl(self, conflict: SyncConflict) -> float:
        age = self._clock() - parse_timestamp(conflict.detected_at)
        return max(1.0, self.retention_seconds - age)

    async def find_open_conflict(
        self, system_a_id: str, system_b_id: str
    ) -> SyncConflict | None:
        """The unresolved conflict between this pair of tasks, if any."""
        for conflict in await self.get_unresolved_conflicts():
            if (
                conflict.system_a_id == system_a_id
                and conflict.system_b_id == system_b_id
            ):
                return conflict
        return None

    async def store_conflict(self, conflict: SyncConflict) -> SyncConflict:
        """Persist *conflict* and add it to the unresolved index.

        A pair has at most one open conflict.  An older open conflict
        for the same pair is superseded: its record is deleted and its id
        leaves the index.

        Returns:
            The stored conflict.
        """
        previous = await self.find_open_conflict(
            conflict.system_a_id, conflict.system_b_id
        )
        await self._kv.put(
            conflict_key(conflict.id),
            conflict.model_dump_json(),
            ttl_seconds=self._remaining_ttl(conflict),
        )
        ids = await self._read_index()
        if previous is not None and previous.id != conflict.id:
            await self._kv.delete(conflict_key(previous.id))
            ids = [i for i in ids if i != previous.id]
            logger.info("Conflict %s superseded by %s", previous.id, conflict.id)
        if conflict.id not in ids:
            ids.append(conflict.id)
        await self._write_index(ids)
        logger.info("Stored conflict %s for manual resolution", conflict.id)
        return conflict

    async def get_conflict(self, conflict_id: str) -> SyncConflict | None:
        raw = await self._kv.get(conflict_key(conflict_id))
        if raw is None:
            return None
        return SyncConflict.model_validate_json(raw)

    async def get_unresolved_conflicts(self) -> list[SyncConflict]:
        """Unresolved conflicts in index order.

        Ids whose record has expired are dropped from the index.
        """
        ids = await self._read_index()
        conflicts: list[SyncConflict] = []
        live_ids: list[str] = []
        for conflict_id in ids:
            conflict = await self.get_conflict(conflict_id)
            if conflict is None:
                continue
            live_ids.append(conflict_id)
            if not conflict.resolved:
                conflicts.append(conflict)
        if live_ids != ids:
            await self._write_index(live_ids)
        return conflicts

    async def mark_resolved(self, conflict_id: str) -> bool:
        """Flag a conflict as resolved and drop it from the index.

        Returns:
            ``False`` if no such conflict is stored.
        """
        conflict = await self.get_conflict(conflict_id)
        ids = await self._read_index()
        if conflict_id in ids:
            await self._write_index([i for i in ids if i != conflict_id])
        if conflict is None:
            return False

        resolved = conflict.model_copy(update={"resolved": True})
        await self._kv.put(
            conflict_key(conflict_id),
            resolved.model_dump_json(),
            ttl_seconds=self._remaining_ttl(resolved),
        )
        logger.info("Conflict %s marked resolved", conflict_id)
        return True

    async def cleanup_expired(self) -> int:
        """Remove conflicts older than the retention window.

        Returns:
            Number of index entries removed.
        """
        now = self._clock()
        ids = await self._read_index()
        keep: list[str] = []
        for conflict_id in ids:
            conflict = await self.get_conflict(conflict_id)
            expired = (
                conflict is None
                or now - parse_timestamp(conflict.detected_at)
                >= self.retention_seconds
            )
            if expired:
                await self._kv.delete(conflict_key(conflict_id))
            else:
                keep.append(conflict_id)
        removed = len(ids) - len(keep)
        if removed:
            await self._write_index(keep)
            logger.info("Removed %d expired conflicts", removed)
        return removed
