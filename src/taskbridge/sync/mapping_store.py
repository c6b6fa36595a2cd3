"""Batched mapping store.

All task mappings live in one aggregate record (``sync-state:batch``)
holding the mappings keyed by fingerprint plus one id index per side.
The record is loaded lazily on first access, edited in memory and written
back as a single ``put`` by ``flush()``.  Callers must flush explicitly;
nothing is written through.

The store has no transactional protection of its own.  Overlapping runs
are kept apart by the sync lock (``sync.lock``); a run that starts just as
a stale lock expires can still overwrite a concurrent flush.

Older releases wrote one key per mapping (``hash:{fingerprint}`` and
``mapping:{things|todoist}:{id}``) with camel-case fields, and a version 1
aggregate with ``todoistIndex`` / ``thingsIndex``.  Both are read here:
the per-key records by ``migrate_legacy_entries()`` and
``get_legacy_by_side_id()``, the version 1 aggregate transparently on
load.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from ..exceptions import MappingStoreCorruptError
from ..storage.kv import KVStore
from .models import (
    BatchState,
    BatchStats,
    MappingSource,
    Side,
    SyncedContent,
    TaskFingerprint,
    TaskMapping,
)

logger = logging.getLogger(__name__)

STATE_KEY = "sync-state:batch"
LEGACY_HASH_PREFIX = "hash:"
SCHEMA_VERSION = 2


def legacy_mapping_key(side: Side, task_id: str) -> str:
    """Key of the per-task record written by releases before batching."""
    return f"mapping:{side.legacy_name}:{task_id}"


def mapping_from_legacy(
    data: dict[str, Any],
    primary_hash: str | None = None,
    default_hash: str | None = None,
) -> TaskMapping:
    """Build a ``TaskMapping`` from a camel-case legacy record.

    Args:
        data: Decoded legacy ``TaskMapping`` or ``SyncMetadata`` record.
        primary_hash: Fingerprint the record was keyed by, if known.
            Takes precedence over the hash stored inside the record.
        default_hash: Used when the record carries no hash at all.

    Raises:
        ValueError: If the record has no usable fingerprint.
    """
    if not isinstance(data, dict):
        raise ValueError("legacy mapping is not an object")
    fp = data.get("fingerprint") or {}
    primary = (
        primary_hash
        or fp.get("primaryHash")
        or data.get("robustHash")
        or data.get("contentHash")
        or default_hash
    )
    if not primary:
        raise ValueError("legacy mapping has no fingerprint")

    content = data.get("lastSyncedContent")
    synced = None
    if content:
        synced = SyncedContent(
            title=content.get("title", ""),
            notes=content.get("notes"),
            due=content.get("due"),
            tags=content.get("labels", content.get("tags")),
        )

    source = data.get("source") or MappingSource.LEGACY.value
    return TaskMapping(
        system_a_id=str(data.get("thingsId") or ""),
        system_b_id=str(data.get("todoistId") or ""),
        fingerprint=TaskFingerprint(
            primary_hash=primary,
            title_variations=fp.get("titleVariations", []),
            fuzzy_searchable=fp.get("fuzzySearchable", ""),
        ),
        last_synced=data.get("lastSynced")
        or datetime.now(timezone.utc).isoformat(),
        source=MappingSource(source),
        schema_version=data.get("version", 1),
        system_a_modified_at=data.get("thingsModifiedAt"),
        system_b_modified_at=data.get("todoistModifiedAt"),
        last_synced_content=synced,
    )


class MappingStore:
    """Read-through cache over the aggregate mapping record.

    One instance corresponds to one invocation; state is not shared
    between instances.

    Args:
        kv: Backing key-value store.
    """

    def __init__(self, kv: KVStore) -> None:
        self._kv = kv
        self._state: BatchState | None = None
        self._dirty = False
        self._pending: set[str] = set()

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def pending(self) -> frozenset[str]:
        """Fingerprints added since the last flush."""
        return frozenset(self._pending)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load(self) -> BatchState:
        """Return the aggregate record, fetching it on first use.

        Raises:
            MappingStoreCorruptError: If the stored record cannot be
                decoded.  No recovery is attempted.
        """
        if self._state is not None:
            return self._state

        raw = await self._kv.get(STATE_KEY)
        if raw is None:
            self._state = BatchState(
                last_updated=datetime.now(timezone.utc).isoformat()
            )
            return self._state

        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("aggregate record is not an object")
            state = self._parse(data)
        except (ValueError, TypeError, KeyError) as exc:
            logger.error("Mapping store record is corrupt: %s", exc)
            raise MappingStoreCorruptError(
                f"Cannot decode {STATE_KEY}: {exc}"
            ) from exc

        self._repair_indexes(state)
        self._state = state
        logger.debug(
            "Loaded %d mappings from %s", len(state.mappings), STATE_KEY
        )
        return state

    def _parse(self, data: dict[str, Any]) -> BatchState:
        if "todoistIndex" not in data and "thingsIndex" not in data:
            return BatchState.model_validate(data)

        # Version 1 aggregate with camel-case mappings.
        state = BatchState(
            last_updated=data.get("lastUpdated"),
            stats=BatchStats(
                migrated_legacy_mappings=(data.get("stats") or {}).get(
                    "migratedLegacyMappings", 0
                ),
            ),
        )
        for fp, raw_mapping in (data.get("mappings") or {}).items():
            mapping = mapping_from_legacy(raw_mapping, fp)
            state.mappings[fp] = mapping
            self._index(state, fp, mapping)
        state.stats.mapping_count = len(state.mappings)
        self._dirty = True
        return state

    @staticmethod
    def _repair_indexes(state: BatchState) -> None:
        for side in Side:
            index = state.index_for(side)
            dangling = [k for k, fp in index.items() if fp not in state.mappings]
            for task_id in dangling:
                logger.warning(
                    "Dropping dangling %s index entry %s", side.value, task_id
                )
                del index[task_id]

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_by_fingerprint(self, primary_hash: str) -> TaskMapping | None:
        state = await self.load()
        return state.mappings.get(primary_hash)

    async def get_by_side_id(self, side: Side, task_id: str) -> TaskMapping | None:
        """Look up a mapping by the task id it holds for *side*."""
        state = await self.load()
        fp = state.index_for(side).get(task_id)
        if fp is None:
            return None
        return state.mappings.get(fp)

    async def get_by_system_a_id(self, task_id: str) -> TaskMapping | None:
        return await self.get_by_side_id(Side.SYSTEM_A, task_id)

    async def get_by_system_b_id(self, task_id: str) -> TaskMapping | None:
        return await self.get_by_side_id(Side.SYSTEM_B, task_id)

    async def get_legacy_by_side_id(
        self, side: Side, task_id: str, default_hash: str | None = None
    ) -> TaskMapping | None:
        """Read a pre-fingerprint ``mapping:{system}:{id}`` record.

        *default_hash* keys records written before fingerprints existed.

        Unreadable records are logged and treated as a miss.
        """
        raw = await self._kv.get(legacy_mapping_key(side, task_id))
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            mapping = mapping_from_legacy(data, default_hash=default_hash)
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning(
                "Ignoring unreadable legacy mapping %s:%s: %s",
                side.legacy_name,
                task_id,
                exc,
            )
            return None
        return mapping.model_copy(update={"source": MappingSource.LEGACY})

    async def has(self, primary_hash: str) -> bool:
        state = await self.load()
        return primary_hash in state.mappings

    async def all_mappings(self) -> list[TaskMapping]:
        state = await self.load()
        return list(state.mappings.values())

    async def count(self) -> int:
        state = await self.load()
        return len(state.mappings)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    @staticmethod
    def _index(state: BatchState, fp: str, mapping: TaskMapping) -> None:
        for side in Side:
            task_id = mapping.id_for(side)
            if task_id:
                state.index_for(side)[task_id] = fp

    @staticmethod
    def _unindex(state: BatchState, fp: str, mapping: TaskMapping) -> None:
        for side in Side:
            index = state.index_for(side)
            task_id = mapping.id_for(side)
            if task_id and index.get(task_id) == fp:
                del index[task_id]

    def _drop(self, state: BatchState, fp: str) -> None:
        mapping = state.mappings.pop(fp, None)
        if mapping is not None:
            self._unindex(state, fp, mapping)
        self._pending.discard(fp)

    async def add(self, mapping: TaskMapping) -> None:
        """Insert or overwrite *mapping* in memory.

        A task id belongs to at most one mapping: any other mapping that
        holds either id is removed first, so the indexes never point at
        two fingerprints for one task.
        """
        state = await self.load()
        fp = mapping.fingerprint.primary_hash

        previous = state.mappings.get(fp)
        if previous is not None:
            self._unindex(state, fp, previous)

        for side in Side:
            task_id = mapping.id_for(side)
            stale_fp = state.index_for(side).get(task_id) if task_id else None
            if stale_fp is not None and stale_fp != fp:
                logger.debug(
                    "Replacing mapping %s for %s task %s",
                    stale_fp,
                    side.value,
                    task_id,
                )
                self._drop(state, stale_fp)

        state.mappings[fp] = mapping
        self._index(state, fp, mapping)
        self._pending.add(fp)
        self._dirty = True

    async def remove(self, primary_hash: str) -> None:
        """Delete the mapping for *primary_hash*; no-op if absent."""
        state = await self.load()
        if primary_hash not in state.mappings:
            return
        self._drop(state, primary_hash)
        self._dirty = True

    async def clear(self) -> None:
        """Drop every mapping and flush immediately."""
        self._state = BatchState(
            last_updated=datetime.now(timezone.utc).isoformat()
        )
        self._pending.clear()
        self._dirty = True
        await self.flush()

    async def flush(self) -> bool:
        """Write the aggregate record if it changed.

        Returns:
            ``True`` if a write was issued.
        """
        if not self._dirty or self._state is None:
            return False

        state = self._state
        state.schema_version = SCHEMA_VERSION
        state.last_updated = datetime.now(timezone.utc).isoformat()
        state.stats.mapping_count = len(state.mappings)
        await self._kv.put(STATE_KEY, state.model_dump_json())

        logger.debug(
            "Flushed %d mappings (%d new)", len(state.mappings), len(self._pending)
        )
        self._pending.clear()
        self._dirty = False
        return True

    # ------------------------------------------------------------------
    # Legacy migration
    # ------------------------------------------------------------------

    async def migrate_legacy_entries(
        self, page_size: int = 100, max_pages: int | None = None
    ) -> int:
        """Fold per-key ``hash:*`` records into the aggregate.

        Each legacy key is deleted once read.  Fingerprints already in the
        aggregate are skipped, so re-running is safe.  Unreadable records
        are logged and left in place.

        Args:
            page_size: Keys listed per backing-store call.
            max_pages: Stop after this many pages; ``None`` for no limit.

        Returns:
            Number of mappings added to the aggregate.
        """
        state = await self.load()
        migrated = 0
        failed = 0
        pages = 0
        cursor: str | None = None
        finished = False

        while True:
            page = await self._kv.list_keys(
                LEGACY_HASH_PREFIX, limit=page_size, cursor=cursor
            )
            for key in page.keys:
                fp = key[len(LEGACY_HASH_PREFIX):]
                try:
                    raw = await self._kv.get(key)
                    if raw is None:
                        continue
                    if fp not in state.mappings:
                        mapping = mapping_from_legacy(json.loads(raw), fp)
                        await self.add(mapping)
                        migrated += 1
                    await self._kv.delete(key)
                except (ValueError, TypeError, AttributeError) as exc:
                    failed += 1
                    logger.error("Failed to migrate %s: %s", key, exc)
            pages += 1
            cursor = page.cursor
            if page.complete or not page.keys:
                finished = True
                break
            if max_pages is not None and pages >= max_pages:
                break

        remaining = 0
        if not finished:
            peek = await self._kv.list_keys(
                LEGACY_HASH_PREFIX, limit=page_size, cursor=cursor
            )
            remaining = len(peek.keys)

        stats = state.stats
        if migrated or stats.pending_legacy_migration != remaining:
            stats.migrated_legacy_mappings += migrated
            stats.pending_legacy_migration = remaining
            self._dirty = True

        logger.info(
            "Legacy migration: %d migrated, %d failed, %s",
            migrated,
            failed,
            "complete" if finished else f"{remaining}+ remaining",
        )
        await self.flush()
        return migrated
