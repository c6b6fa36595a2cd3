"""Daily sync metrics kept in the backing store.

Each day has one ``metrics:daily:<YYYY-MM-DD>`` record (UTC date) with
per-operation counters, the last ``MAX_DURATIONS`` run durations, the ten
most recent failures and the slowest run.  Records expire after seven
days.  Updates go through ``compare_and_swap`` so runs finishing in
parallel do not drop each other's counts.

Recording is best effort: a store failure is logged and never fails the
run being measured.
"""

from __future__ import annotations

import logging
import math
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

from ..storage.kv import KVStore
from .models import (
    DailyMetrics,
    MetricError,
    MetricsSummary,
    OperationStats,
    OperationSummary,
    SlowestRun,
    SyncReport,
    TaskCounts,
)

T = TypeVar("T")
logger = logging.getLogger(__name__)

METRICS_PREFIX = "metrics:daily:"
METRICS_TTL = 86400 * 7
MAX_RECENT_ERRORS = 10
MAX_DURATIONS = 100
CAS_ATTEMPTS = 5


def metrics_key(day: str) -> str:
    return f"{METRICS_PREFIX}{day}"


def _day(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, timezone.utc).date().isoformat()


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, timezone.utc).isoformat()


def percentile(sorted_values: list[float], pct: float) -> float:
    """Nearest-rank percentile of an ascending list; 0.0 when empty."""
    if not sorted_values:
        return 0.0
    index = math.ceil(pct / 100 * len(sorted_values)) - 1
    return sorted_values[max(0, min(index, len(sorted_values) - 1))]


def report_details(report: SyncReport) -> dict[str, int]:
    """Task counters of a finished run, as recorded by ``track``."""
    summary = report.summary
    return {
        "tasks_processed": summary.total,
        "created": summary.created,
        "existing": summary.existing,
        "completed": summary.completed,
        "conflicts": summary.conflicts_detected,
        "task_errors": summary.errors,
    }


class MetricsTracker:
    """Records run outcomes and summarises them.

    Args:
        kv: Backing key-value store.
        clock: Returns the current time in seconds; injectable for tests.
            Run durations are measured with it too.
    """

    def __init__(
        self, kv: KVStore, clock: Callable[[], float] = time.time
    ) -> None:
        self._kv = kv
        self._clock = clock

    def _parse(self, raw: str | None, day: str) -> DailyMetrics:
        if raw is None:
            return DailyMetrics(date=day)
        try:
            return DailyMetrics.model_validate_json(raw)
        except ValueError:
            logger.warning("Unreadable metrics record for %s, starting over", day)
            return DailyMetrics(date=day)

    @staticmethod
    def _apply(
        record: DailyMetrics,
        operation: str,
        timestamp: float,
        success: bool,
        duration: float,
        details: dict[str, int],
        error: str | None,
    ) -> None:
        stats = record.by_operation.setdefault(operation, OperationStats())
        stats.count += 1
        if success:
            stats.success += 1
        else:
            stats.failures += 1
            if error:
                record.recent_errors.insert(
                    0,
                    MetricError(
                        timestamp=_iso(timestamp),
                        operation=operation,
                        message=error,
                    ),
                )
                del record.recent_errors[MAX_RECENT_ERRORS:]

        stats.total_duration += duration
        for name, value in details.items():
            setattr(stats, name, getattr(stats, name) + value)
        stats.durations.append(duration)
        del stats.durations[:-MAX_DURATIONS]

        if duration > record.slowest.duration:
            record.slowest = SlowestRun(
                timestamp=_iso(timestamp), operation=operation, duration=duration
            )

    async def record_metric(
        self,
        operation: str,
        *,
        success: bool,
        duration: float,
        details: dict[str, int] | None = None,
        error: str | None = None,
        timestamp: float | None = None,
    ) -> None:
        """Add one run to its day's record.

        Args:
            operation: Run kind, e.g. ``"sync"`` or ``"complete"``.
            success: Whether the run finished without raising.
            duration: Run time in seconds.
            details: ``OperationStats`` task counters to add.
            error: Failure message, kept in the recent-error list.
            timestamp: Seconds since the epoch; defaults to now.
        """
        now = self._clock() if timestamp is None else timestamp
        day = _day(now)
        key = metrics_key(day)
        try:
            for _ in range(CAS_ATTEMPTS):
                raw = await self._kv.get(key)
                record = self._parse(raw, day)
                self._apply(
                    record, operation, now, success, duration, details or {}, error
                )
                if await self._kv.compare_and_swap(
                    key, raw, record.model_dump_json(), ttl_seconds=METRICS_TTL
                ):
                    return
            logger.warning(
                "Dropped %s metric after %d contended writes", operation, CAS_ATTEMPTS
            )
        except (OSError, ValueError) as exc:
            logger.warning("Failed to record %s metric: %s", operation, exc)

    async def track(
        self,
        operation: str,
        func: Callable[[], Awaitable[T]],
        details: Callable[[T], dict[str, int]] | None = None,
    ) -> T:
        """Await *func* and record its outcome under *operation*.

        The result, or the exception, of *func* is passed through.
        """
        started = self._clock()
        try:
            result = await func()
        except Exception as exc:
            await self.record_metric(
                operation,
                success=False,
                duration=self._clock() - started,
                error=str(exc) or type(exc).__name__,
            )
            raise
        await self.record_metric(
            operation,
            success=True,
            duration=self._clock() - started,
            details=details(result) if details else None,
        )
        return result

    async def get_metrics_summary(self, hours: int = 24) -> MetricsSummary:
        """Aggregate the daily records covering the last *hours*."""
        now = self._clock()
        days = max(1, math.ceil(hours / 24))
        records = []
        for offset in range(days):
            day = _day(now - offset * 86400)
            raw = await self._kv.get(metrics_key(day))
            if raw is not None:
                records.append(self._parse(raw, day))

        by_operation: dict[str, OperationStats] = {}
        errors: list[MetricError] = []
        slowest = SlowestRun()
        for record in records:
            errors.extend(record.recent_errors)
            if record.slowest.duration > slowest.duration:
                slowest = record.slowest
            for operation, stats in record.by_operation.items():
                agg = by_operation.setdefault(operation, OperationStats())
                for name in OperationStats.model_fields:
                    setattr(agg, name, getattr(agg, name) + getattr(stats, name))

        tasks = TaskCounts()
        durations: list[float] = []
        total = success = 0
        total_duration = 0.0
        for stats in by_operation.values():
            total += stats.count
            success += stats.success
            total_duration += stats.total_duration
            durations.extend(stats.durations)
            tasks.processed += stats.tasks_processed
            tasks.created += stats.created
            tasks.existing += stats.existing
            tasks.completed += stats.completed
            tasks.conflicts += stats.conflicts
            tasks.errors += stats.task_errors
        durations.sort()
        errors.sort(key=lambda e: e.timestamp, reverse=True)

        return MetricsSummary(
            period_hours=hours,
            total_runs=total,
            success_rate=success / total if total else 0.0,
            average_duration=total_duration / total if total else 0.0,
            by_operation={
                operation: OperationSummary(
                    count=stats.count,
                    success_rate=stats.success / stats.count,
                    average_duration=stats.total_duration / stats.count,
                    tasks_processed=stats.tasks_processed,
                )
                for operation, stats in sorted(by_operation.items())
                if stats.count
            },
            recent_errors=errors[:MAX_RECENT_ERRORS],
            tasks=tasks,
            p50_duration=percentile(durations, 50),
            p90_duration=percentile(durations, 90),
            p99_duration=percentile(durations, 99),
            slowest=slowest,
        )

    async def cleanup_old_metrics(self) -> int:
        """Delete daily records older than the retention window.

        Returns:
            Number of records deleted.
        """
        cutoff = _day(self._clock() - METRICS_TTL)
        stale: list[str] = []
        cursor = None
        while True:
            page = await self._kv.list_keys(METRICS_PREFIX, cursor=cursor)
            stale += [k for k in page.keys if k[len(METRICS_PREFIX):] < cutoff]
            if page.complete:
                break
            cursor = page.cursor
        for key in stale:
            await self._kv.delete(key)
        if stale:
            logger.info("Removed %d expired metrics records", len(stale))
        return len(stale)
