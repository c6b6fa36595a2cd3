"""Tests for daily sync metrics."""

from __future__ import annotations

import json

import pytest

from taskbridge.sync.metrics import (
    MAX_DURATIONS,
    MAX_RECENT_ERRORS,
    METRICS_TTL,
    MetricsTracker,
    metrics_key,
    percentile,
)

DAY = "2023-11-14"  # FakeClock default, 22:13:20 UTC


@pytest.fixture
def tracker(kv, clock) -> MetricsTracker:
    return MetricsTracker(kv, clock=clock)


async def _day_record(kv, day: str = DAY) -> dict:
    return json.loads(await kv.get(metrics_key(day)))


class TestRecordMetric:
    async def test_counts_per_operation(self, tracker, kv) -> None:
        await tracker.record_metric(
            "sync", success=True, duration=2.0, details={"created": 3}
        )
        await tracker.record_metric("sync", success=False, duration=1.0, error="boom")
        await tracker.record_metric("complete", success=True, duration=0.5)

        record = await _day_record(kv)
        sync = record["by_operation"]["sync"]
        assert (sync["count"], sync["success"], sync["failures"]) == (2, 1, 1)
        assert sync["created"] == 3
        assert sync["total_duration"] == 3.0
        assert sync["durations"] == [2.0, 1.0]
        assert record["by_operation"]["complete"]["count"] == 1
        assert record["slowest"]["operation"] == "sync"
        assert record["slowest"]["duration"] == 2.0
        assert [e["message"] for e in record["recent_errors"]] == ["boom"]

    async def test_record_expires_after_a_week(self, tracker, kv, clock) -> None:
        await tracker.record_metric("sync", success=True, duration=1.0)
        clock.advance(METRICS_TTL - 1)
        assert await kv.get(metrics_key(DAY)) is not None
        clock.advance(1)
        assert await kv.get(metrics_key(DAY)) is None

    async def test_recent_errors_capped_newest_first(self, tracker, kv, clock) -> None:
        for i in range(MAX_RECENT_ERRORS + 2):
            await tracker.record_metric(
                "sync", success=False, duration=0.1, error=f"e{i}"
            )
            clock.advance(1)
        errors = (await _day_record(kv))["recent_errors"]
        assert len(errors) == MAX_RECENT_ERRORS
        assert errors[0]["message"] == f"e{MAX_RECENT_ERRORS + 1}"

    async def test_durations_capped(self, tracker, kv) -> None:
        for i in range(MAX_DURATIONS + 5):
            await tracker.record_metric("sync", success=True, duration=float(i))
        durations = (await _day_record(kv))["by_operation"]["sync"]["durations"]
        assert len(durations) == MAX_DURATIONS
        assert durations[-1] == float(MAX_DURATIONS + 4)

    async def test_unreadable_record_starts_over(self, tracker, kv) -> None:
        await kv.put(metrics_key(DAY), "{not json")
        await tracker.record_metric("sync", success=True, duration=1.0)
        assert (await _day_record(kv))["by_operation"]["sync"]["count"] == 1

    async def test_store_failure_is_logged_not_raised(self, tracker, kv, caplog) -> None:
        async def _broken(key):
            raise OSError("disk gone")

        kv.get = _broken
        await tracker.record_metric("sync", success=True, duration=1.0)
        assert "disk gone" in caplog.text

    async def test_lost_race_retries(self, tracker, kv, clock) -> None:
        original = kv.compare_and_swap
        raced = []

        async def _cas(key, expected, new, ttl_seconds=None):
            if not raced:
                raced.append(key)
                # A concurrent run lands first.
                await MetricsTracker(kv, clock=clock).record_metric(
                    "complete", success=True, duration=1.0
                )
            return await original(key, expected, new, ttl_seconds)

        kv.compare_and_swap = _cas
        await tracker.record_metric("sync", success=True, duration=1.0)

        ops = (await _day_record(kv))["by_operation"]
        assert ops["sync"]["count"] == 1
        assert ops["complete"]["count"] == 1


class TestTrack:
    async def test_success_records_details(self, tracker, kv, clock) -> None:
        async def _run():
            clock.advance(4)
            return {"n": 2}

        result = await tracker.track("sync", _run, lambda r: {"tasks_processed": r["n"]})

        assert result == {"n": 2}
        sync = (await _day_record(kv))["by_operation"]["sync"]
        assert sync["success"] == 1
        assert sync["tasks_processed"] == 2
        assert sync["durations"] == [4.0]

    async def test_failure_recorded_and_reraised(self, tracker, kv) -> None:
        async def _run():
            raise RuntimeError("lock busy")

        with pytest.raises(RuntimeError, match="lock busy"):
            await tracker.track("sync", _run)

        record = await _day_record(kv)
        assert record["by_operation"]["sync"]["failures"] == 1
        assert record["recent_errors"][0]["message"] == "lock busy"


class TestSummary:
    async def test_empty(self, tracker) -> None:
        summary = await tracker.get_metrics_summary()
        assert summary.total_runs == 0
        assert summary.success_rate == 0.0
        assert summary.by_operation == {}
        assert summary.p50_duration == 0.0

    async def test_aggregates_window(self, tracker, clock) -> None:
        now = clock()
        await tracker.record_metric(
            "sync",
            success=True,
            duration=1.0,
            details={"tasks_processed": 5, "created": 2},
        )
        await tracker.record_metric("sync", success=False, duration=3.0, error="x")
        await tracker.record_metric(
            "complete",
            success=True,
            duration=2.0,
            details={"completed": 1},
            timestamp=now - 86400,
        )
        await tracker.record_metric(
            "sync", success=True, duration=9.0, timestamp=now - 3 * 86400
        )

        day = await tracker.get_metrics_summary(24)
        assert day.total_runs == 2
        assert day.success_rate == 0.5
        assert day.average_duration == 2.0
        assert day.tasks.processed == 5
        assert day.tasks.created == 2

        two_days = await tracker.get_metrics_summary(48)
        assert two_days.total_runs == 3
        assert set(two_days.by_operation) == {"complete", "sync"}
        assert two_days.by_operation["sync"].success_rate == 0.5
        assert two_days.tasks.completed == 1
        assert two_days.p50_duration == 2.0
        assert two_days.p99_duration == 3.0
        assert two_days.slowest.duration == 3.0
        assert [e.message for e in two_days.recent_errors] == ["x"]


@pytest.mark.parametrize(
    "pct,expected",
    [(50, 2.0), (90, 4.0), (99, 4.0), (1, 1.0)],
)
def test_percentile(pct, expected):
    assert percentile([1.0, 2.0, 3.0, 4.0], pct) == expected


def test_percentile_empty():
    assert percentile([], 50) == 0.0


class TestCleanup:
    async def test_removes_days_past_retention(self, tracker, kv, clock) -> None:
        now = clock()
        await tracker.record_metric("sync", success=True, duration=1.0)
        await tracker.record_metric(
            "sync", success=True, duration=1.0, timestamp=now - 10 * 86400
        )
        await tracker.record_metric(
            "sync", success=True, duration=1.0, timestamp=now - 2 * 86400
        )

        assert await tracker.cleanup_old_metrics() == 1
        page = await kv.list_keys("metrics:daily:")
        assert page.keys == [metrics_key("2023-11-12"), metrics_key(DAY)]
        assert await tracker.cleanup_old_metrics() == 0
