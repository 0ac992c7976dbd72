from __future__ import annotations

import threading

import allure

from idem_guard.metrics import MetricsCollector, render_metrics_lines, render_state_lines
from idem_guard.models import TargetKind

pytestmark = [
    allure.epic("Idempotent Execution"),
    allure.feature("Outcome Metrics"),
]


def test_snapshot_aggregates_counts_and_durations() -> None:
    metrics = MetricsCollector()
    metrics.record_success(TargetKind.JOB, "nightly", 40, source_system="LEDGER")
    metrics.record_success(TargetKind.JOB, "nightly", 20, source_system="LEDGER")
    metrics.record_cached(TargetKind.API_ENDPOINT, "/api/orders", 3, source_system="WEB")
    metrics.record_failure(
        TargetKind.JOB,
        "nightly",
        17,
        error_type="TimeoutError",
        source_system="LEDGER",
    )
    metrics.record_duplicate(TargetKind.API_ENDPOINT, "/api/orders")

    snapshot = metrics.snapshot()

    assert snapshot.counts["success"] == 2
    assert snapshot.counts["expired"] == 0
    assert snapshot.total_operations == 5
    assert snapshot.duration_samples == 4
    assert snapshot.min_duration_ms == 3
    assert snapshot.max_duration_ms == 40
    assert snapshot.avg_duration_ms == 20.0
    assert snapshot.cache_hit_ratio == 1 / 3
    assert snapshot.success_ratio == 3 / 5
    assert snapshot.by_target["JOB:nightly"] == {"failure": 1, "success": 2}
    assert snapshot.by_target["API_ENDPOINT:/api/orders"] == {"cached": 1, "duplicate": 1}
    assert snapshot.by_source == {
        "LEDGER": {"failure": 1, "success": 2},
        "WEB": {"cached": 1},
    }
    assert snapshot.by_error_type == {"TimeoutError": 1}


def test_empty_snapshot_has_no_ratios() -> None:
    snapshot = MetricsCollector().snapshot()

    assert snapshot.total_operations == 0
    assert snapshot.cache_hit_ratio is None
    assert snapshot.success_ratio is None
    assert snapshot.avg_duration_ms is None
    assert "Duration: none" in render_metrics_lines(snapshot)


def test_reset_clears_everything() -> None:
    metrics = MetricsCollector()
    metrics.record_failure(TargetKind.JOB, "nightly", 5, error_type="ValueError")
    metrics.record_stale_recovered(TargetKind.JOB, "nightly")
    metrics.record_expired(TargetKind.JOB, "nightly")
    metrics.record_max_retries(TargetKind.JOB, "nightly")
    metrics.record_in_progress(TargetKind.JOB, "nightly")

    metrics.reset()

    snapshot = metrics.snapshot()
    assert set(snapshot.counts.values()) == {0}
    assert snapshot.by_target == {}
    assert snapshot.by_error_type == {}
    assert snapshot.duration_samples == 0


def test_counters_are_thread_safe() -> None:
    metrics = MetricsCollector()
    per_thread = 500

    def _hammer() -> None:
        for _ in range(per_thread):
            metrics.record_success(TargetKind.JOB, "nightly", 1)
            metrics.record_duplicate(TargetKind.JOB, "nightly")

    threads = [threading.Thread(target=_hammer) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    snapshot = metrics.snapshot()
    assert snapshot.counts["success"] == 8 * per_thread
    assert snapshot.counts["duplicate"] == 8 * per_thread
    assert snapshot.duration_samples == 8 * per_thread


def test_render_lines() -> None:
    metrics = MetricsCollector()
    metrics.record_success(TargetKind.JOB, "nightly", 10)
    metrics.record_cached(TargetKind.JOB, "nightly", 2)

    lines = render_metrics_lines(metrics.snapshot())

    assert lines[0].startswith("Operations: total=2 ")
    assert "cache_hit=50.00%" in lines[1]
    assert lines[2] == "Duration: n=2 min=2ms max=10ms avg=6.0ms"
    assert render_state_lines(by_state={"COMPLETED": 3, "FAILED": 1}, stale=2, expired=0) == [
        "Records: total=4 COMPLETED=3 FAILED=1",
        "Stale in-flight records: 2",
        "Expired records awaiting cleanup: 0",
    ]
