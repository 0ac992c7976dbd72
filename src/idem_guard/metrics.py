"""In-process counters and timers for engine outcomes."""

from __future__ import annotations

import logging
import threading
from collections import Counter, defaultdict
from dataclasses import dataclass

from idem_guard.models import TargetKind

logger = logging.getLogger(__name__)

OUTCOMES = (
    "success",
    "cached",
    "failure",
    "duplicate",
    "in_progress",
    "stale_recovered",
    "expired",
    "max_retries_exceeded",
)
# started attempts and recoveries are already counted by their success/failure outcome
_OPERATION_OUTCOMES = ("success", "cached", "failure", "duplicate", "max_retries_exceeded")


class _OutcomeCounter:
    """One outcome total with per-target and per-source breakdowns under its own lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._total = 0
        self._by_target = Counter[str]()
        self._by_source = Counter[str]()

    def increment(self, target: str, source: str | None) -> None:
        with self._lock:
            self._total += 1
            self._by_target[target] += 1
            if source:
                self._by_source[source] += 1

    def read(self) -> tuple[int, dict[str, int], dict[str, int]]:
        with self._lock:
            return self._total, dict(self._by_target), dict(self._by_source)

    def reset(self) -> None:
        with self._lock:
            self._total = 0
            self._by_target.clear()
            self._by_source.clear()


class _DurationTracker:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._samples = 0
        self._total_ms = 0
        self._min_ms: int | None = None
        self._max_ms: int | None = None

    def observe(self, duration_ms: int) -> None:
        value = max(0, int(duration_ms))
        with self._lock:
            self._samples += 1
            self._total_ms += value
            self._min_ms = value if self._min_ms is None else min(self._min_ms, value)
            self._max_ms = value if self._max_ms is None else max(self._max_ms, value)

    def read(self) -> tuple[int, int, int | None, int | None]:
        with self._lock:
            return self._samples, self._total_ms, self._min_ms, self._max_ms

    def reset(self) -> None:
        with self._lock:
            self._samples = 0
            self._total_ms = 0
            self._min_ms = None
            self._max_ms = None


class _ErrorTypeCounter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts = Counter[str]()

    def increment(self, error_type: str) -> None:
        with self._lock:
            self._counts[error_type] += 1

    def read(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()


@dataclass(slots=True)
class MetricsSnapshot:
    """Point-in-time copy of all counters."""

    counts: dict[str, int]
    total_operations: int
    duration_samples: int
    min_duration_ms: int | None
    max_duration_ms: int | None
    avg_duration_ms: float | None
    cache_hit_ratio: float | None
    success_ratio: float | None
    by_target: dict[str, dict[str, int]]
    by_source: dict[str, dict[str, int]]
    by_error_type: dict[str, int]


class MetricsCollector:
    """Thread-safe outcome counters.

    Every outcome has an independent lock so hot paths for different outcomes
    never contend. ``snapshot`` reads each counter separately, so a snapshot
    taken under load is approximately, not transactionally, consistent.
    """

    def __init__(self) -> None:
        self._counters = {outcome: _OutcomeCounter() for outcome in OUTCOMES}
        self._durations = _DurationTracker()
        self._error_types = _ErrorTypeCounter()

    def record_success(
        self,
        target_kind: TargetKind,
        target_name: str,
        duration_ms: int,
        *,
        source_system: str | None = None,
    ) -> None:
        self._bump("success", target_kind, target_name, source_system)
        self._durations.observe(duration_ms)

    def record_cached(
        self,
        target_kind: TargetKind,
        target_name: str,
        duration_ms: int,
        *,
        source_system: str | None = None,
    ) -> None:
        self._bump("cached", target_kind, target_name, source_system)
        self._durations.observe(duration_ms)

    def record_failure(
        self,
        target_kind: TargetKind,
        target_name: str,
        duration_ms: int,
        *,
        error_type: str,
        source_system: str | None = None,
    ) -> None:
        self._bump("failure", target_kind, target_name, source_system)
        self._durations.observe(duration_ms)
        self._error_types.increment(error_type)

    def record_duplicate(
        self,
        target_kind: TargetKind,
        target_name: str,
        *,
        source_system: str | None = None,
    ) -> None:
        self._bump("duplicate", target_kind, target_name, source_system)

    def record_in_progress(
        self,
        target_kind: TargetKind,
        target_name: str,
        *,
        source_system: str | None = None,
    ) -> None:
        self._bump("in_progress", target_kind, target_name, source_system)

    def record_stale_recovered(
        self,
        target_kind: TargetKind,
        target_name: str,
        *,
        source_system: str | None = None,
    ) -> None:
        self._bump("stale_recovered", target_kind, target_name, source_system)

    def record_expired(
        self,
        target_kind: TargetKind,
        target_name: str,
        *,
        source_system: str | None = None,
    ) -> None:
        self._bump("expired", target_kind, target_name, source_system)

    def record_max_retries(
        self,
        target_kind: TargetKind,
        target_name: str,
        *,
        source_system: str | None = None,
    ) -> None:
        self._bump("max_retries_exceeded", target_kind, target_name, source_system)

    def snapshot(self) -> MetricsSnapshot:
        counts: dict[str, int] = {}
        by_target: dict[str, dict[str, int]] = defaultdict(dict)
        by_source: dict[str, dict[str, int]] = defaultdict(dict)
        for outcome, counter in self._counters.items():
            total, targets, sources = counter.read()
            counts[outcome] = total
            for target, count in targets.items():
                by_target[target][outcome] = count
            for source, count in sources.items():
                by_source[source][outcome] = count

        samples, total_ms, min_ms, max_ms = self._durations.read()
        total_operations = sum(counts[outcome] for outcome in _OPERATION_OUTCOMES)
        return MetricsSnapshot(
            counts=counts,
            total_operations=total_operations,
            duration_samples=samples,
            min_duration_ms=min_ms,
            max_duration_ms=max_ms,
            avg_duration_ms=(total_ms / samples) if samples else None,
            cache_hit_ratio=_safe_ratio(
                numerator=counts["cached"],
                denominator=counts["success"] + counts["cached"],
            ),
            success_ratio=_safe_ratio(
                numerator=counts["success"] + counts["cached"],
                denominator=total_operations,
            ),
            by_target=_sorted_nested(by_target),
            by_source=_sorted_nested(by_source),
            by_error_type=dict(sorted(self._error_types.read().items())),
        )

    def reset(self) -> None:
        for counter in self._counters.values():
            counter.reset()
        self._durations.reset()
        self._error_types.reset()
        logger.info("Reset idempotency metrics")

    def _bump(
        self,
        outcome: str,
        target_kind: TargetKind,
        target_name: str,
        source_system: str | None,
    ) -> None:
        kind = target_kind.value if isinstance(target_kind, TargetKind) else str(target_kind)
        self._counters[outcome].increment(f"{kind}:{target_name}", source_system)


def render_metrics_lines(snapshot: MetricsSnapshot) -> list[str]:
    """Render operator-facing metrics lines for CLI output."""

    lines = [
        f"Operations: total={snapshot.total_operations} " + _fmt_key_value(snapshot.counts),
        (
            f"Ratios: success={_fmt_ratio(snapshot.success_ratio)} "
            f"cache_hit={_fmt_ratio(snapshot.cache_hit_ratio)}"
        ),
    ]
    if snapshot.duration_samples:
        lines.append(
            f"Duration: n={snapshot.duration_samples} min={snapshot.min_duration_ms}ms "
            f"max={snapshot.max_duration_ms}ms avg={snapshot.avg_duration_ms or 0.0:.1f}ms",
        )
    else:
        lines.append("Duration: none")
    if snapshot.by_error_type:
        lines.append("Error types: " + _fmt_key_value(snapshot.by_error_type))
    for target, values in snapshot.by_target.items():
        lines.append(f"  target={target} {_fmt_key_value(values)}")
    return lines


def render_state_lines(*, by_state: dict[str, int], stale: int, expired: int) -> list[str]:
    """Render persisted record statistics for CLI output."""

    total = sum(by_state.values())
    return [
        f"Records: total={total} " + (_fmt_key_value(by_state) or "none"),
        f"Stale in-flight records: {stale}",
        f"Expired records awaiting cleanup: {expired}",
    ]


def _sorted_nested(values: dict[str, dict[str, int]]) -> dict[str, dict[str, int]]:
    return {name: dict(sorted(counts.items())) for name, counts in sorted(values.items())}


def _safe_ratio(*, numerator: int, denominator: int) -> float | None:
    if denominator <= 0:
        return None
    return numerator / denominator


def _fmt_ratio(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.2%}"


def _fmt_key_value(values: dict[str, int]) -> str:
    if not values:
        return ""
    return " ".join(f"{key}={values[key]}" for key in sorted(values))
