"""Task throughput, cache and error-rate metrics."""

from __future__ import annotations

import json
import logging
import math
import threading
from collections import Counter, deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from batchmesh.broker import keys
from batchmesh.broker.base import Broker
from batchmesh.config import MetricsSettings
from batchmesh.errors import BrokerError, BrokerUnavailableError
from batchmesh.models import ResultStatus

logger = logging.getLogger(__name__)

TASKS_PROCESSED = "tasks_processed"
CACHE_HITS = "cache_hits"
CACHE_LOOKUPS = "cache_lookups"
_STATUS_PREFIX = "status:"


@dataclass(slots=True)
class LatencyPercentiles:
    """Processing duration percentiles over the sample window."""

    sample_size: int
    average_seconds: float
    p50_seconds: float
    p95_seconds: float
    p99_seconds: float


@dataclass(slots=True)
class MetricsSnapshot:
    """Aggregated task metrics shown by ``status``."""

    tasks_processed_total: int
    status_counts: dict[str, int]
    cache_hits: int
    cache_lookups: int
    recent_sample_size: int
    recent_error_count: int
    error_code_counts: dict[str, int]
    latency: LatencyPercentiles
    queue_depth: int
    active_workers: int

    @property
    def cache_hit_rate(self) -> float | None:
        return _safe_ratio(numerator=self.cache_hits, denominator=self.cache_lookups)

    @property
    def error_rate(self) -> float | None:
        return _safe_ratio(numerator=self.recent_error_count, denominator=self.recent_sample_size)


def build_metrics_snapshot(  # noqa: PLR0913
    *,
    counters: dict[str, int],
    recent_results: Sequence[dict],
    durations: Sequence[float],
    queue_depth: int,
    active_workers: int,
) -> MetricsSnapshot:
    """Build one snapshot from raw counters and rolling windows."""

    status_counts = {
        field.removeprefix(_STATUS_PREFIX): value
        for field, value in sorted(counters.items())
        if field.startswith(_STATUS_PREFIX)
    }
    error_codes = Counter[str]()
    for entry in recent_results:
        if entry.get("status") == ResultStatus.ERROR.value:
            error_codes[str(entry.get("error_code") or "UNKNOWN_ERROR")] += 1
    return MetricsSnapshot(
        tasks_processed_total=counters.get(TASKS_PROCESSED, 0),
        status_counts=status_counts,
        cache_hits=counters.get(CACHE_HITS, 0),
        cache_lookups=counters.get(CACHE_LOOKUPS, 0),
        recent_sample_size=len(recent_results),
        recent_error_count=sum(error_codes.values()),
        error_code_counts=dict(error_codes.most_common()),
        latency=_latency(list(durations)),
        queue_depth=queue_depth,
        active_workers=active_workers,
    )


def render_prometheus(snapshot: MetricsSnapshot) -> list[str]:
    """Prometheus text exposition lines for one snapshot."""

    lines = [
        "# TYPE batchmesh_tasks_processed_total counter",
        f"batchmesh_tasks_processed_total {snapshot.tasks_processed_total}",
        "# TYPE batchmesh_cache_hit_rate gauge",
        f"batchmesh_cache_hit_rate {snapshot.cache_hit_rate or 0.0:.4f}",
        "# TYPE batchmesh_task_duration_seconds summary",
        f'batchmesh_task_duration_seconds{{quantile="0.5"}} {snapshot.latency.p50_seconds:.3f}',
        f'batchmesh_task_duration_seconds{{quantile="0.95"}} {snapshot.latency.p95_seconds:.3f}',
        f'batchmesh_task_duration_seconds{{quantile="0.99"}} {snapshot.latency.p99_seconds:.3f}',
        f"batchmesh_task_duration_seconds_count {snapshot.latency.sample_size}",
        "# TYPE batchmesh_queue_depth gauge",
        f"batchmesh_queue_depth {snapshot.queue_depth}",
        "# TYPE batchmesh_active_workers gauge",
        f"batchmesh_active_workers {snapshot.active_workers}",
        "# TYPE batchmesh_error_rate gauge",
        f"batchmesh_error_rate {snapshot.error_rate or 0.0:.4f}",
    ]
    for status, count in snapshot.status_counts.items():
        lines.append(f'batchmesh_task_results_total{{status="{status}"}} {count}')
    return lines


class ErrorRateAlarm:
    """Logs a warning when the recent error rate crosses the threshold, at most once per interval."""

    def __init__(self, settings: MetricsSettings) -> None:
        self._threshold = settings.error_rate_warning
        self._interval = settings.warning_interval_seconds
        self._last_warning_at: float | None = None

    def check(self, recent_results: Sequence[dict], now: float) -> bool:
        if not recent_results:
            return False
        errors = [entry for entry in recent_results if entry.get("status") == ResultStatus.ERROR.value]
        rate = len(errors) / len(recent_results)
        if rate <= self._threshold:
            return False
        if self._last_warning_at is not None and now - self._last_warning_at < self._interval:
            return False
        self._last_warning_at = now
        breakdown = Counter(str(entry.get("error_code") or "UNKNOWN_ERROR") for entry in errors)
        logger.warning(
            "Error rate %.1f%% over the last %d tasks exceeds %.1f%%: %s",
            rate * 100,
            len(recent_results),
            self._threshold * 100,
            dict(breakdown.most_common()),
        )
        return True


class MetricsRecorder:
    """Broker-backed counters and rolling windows shared by every node."""

    def __init__(self, broker: Broker, settings: MetricsSettings | None = None) -> None:
        self._broker = broker
        self.settings = settings or MetricsSettings()
        self.alarm = ErrorRateAlarm(self.settings)

    def record_task(
        self,
        status: ResultStatus,
        duration_seconds: float,
        error_code: str | None = None,
    ) -> None:
        """Count one processor run. Broker trouble is logged, never raised to the task path."""

        try:
            self._broker.hincrby(keys.METRICS_COUNTERS, TASKS_PROCESSED)
            self._broker.hincrby(keys.METRICS_COUNTERS, f"{_STATUS_PREFIX}{status.value}")
            entry = json.dumps({"status": status.value, "error_code": error_code})
            self._broker.rpush(keys.METRICS_RECENT_RESULTS, entry)
            self._broker.trim_list(keys.METRICS_RECENT_RESULTS, self.settings.recent_results_window)
            self._broker.rpush(keys.METRICS_DURATIONS, f"{max(0.0, duration_seconds):.6f}")
            self._broker.trim_list(keys.METRICS_DURATIONS, self.settings.duration_samples)
            self.alarm.check(self._recent_results(), self._broker.now())
        except BrokerUnavailableError:
            raise
        except BrokerError as error:
            logger.warning("Recording task metrics failed: %s", error)

    def record_cache_lookup(self, *, hits: int, lookups: int) -> None:
        if lookups <= 0:
            return
        try:
            self._broker.hincrby(keys.METRICS_COUNTERS, CACHE_HITS, hits)
            self._broker.hincrby(keys.METRICS_COUNTERS, CACHE_LOOKUPS, lookups)
        except BrokerUnavailableError:
            raise
        except BrokerError as error:
            logger.warning("Recording cache metrics failed: %s", error)

    def snapshot(self) -> MetricsSnapshot:
        durations: list[float] = []
        for raw in self._broker.lrange(keys.METRICS_DURATIONS):
            try:
                durations.append(float(raw))
            except ValueError:
                continue
        return build_metrics_snapshot(
            counters=self._broker.hgetall(keys.METRICS_COUNTERS),
            recent_results=self._recent_results(),
            durations=durations,
            queue_depth=self._broker.llen(keys.TASK_QUEUE) + self._broker.llen(keys.RETRY_QUEUE),
            active_workers=len(self._broker.scan(keys.WORKER_HEARTBEAT_PATTERN)),
        )

    def _recent_results(self) -> list[dict]:
        entries: list[dict] = []
        for raw in self._broker.lrange(keys.METRICS_RECENT_RESULTS):
            try:
                entries.append(json.loads(raw))
            except json.JSONDecodeError:
                continue
        return entries


class LocalMetrics:
    """In-process counterpart of ``MetricsRecorder`` for single-node mode."""

    def __init__(
        self,
        settings: MetricsSettings | None = None,
        *,
        clock: Callable[[], float],
    ) -> None:
        self.settings = settings or MetricsSettings()
        self.alarm = ErrorRateAlarm(self.settings)
        self._clock = clock
        self._lock = threading.Lock()
        self._counters = Counter[str]()
        self._recent: deque[dict] = deque(maxlen=self.settings.recent_results_window)
        self._durations: deque[float] = deque(maxlen=self.settings.duration_samples)

    def record_task(
        self,
        status: ResultStatus,
        duration_seconds: float,
        error_code: str | None = None,
    ) -> None:
        with self._lock:
            self._counters[TASKS_PROCESSED] += 1
            self._counters[f"{_STATUS_PREFIX}{status.value}"] += 1
            self._recent.append({"status": status.value, "error_code": error_code})
            self._durations.append(max(0.0, duration_seconds))
            recent = list(self._recent)
        self.alarm.check(recent, self._clock())

    def record_cache_lookup(self, *, hits: int, lookups: int) -> None:
        if lookups <= 0:
            return
        with self._lock:
            self._counters[CACHE_HITS] += hits
            self._counters[CACHE_LOOKUPS] += lookups

    def snapshot(self, *, queue_depth: int, active_workers: int) -> MetricsSnapshot:
        with self._lock:
            counters = dict(self._counters)
            recent = list(self._recent)
            durations = list(self._durations)
        return build_metrics_snapshot(
            counters=counters,
            recent_results=recent,
            durations=durations,
            queue_depth=queue_depth,
            active_workers=active_workers,
        )


def _latency(values: list[float]) -> LatencyPercentiles:
    if not values:
        return LatencyPercentiles(
            sample_size=0,
            average_seconds=0.0,
            p50_seconds=0.0,
            p95_seconds=0.0,
            p99_seconds=0.0,
        )
    ordered = sorted(values)
    return LatencyPercentiles(
        sample_size=len(ordered),
        average_seconds=sum(ordered) / len(ordered),
        p50_seconds=_percentile(ordered, 0.50),
        p95_seconds=_percentile(ordered, 0.95),
        p99_seconds=_percentile(ordered, 0.99),
    )


def _percentile(sorted_values: list[float], percentile: float) -> float:
    # Nearest-rank: smallest sample with at least ``percentile`` of values at or below it.
    index = max(0, math.ceil(len(sorted_values) * percentile) - 1)
    return sorted_values[min(index, len(sorted_values) - 1)]


def _safe_ratio(*, numerator: int, denominator: int) -> float | None:
    if denominator <= 0:
        return None
    return numerator / denominator
