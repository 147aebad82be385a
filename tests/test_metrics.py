from __future__ import annotations

import logging

import allure

from batchmesh.broker import keys
from batchmesh.compat import SingleNodeJobQueue
from batchmesh.config import MetricsSettings
from batchmesh.controllers import render_metrics_lines
from batchmesh.coordinator import Coordinator, MetricsRecorder
from batchmesh.coordinator.metrics import (
    ErrorRateAlarm,
    LocalMetrics,
    build_metrics_snapshot,
    render_prometheus,
)
from batchmesh.models import Credential, ResultRecord, ResultStatus
from batchmesh.worker import EchoEnricher, EchoProcessor, WorkerNode

pytestmark = [
    allure.epic("Job Distribution"),
    allure.feature("Task Metrics"),
]


def _error(code: str) -> dict:
    return {"status": "ERROR", "error_code": code}


def test_snapshot_percentiles_and_error_breakdown() -> None:
    snapshot = build_metrics_snapshot(
        counters={
            "tasks_processed": 10,
            "status:VALID": 6,
            "status:ERROR": 4,
            "cache_hits": 3,
            "cache_lookups": 12,
        },
        recent_results=[
            {"status": "VALID", "error_code": None},
            _error("NETWORK_ERROR"),
            _error("NETWORK_ERROR"),
            _error("TASK_TIMEOUT"),
        ],
        durations=[float(value) for value in range(1, 101)],
        queue_depth=7,
        active_workers=2,
    )

    assert snapshot.tasks_processed_total == 10
    assert snapshot.status_counts == {"ERROR": 4, "VALID": 6}
    assert snapshot.cache_hit_rate == 0.25
    assert snapshot.error_rate == 0.75
    assert snapshot.error_code_counts == {"NETWORK_ERROR": 2, "TASK_TIMEOUT": 1}
    assert (snapshot.latency.p50_seconds, snapshot.latency.p95_seconds, snapshot.latency.p99_seconds) == (
        50.0,
        95.0,
        99.0,
    )
    assert snapshot.latency.average_seconds == 50.5


def test_empty_snapshot_has_no_rates() -> None:
    snapshot = build_metrics_snapshot(
        counters={},
        recent_results=[],
        durations=[],
        queue_depth=0,
        active_workers=0,
    )

    assert snapshot.cache_hit_rate is None
    assert snapshot.error_rate is None
    assert snapshot.latency.sample_size == 0
    assert "n/a" in render_metrics_lines(snapshot)[0]


def test_recorder_keeps_bounded_windows_in_the_broker(broker) -> None:
    recorder = MetricsRecorder(broker, MetricsSettings(recent_results_window=3, duration_samples=2))

    for index in range(5):
        recorder.record_task(ResultStatus.VALID, duration_seconds=float(index))
    recorder.record_task(ResultStatus.ERROR, duration_seconds=9.0, error_code="NETWORK_ERROR")
    recorder.record_cache_lookup(hits=1, lookups=4)
    broker.rpush(keys.TASK_QUEUE, "t1", "t2")
    broker.set(keys.worker_heartbeat_key("worker-1"), "{}", ttl=30)

    snapshot = recorder.snapshot()

    assert broker.llen(keys.METRICS_RECENT_RESULTS) == 3
    assert broker.lrange(keys.METRICS_DURATIONS) == ["4.000000", "9.000000"]
    assert snapshot.tasks_processed_total == 6
    assert snapshot.status_counts == {"ERROR": 1, "VALID": 5}
    assert snapshot.recent_sample_size == 3
    assert snapshot.error_code_counts == {"NETWORK_ERROR": 1}
    assert snapshot.cache_hit_rate == 0.25
    assert (snapshot.queue_depth, snapshot.active_workers) == (2, 1)


def test_error_rate_warning_is_throttled(caplog) -> None:
    alarm = ErrorRateAlarm(MetricsSettings(error_rate_warning=0.05, warning_interval_seconds=60))
    recent = [{"status": "VALID", "error_code": None}] * 9 + [_error("NETWORK_ERROR")]

    with caplog.at_level(logging.WARNING, logger="batchmesh.coordinator.metrics"):
        assert alarm.check(recent, now=100.0)
        assert not alarm.check(recent, now=130.0)
        assert alarm.check(recent, now=161.0)
        assert not alarm.check(recent[:9], now=500.0)

    warnings = [record.getMessage() for record in caplog.records]
    assert len(warnings) == 2
    assert "NETWORK_ERROR" in warnings[0]


def test_worker_and_enqueue_feed_system_status_metrics(broker, settings) -> None:
    coordinator = Coordinator(broker=broker, settings=settings, coordinator_id="coord")
    cached = Credential("valid-old", "secret")
    broker.set(
        keys.result_key("VALID", cached.identity),
        ResultRecord(
            status=ResultStatus.VALID,
            identity=cached.identity,
            username=cached.masked,
            batch_id="b0",
            task_id="b0-0000",
            worker_id="worker-0",
            checked_at=broker.now(),
        ).to_json(),
    )
    coordinator.submit_batch(
        "b1",
        [cached, Credential("valid-a", "secret"), Credential("invalid-b", "secret")],
    )

    WorkerNode(
        broker=broker,
        processor=EchoProcessor(),
        enricher=EchoEnricher(),
        settings=settings,
        worker_id="worker-1",
    ).run_loop(max_idle_polls=1)

    metrics = coordinator.get_system_status().metrics
    assert metrics is not None
    assert metrics.tasks_processed_total == 2
    assert metrics.status_counts == {"INVALID": 1, "VALID": 1}
    assert (metrics.cache_hits, metrics.cache_lookups) == (1, 3)
    assert metrics.latency.sample_size == 2
    assert metrics.error_rate == 0.0


def test_prometheus_rendering_includes_quantiles(broker) -> None:
    recorder = MetricsRecorder(broker)
    recorder.record_task(ResultStatus.BLOCKED, duration_seconds=0.5)

    lines = render_prometheus(recorder.snapshot())

    assert "batchmesh_tasks_processed_total 1" in lines
    assert 'batchmesh_task_duration_seconds{quantile="0.95"} 0.500' in lines
    assert 'batchmesh_task_results_total{status="BLOCKED"} 1' in lines


def test_single_node_status_reports_local_metrics(settings) -> None:
    queue = SingleNodeJobQueue(processor=EchoProcessor(), settings=settings)
    queue.start_processing(concurrency=1)
    try:
        queue.submit_batch("b1", [Credential("valid-a", "secret"), Credential("fail-b", "secret")])
        assert queue.wait_until_idle(timeout=10)
        queue.submit_batch("b2", [Credential("valid-a", "secret")])
    finally:
        queue.stop()

    metrics = queue.get_system_status().metrics
    assert metrics is not None
    assert metrics.tasks_processed_total == 2
    assert metrics.error_code_counts == {"INVALID_INPUT": 1}
    assert (metrics.cache_hits, metrics.cache_lookups) == (1, 3)


def test_local_metrics_window_is_bounded(clock) -> None:
    metrics = LocalMetrics(MetricsSettings(recent_results_window=2, duration_samples=2), clock=clock)

    for _ in range(3):
        metrics.record_task(ResultStatus.INVALID, duration_seconds=1.0)

    snapshot = metrics.snapshot(queue_depth=0, active_workers=1)
    assert snapshot.tasks_processed_total == 3
    assert snapshot.recent_sample_size == 2
    assert snapshot.latency.sample_size == 2
