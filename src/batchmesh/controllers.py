"""Controllers for batchmesh CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from batchmesh.broker import SQLiteBroker, keys, open_broker
from batchmesh.compat import SingleNodeJobQueue
from batchmesh.config import Settings
from batchmesh.coordinator import Coordinator, LoggingChannel
from batchmesh.coordinator.metrics import MetricsSnapshot, render_prometheus
from batchmesh.logging_setup import setup_logging
from batchmesh.models import BatchOptions, Credential, NotifyTarget, ProgressSnapshot, SystemStatus
from batchmesh.worker import EchoEnricher, EchoProcessor, WorkerNode


@dataclass(slots=True)
class CoordinatorRunCommand:
    """CLI input for the long-running coordinator."""

    broker_path: Path | None
    channel_id: str | None


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    broker_path: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int | None = None
    worker_id: str | None = None


@dataclass(slots=True)
class BatchSubmitCommand:
    """CLI input for batch submission from a credential file."""

    broker_path: Path | None
    file_path: Path
    batch_id: str | None
    chat_id: str | None
    batch_type: str = "default"


@dataclass(slots=True)
class BatchCancelCommand:
    broker_path: Path | None
    batch_id: str


@dataclass(slots=True)
class StatusCommand:
    broker_path: Path | None
    prometheus: bool = False


@dataclass(slots=True)
class SingleNodeRunCommand:
    """CLI input for an in-process run without a broker."""

    file_path: Path
    concurrency: int | None
    store_path: Path | None
    chat_id: str | None
    timeout_seconds: float


class BatchmeshCliController:
    """Coordinates broker, worker and batch CLI operations."""

    def run_coordinator(self, command: CoordinatorRunCommand) -> list[str]:
        settings = _settings(command.broker_path)
        if command.channel_id:
            settings.forward.channel_id = command.channel_id
        with _broker(settings) as broker:
            coordinator = Coordinator(broker=broker, settings=settings, channel=LoggingChannel())
            coordinator.run()
        return [f"Coordinator {coordinator.coordinator_id} stopped."]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = _settings(command.broker_path)
        with _broker(settings) as broker:
            worker = WorkerNode(
                broker=broker,
                processor=EchoProcessor(),
                enricher=EchoEnricher(),
                settings=settings,
                worker_id=command.worker_id,
            )
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"skipped={summary.skipped} timeouts={summary.timeouts} "
            f"deferred={summary.deferred} idle_polls={summary.idle_polls}",
        ]

    def submit_batch(self, command: BatchSubmitCommand) -> list[str]:
        settings = _settings(command.broker_path)
        credentials, skipped_lines = read_credentials(command.file_path)
        batch_id = command.batch_id or keys.new_batch_id()
        options = BatchOptions(
            target=NotifyTarget(chat_id=command.chat_id) if command.chat_id else None,
            batch_type=command.batch_type,
        )
        with _broker(settings) as broker:
            coordinator = Coordinator(broker=broker, settings=settings, channel=LoggingChannel())
            try:
                result = coordinator.submit_batch(batch_id, credentials, options)
            finally:
                coordinator.stop()

        return [
            f"Batch submitted: batch_id={batch_id} queued={result.queued} cached={result.cached}",
            f"Input: {len(credentials)} credentials, {skipped_lines} unparseable lines skipped",
        ]

    def cancel_batch(self, command: BatchCancelCommand) -> list[str]:
        settings = _settings(command.broker_path)
        with _broker(settings) as broker:
            coordinator = Coordinator(broker=broker, settings=settings)
            result = coordinator.cancel_batch(command.batch_id)
        return [f"Batch cancelled: batch_id={command.batch_id} drained={result.drained}"]

    def status(self, command: StatusCommand) -> list[str]:
        settings = _settings(command.broker_path)
        if settings.single_node_mode:
            return ["Mode: single-node (no broker configured)"]
        with _broker(settings) as broker:
            coordinator = Coordinator(broker=broker, settings=settings)
            status = coordinator.get_system_status()
            heartbeat_age = _coordinator_heartbeat_age(broker)
        if command.prometheus and status.metrics is not None:
            return render_prometheus(status.metrics)
        lines = render_status_lines(status)
        lines.insert(
            1,
            "Coordinator heartbeat: "
            + ("none" if heartbeat_age is None else f"{heartbeat_age:.0f}s ago"),
        )
        return lines

    def run_single_node(self, command: SingleNodeRunCommand) -> list[str]:
        settings = _settings(None)
        if command.store_path is not None:
            settings.single_node.store_path = command.store_path
        credentials, skipped_lines = read_credentials(command.file_path)
        snapshots: list[ProgressSnapshot] = []
        queue = SingleNodeJobQueue(
            processor=EchoProcessor(),
            settings=settings,
            channel=LoggingChannel(),
            enricher=EchoEnricher(),
            on_progress=snapshots.append,
        )
        batch_id = keys.new_batch_id()
        queue.start_processing(command.concurrency)
        try:
            result = queue.submit_batch(
                batch_id,
                credentials,
                BatchOptions(target=NotifyTarget(chat_id=command.chat_id) if command.chat_id else None),
            )
            finished = queue.wait_until_idle(timeout=command.timeout_seconds)
        finally:
            queue.stop()

        lines = [
            f"Batch {batch_id}: queued={result.queued} cached={result.cached} "
            f"skipped_lines={skipped_lines}",
        ]
        if snapshots:
            final = snapshots[-1]
            counts = " ".join(f"{name}={value}" for name, value in final.counts.items())
            lines.append(f"Completed {final.completed}/{final.total}: {counts}")
        if not finished:
            lines.append(f"Timed out after {command.timeout_seconds:.0f}s with work still queued.")
        return lines


def read_credentials(path: Path) -> tuple[list[Credential], int]:
    """Parse ``username:password`` lines; returns credentials and the count of rejected lines."""

    credentials: list[Credential] = []
    skipped = 0
    for line in path.read_text(encoding="utf-8").splitlines():
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        credential = Credential.parse(line)
        if credential is None:
            skipped += 1
            continue
        credentials.append(credential)
    return credentials, skipped


def render_status_lines(status: SystemStatus) -> list[str]:
    lines = [
        f"Mode: {status.mode} instance={status.instance_id} running={status.running}",
        f"Queue: main={status.queue.main_queue} retry={status.queue.retry_queue} "
        f"active_batches={status.active_batches}",
    ]
    for batch_id, count in sorted(status.queue.by_batch.items()):
        lines.append(f"  batch {batch_id}: {count} queued")
    lines.append(f"Workers: {len(status.workers)}")
    for worker in status.workers:
        lines.append(
            f"  {worker.worker_id}: alive={worker.alive} "
            f"last_seen={worker.last_seen_seconds_ago:.0f}s",
        )
    lines.append(f"Proxies: {len(status.proxies)}")
    for proxy in status.proxies:
        lines.append(
            f"  {proxy.proxy_id}: healthy={proxy.healthy} "
            f"consecutive_failures={proxy.consecutive_failures}",
        )
    if status.metrics is not None:
        lines.extend(render_metrics_lines(status.metrics))
    return lines


def render_metrics_lines(metrics: MetricsSnapshot) -> list[str]:
    latency = metrics.latency
    lines = [
        f"Metrics: processed={metrics.tasks_processed_total} "
        f"cache_hit_rate={_fmt_ratio(metrics.cache_hit_rate)} "
        f"error_rate={_fmt_ratio(metrics.error_rate)} (last {metrics.recent_sample_size})",
        f"  duration: avg={latency.average_seconds:.2f}s p50={latency.p50_seconds:.2f}s "
        f"p95={latency.p95_seconds:.2f}s p99={latency.p99_seconds:.2f}s n={latency.sample_size}",
    ]
    if metrics.status_counts:
        counts = " ".join(f"{name}={value}" for name, value in metrics.status_counts.items())
        lines.append(f"  results: {counts}")
    if metrics.error_code_counts:
        codes = " ".join(f"{code}={count}" for code, count in metrics.error_code_counts.items())
        lines.append(f"  recent errors: {codes}")
    return lines


def _fmt_ratio(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.1%}"


def _settings(broker_path: Path | None) -> Settings:
    settings = Settings.from_env(broker_path=broker_path)
    settings.validate()
    setup_logging(settings.log_level)
    return settings


def _coordinator_heartbeat_age(broker: SQLiteBroker) -> float | None:
    raw = broker.get(keys.COORDINATOR_HEARTBEAT)
    if raw is None:
        return None
    try:
        return max(0.0, broker.now() - float(json.loads(raw)["timestamp"]))
    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
        return None


@contextmanager
def _broker(settings: Settings) -> Iterator[SQLiteBroker]:
    broker = open_broker(settings.broker)
    try:
        yield broker
    finally:
        broker.close()
