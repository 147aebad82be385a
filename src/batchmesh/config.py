"""Runtime configuration for broker, queue, worker and coordinator."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class BrokerSettings:
    """Shared broker location and SQLite policy."""

    db_path: Path | None = None
    busy_timeout_ms: int = 10_000
    poll_interval_seconds: float = 0.05
    message_retention_seconds: int = 300


@dataclass(slots=True)
class QueueSettings:
    """Batch splitting, dedup and retry policy."""

    max_retries: int = 2
    lookup_chunk_size: int = 1_000
    push_chunk_size: int = 100
    result_ttl_seconds: int = 30 * 24 * 3_600
    error_exclusion_seconds: int = 24 * 3_600
    cancel_ttl_seconds: int = 3_600


@dataclass(slots=True)
class WorkerSettings:
    """Worker loop timings and local circuit breaker."""

    task_timeout_seconds: float = 120.0
    heartbeat_interval_seconds: float = 10.0
    heartbeat_ttl_seconds: int = 30
    lease_ttl_seconds: int = 300
    lease_shadow_ttl_seconds: int = 3_600
    retry_pop_timeout_seconds: float = 1.0
    main_pop_timeout_seconds: float = 30.0
    graceful_shutdown_seconds: float = 30.0
    circuit_window_size: int = 5
    circuit_error_threshold: float = 0.6
    circuit_pause_seconds: float = 3.0
    error_backoff_seconds: float = 1.0


@dataclass(slots=True)
class CoordinatorSettings:
    """Supervisor intervals and startup guard thresholds."""

    heartbeat_interval_seconds: float = 10.0
    heartbeat_ttl_seconds: int = 30
    startup_fresh_seconds: float = 60.0
    startup_recheck_seconds: float = 30.0
    startup_grace_seconds: float = 5.0
    takeover_lock_ttl_seconds: int = 60
    lock_ttl_seconds: int = 10
    dead_worker_seconds: float = 30.0
    dead_worker_sweep_seconds: float = 30.0
    zombie_sweep_seconds: float = 60.0
    pending_forward_sweep_seconds: float = 60.0
    queue_depth_warning: int = 1_000


@dataclass(slots=True)
class ProgressSettings:
    """Progress record lifetime and outward edit throttling."""

    throttle_seconds: float = 3.0
    poll_interval_seconds: float = 5.0
    ttl_seconds: int = 7 * 24 * 3_600


@dataclass(slots=True)
class ForwardSettings:
    """Outward forwarding channel and two-phase commit timings."""

    channel_id: str | None = None
    pending_ttl_seconds: int = 120
    replay_after_seconds: float = 30.0
    abandon_after_seconds: float = 600.0
    message_ttl_seconds: int = 30 * 24 * 3_600


@dataclass(slots=True)
class ProxySettings:
    """Proxy pool members and health policy."""

    proxies: tuple[str, ...] = ()
    unhealthy_ttl_seconds: int = 300
    failure_threshold: int = 3


@dataclass(slots=True)
class MetricsSettings:
    """Rolling windows and alert threshold for task metrics."""

    recent_results_window: int = 100
    duration_samples: int = 1_000
    error_rate_warning: float = 0.05
    warning_interval_seconds: float = 60.0


@dataclass(slots=True)
class NotificationSettings:
    """Bounded retry policy for outward channel calls."""

    max_retries: int = 3
    delete_max_retries: int = 2
    backoff_seconds: tuple[float, ...] = (1.0, 2.0, 5.0, 10.0, 30.0)


@dataclass(slots=True)
class SingleNodeSettings:
    """Settings for the in-process fallback mode."""

    concurrency: int = 1
    store_path: Path = Path("data/processed/processed-creds.jsonl")
    processed_ttl_seconds: int = 7 * 24 * 3_600
    progress_throttle_seconds: float = 3.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by component."""

    broker: BrokerSettings = field(default_factory=BrokerSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    coordinator: CoordinatorSettings = field(default_factory=CoordinatorSettings)
    progress: ProgressSettings = field(default_factory=ProgressSettings)
    forward: ForwardSettings = field(default_factory=ForwardSettings)
    proxy: ProxySettings = field(default_factory=ProxySettings)
    metrics: MetricsSettings = field(default_factory=MetricsSettings)
    notification: NotificationSettings = field(default_factory=NotificationSettings)
    single_node: SingleNodeSettings = field(default_factory=SingleNodeSettings)
    log_level: str = "INFO"

    @property
    def single_node_mode(self) -> bool:
        return self.broker.db_path is None

    @classmethod
    def from_env(cls, broker_path: Path | None = None) -> Settings:
        """Load settings from BATCHMESH_* environment variables."""

        raw_broker_path = os.getenv("BATCHMESH_BROKER_PATH", "").strip()
        resolved_broker_path = broker_path or (Path(raw_broker_path) if raw_broker_path else None)
        return cls(
            broker=BrokerSettings(
                db_path=resolved_broker_path,
                busy_timeout_ms=int(os.getenv("BATCHMESH_BROKER_BUSY_TIMEOUT_MS", "10000")),
                poll_interval_seconds=float(
                    os.getenv("BATCHMESH_BROKER_POLL_INTERVAL_SECONDS", "0.05"),
                ),
                message_retention_seconds=int(
                    os.getenv("BATCHMESH_BROKER_MESSAGE_RETENTION_SECONDS", "300"),
                ),
            ),
            queue=QueueSettings(
                max_retries=int(os.getenv("BATCHMESH_MAX_RETRIES", "2")),
                lookup_chunk_size=int(os.getenv("BATCHMESH_LOOKUP_CHUNK_SIZE", "1000")),
                push_chunk_size=int(os.getenv("BATCHMESH_PUSH_CHUNK_SIZE", "100")),
                result_ttl_seconds=int(
                    os.getenv("BATCHMESH_RESULT_TTL_SECONDS", str(30 * 24 * 3_600)),
                ),
                error_exclusion_seconds=int(
                    os.getenv("BATCHMESH_ERROR_EXCLUSION_SECONDS", str(24 * 3_600)),
                ),
            ),
            worker=WorkerSettings(
                task_timeout_seconds=float(os.getenv("BATCHMESH_TASK_TIMEOUT_SECONDS", "120")),
                heartbeat_interval_seconds=float(
                    os.getenv("BATCHMESH_WORKER_HEARTBEAT_SECONDS", "10"),
                ),
                lease_ttl_seconds=int(os.getenv("BATCHMESH_LEASE_TTL_SECONDS", "300")),
                retry_pop_timeout_seconds=float(
                    os.getenv("BATCHMESH_RETRY_POP_TIMEOUT_SECONDS", "1"),
                ),
                main_pop_timeout_seconds=float(
                    os.getenv("BATCHMESH_MAIN_POP_TIMEOUT_SECONDS", "30"),
                ),
                graceful_shutdown_seconds=float(
                    os.getenv("BATCHMESH_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
                circuit_window_size=int(os.getenv("BATCHMESH_CIRCUIT_WINDOW_SIZE", "5")),
                circuit_error_threshold=float(
                    os.getenv("BATCHMESH_CIRCUIT_ERROR_THRESHOLD", "0.6"),
                ),
                circuit_pause_seconds=float(os.getenv("BATCHMESH_CIRCUIT_PAUSE_SECONDS", "3")),
                error_backoff_seconds=float(
                    os.getenv("BATCHMESH_WORKER_ERROR_BACKOFF_SECONDS", "1"),
                ),
            ),
            coordinator=CoordinatorSettings(
                heartbeat_interval_seconds=float(
                    os.getenv("BATCHMESH_COORDINATOR_HEARTBEAT_SECONDS", "10"),
                ),
                startup_grace_seconds=float(
                    os.getenv("BATCHMESH_COORDINATOR_STARTUP_GRACE_SECONDS", "5"),
                ),
                dead_worker_seconds=float(os.getenv("BATCHMESH_DEAD_WORKER_SECONDS", "30")),
                zombie_sweep_seconds=float(os.getenv("BATCHMESH_ZOMBIE_SWEEP_SECONDS", "60")),
                queue_depth_warning=int(os.getenv("BATCHMESH_QUEUE_DEPTH_WARNING", "1000")),
            ),
            progress=ProgressSettings(
                throttle_seconds=float(os.getenv("BATCHMESH_PROGRESS_THROTTLE_SECONDS", "3")),
                poll_interval_seconds=float(
                    os.getenv("BATCHMESH_PROGRESS_POLL_SECONDS", "5"),
                ),
            ),
            forward=ForwardSettings(
                channel_id=os.getenv("BATCHMESH_FORWARD_CHANNEL_ID", "").strip() or None,
            ),
            proxy=ProxySettings(
                proxies=_collect_proxies(),
                failure_threshold=int(os.getenv("BATCHMESH_PROXY_FAILURE_THRESHOLD", "3")),
            ),
            metrics=MetricsSettings(
                error_rate_warning=float(
                    os.getenv("BATCHMESH_METRICS_ERROR_RATE_WARNING", "0.05"),
                ),
            ),
            notification=NotificationSettings(
                max_retries=int(os.getenv("BATCHMESH_NOTIFY_MAX_RETRIES", "3")),
                delete_max_retries=int(os.getenv("BATCHMESH_NOTIFY_DELETE_MAX_RETRIES", "2")),
            ),
            single_node=SingleNodeSettings(
                concurrency=int(os.getenv("BATCHMESH_CONCURRENCY", "1")),
                store_path=Path(
                    os.getenv(
                        "BATCHMESH_PROCESSED_STORE_PATH",
                        "data/processed/processed-creds.jsonl",
                    ),
                ),
                processed_ttl_seconds=int(
                    os.getenv("BATCHMESH_PROCESSED_TTL_SECONDS", str(7 * 24 * 3_600)),
                ),
            ),
            log_level=os.getenv("BATCHMESH_LOG_LEVEL", "INFO").strip().upper() or "INFO",
        )

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot honour."""

        if self.queue.max_retries < 0:
            raise ValueError("BATCHMESH_MAX_RETRIES must be >= 0.")
        if self.queue.lookup_chunk_size <= 0 or self.queue.push_chunk_size <= 0:
            raise ValueError("BATCHMESH_LOOKUP_CHUNK_SIZE and BATCHMESH_PUSH_CHUNK_SIZE must be > 0.")
        if self.worker.task_timeout_seconds <= 0:
            raise ValueError("BATCHMESH_TASK_TIMEOUT_SECONDS must be > 0.")
        if self.worker.lease_ttl_seconds <= self.worker.task_timeout_seconds:
            raise ValueError(
                "BATCHMESH_LEASE_TTL_SECONDS must be greater than BATCHMESH_TASK_TIMEOUT_SECONDS.",
            )
        if self.worker.circuit_window_size <= 0:
            raise ValueError("BATCHMESH_CIRCUIT_WINDOW_SIZE must be > 0.")
        if not 0.0 < self.worker.circuit_error_threshold <= 1.0:
            raise ValueError("BATCHMESH_CIRCUIT_ERROR_THRESHOLD must be in (0, 1].")
        if self.coordinator.startup_recheck_seconds > self.coordinator.startup_fresh_seconds:
            raise ValueError("Coordinator recheck window must not exceed the freshness window.")
        if self.progress.throttle_seconds < 0:
            raise ValueError("BATCHMESH_PROGRESS_THROTTLE_SECONDS must be >= 0.")
        if self.single_node.concurrency <= 0:
            raise ValueError("BATCHMESH_CONCURRENCY must be a positive integer.")
        if self.proxy.failure_threshold <= 0:
            raise ValueError("BATCHMESH_PROXY_FAILURE_THRESHOLD must be > 0.")
        if self.notification.max_retries < 1 or self.notification.delete_max_retries < 1:
            raise ValueError("BATCHMESH_NOTIFY_MAX_RETRIES values must be >= 1.")
        if not self.notification.backoff_seconds:
            raise ValueError("Notification backoff schedule must not be empty.")
        if not 0.0 <= self.metrics.error_rate_warning <= 1.0:
            raise ValueError("BATCHMESH_METRICS_ERROR_RATE_WARNING must be in [0, 1].")
        if self.log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unsupported BATCHMESH_LOG_LEVEL: {self.log_level!r}")


def _collect_proxies() -> tuple[str, ...]:
    raw = os.getenv("BATCHMESH_PROXY_POOL", "").strip()
    if not raw:
        return ()
    values: list[str] = []
    seen: set[str] = set()
    for part in raw.split(","):
        token = part.strip()
        if not token or token in seen:
            continue
        seen.add(token)
        values.append(token)
    return tuple(values)
