"""Coordinator: crash recovery, supervision sweeps and batch routing."""

from __future__ import annotations

import json
import logging
import socket
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from typing import Any
from uuid import uuid4

from batchmesh.broker import keys
from batchmesh.broker.base import Broker
from batchmesh.broker.pubsub import Subscription
from batchmesh.config import Settings
from batchmesh.coordinator.forwarder import ChannelForwarder, ForwardPolicy, has_aux_data
from batchmesh.coordinator.job_queue import JobQueueManager
from batchmesh.coordinator.locks import DistributedLock, LockHandle
from batchmesh.coordinator.metrics import MetricsRecorder
from batchmesh.coordinator.notifier import NotificationChannel, RetryingChannel
from batchmesh.coordinator.progress import ProgressLedger, ProgressTracker
from batchmesh.coordinator.proxy_pool import ProxyPoolManager
from batchmesh.errors import BrokerUnavailableError, CoordinatorStartupError
from batchmesh.models import (
    BatchOptions,
    CancelResult,
    Credential,
    EnqueueResult,
    SystemStatus,
    Task,
    WorkerHealth,
)
from batchmesh.signals import stop_on_signals

logger = logging.getLogger(__name__)

LEASE_EXPIRED = "LEASE_EXPIRED"
TAKEOVER_OPERATION = "takeover"


class Coordinator:
    """Owns the supervision loops for one broker.

    Only one coordinator should run per broker. The startup guard is a
    heuristic: two coordinators starting inside the grace window can both
    proceed.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        broker: Broker,
        settings: Settings | None = None,
        channel: NotificationChannel | None = None,
        coordinator_id: str | None = None,
        forward_policy: ForwardPolicy = has_aux_data,
        sleep: Callable[[float], None] = time.sleep,
        tick_seconds: float = 1.0,
    ) -> None:
        self._broker = broker
        self.settings = settings or Settings()
        self.coordinator_id = coordinator_id or f"coordinator-{socket.gethostname()}-{uuid4().hex[:8]}"
        self._sleep = sleep
        self._tick_seconds = tick_seconds

        self.locks = DistributedLock(
            broker,
            owner_id=self.coordinator_id,
            default_ttl_seconds=self.settings.coordinator.lock_ttl_seconds,
        )
        self.proxy_pool = ProxyPoolManager(
            broker=broker,
            proxies=self.settings.proxy.proxies,
            unhealthy_ttl_seconds=self.settings.proxy.unhealthy_ttl_seconds,
            failure_threshold=self.settings.proxy.failure_threshold,
        )
        if channel is not None:
            channel = RetryingChannel(channel, self.settings.notification, sleep=sleep)
        self.channel = channel
        self.metrics = MetricsRecorder(broker, self.settings.metrics)
        self.ledger = ProgressLedger(broker, ttl_seconds=self.settings.progress.ttl_seconds)
        self.progress = ProgressTracker(
            ledger=self.ledger,
            channel=channel,
            is_cancelled=self._is_batch_cancelled,
            edit_lock=lambda name: self.locks.hold(name),
            throttle_seconds=self.settings.progress.throttle_seconds,
            poll_interval_seconds=self.settings.progress.poll_interval_seconds,
            clock=broker.now,
            wall_clock=broker.now,
            sleep=sleep,
        )
        self.queue = JobQueueManager(
            broker=broker,
            ledger=self.ledger,
            proxy_pool=self.proxy_pool,
            settings=self.settings.queue,
            progress_initializer=self._init_progress,
            metrics=self.metrics,
        )
        self.forwarder = ChannelForwarder(
            broker=broker,
            channel=channel,
            settings=self.settings.forward,
            forward_policy=forward_policy,
        )

        self._worker_last_seen: dict[str, float] = {}
        self._workers_lock = threading.Lock()
        self._heartbeat_subscription: Subscription | None = None
        self._stop = threading.Event()
        self._supervisor: threading.Thread | None = None
        self._started_at: float | None = None
        self._fatal_error: BrokerUnavailableError | None = None
        self._stop_signal_name: str | None = None

    @property
    def running(self) -> bool:
        return self._started_at is not None and not self._stop.is_set()

    # -- lifecycle ------------------------------------------------------------

    def start(self) -> None:
        """Recover state, then start heartbeats, listeners and the supervisor."""

        if self._supervisor is not None:
            return
        self.perform_crash_recovery()
        self._stop.clear()
        self._started_at = time.monotonic()
        self.send_heartbeat()
        self._heartbeat_subscription = self._broker.subscribe(keys.WORKER_HEARTBEATS)
        self._heartbeat_subscription.listen(self.handle_worker_heartbeat, name="worker-heartbeats")
        self.forwarder.start()
        self.progress.start()
        self._supervisor = threading.Thread(
            target=self._supervise,
            daemon=True,
            name="coordinator-supervisor",
        )
        self._supervisor.start()
        logger.info("Coordinator %s started", self.coordinator_id)

    def stop(self, *, timeout: float = 5.0) -> None:
        self._stop.set()
        supervisor = self._supervisor
        self._supervisor = None
        if supervisor is not None and supervisor is not threading.current_thread():
            supervisor.join(timeout=timeout)
        if self._heartbeat_subscription is not None:
            self._heartbeat_subscription.close(timeout=timeout)
            self._heartbeat_subscription = None
        self.forwarder.stop()
        self.progress.stop(timeout=timeout)
        if self._started_at is not None and self._fatal_error is None:
            self._clear_own_heartbeat()
        self._started_at = None
        logger.info("Coordinator %s stopped", self.coordinator_id)

    def request_stop(self, signal_name: str = "manual") -> None:
        self._stop_signal_name = signal_name
        self._stop.set()
        logger.info("Coordinator stop requested (%s)", signal_name)

    def run(self) -> None:
        """Run until SIGINT/SIGTERM or a fatal broker error."""

        with stop_on_signals(self.request_stop):
            self.start()
            try:
                while not self._stop.wait(timeout=0.5):
                    pass
            finally:
                self.stop()
        if self._fatal_error is not None:
            raise self._fatal_error

    # -- startup --------------------------------------------------------------

    def perform_crash_recovery(self) -> int:
        """Guard against a live coordinator, then resume in-progress batches.

        Returns the number of batches found in durable state.
        """

        self._check_existing_coordinator()
        handle = self.locks.acquire(
            TAKEOVER_OPERATION,
            ttl=self.settings.coordinator.takeover_lock_ttl_seconds,
        )
        if handle is None:
            raise CoordinatorStartupError("Takeover lock is held by another coordinator.")
        try:
            batch_ids = self.ledger.list_batch_ids()
            for batch_id in batch_ids:
                self._recover_batch(batch_id)
            replayed = self.forwarder.retry_pending_forwards()
            logger.info(
                "Crash recovery done: %d batches, %d pending forwards replayed",
                len(batch_ids),
                replayed,
            )
            return len(batch_ids)
        finally:
            self.locks.release(handle)

    def _check_existing_coordinator(self) -> None:
        age = self._other_heartbeat_age()
        if age is None or age >= self.settings.coordinator.startup_fresh_seconds:
            return
        logger.warning(
            "Another coordinator heartbeat is %.0fs old; rechecking in %.0fs",
            age,
            self.settings.coordinator.startup_grace_seconds,
        )
        self._sleep(self.settings.coordinator.startup_grace_seconds)
        age = self._other_heartbeat_age()
        if age is not None and age < self.settings.coordinator.startup_recheck_seconds:
            raise CoordinatorStartupError(
                f"Another coordinator is alive (heartbeat {age:.0f}s old).",
            )

    def _other_heartbeat_age(self) -> float | None:
        raw = self._broker.get(keys.COORDINATOR_HEARTBEAT)
        if raw is None:
            return None
        try:
            payload = json.loads(raw)
            owner = str(payload["coordinator_id"])
            timestamp = float(payload["timestamp"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning("Ignoring unreadable coordinator heartbeat")
            return None
        if owner == self.coordinator_id:
            return None
        return max(0.0, self._broker.now() - timestamp)

    def _recover_batch(self, batch_id: str) -> None:
        snapshot = self.ledger.snapshot(batch_id)
        if snapshot is None:
            return
        if snapshot.aborted:
            self.progress.send_aborted_message(batch_id)
        elif snapshot.is_complete:
            self.progress.send_summary(batch_id)
        else:
            self.progress.track(batch_id)
            logger.info(
                "Resuming batch %s at %d/%d",
                batch_id,
                snapshot.completed,
                snapshot.total,
            )

    # -- supervision ----------------------------------------------------------

    def send_heartbeat(self) -> None:
        self._broker.set(
            keys.COORDINATOR_HEARTBEAT,
            json.dumps({"coordinator_id": self.coordinator_id, "timestamp": self._broker.now()}),
            ttl=self.settings.coordinator.heartbeat_ttl_seconds,
        )

    def handle_worker_heartbeat(self, payload: dict[str, Any]) -> None:
        worker_id = payload.get("worker_id")
        if not isinstance(worker_id, str) or not worker_id:
            logger.warning("Malformed worker heartbeat: %s", payload)
            return
        with self._workers_lock:
            self._worker_last_seen[worker_id] = self._broker.now()
        batch_id = payload.get("batch_id")
        if isinstance(batch_id, str) and batch_id:
            self.progress.track(batch_id)
            self.progress.handle_progress_update(batch_id)

    def detect_dead_workers(self) -> list[str]:
        """Evict workers silent for longer than the threshold."""

        now = self._broker.now()
        threshold = self.settings.coordinator.dead_worker_seconds
        with self._workers_lock:
            dead = [
                worker_id
                for worker_id, seen in self._worker_last_seen.items()
                if now - seen > threshold
            ]
            for worker_id in dead:
                del self._worker_last_seen[worker_id]
        for worker_id in dead:
            self._broker.delete(keys.worker_heartbeat_key(worker_id))
            logger.warning("Worker %s evicted after %.0fs of silence", worker_id, threshold)

        stats = self.queue.get_queue_stats()
        if stats.total > self.settings.coordinator.queue_depth_warning:
            logger.warning(
                "Queue depth %d exceeds %d (main=%d retry=%d)",
                stats.total,
                self.settings.coordinator.queue_depth_warning,
                stats.main_queue,
                stats.retry_queue,
            )
        return dead

    def recover_zombie_tasks(self) -> int:
        """Requeue tasks whose lease expired without being released."""

        recovered = 0
        for shadow_key in self._broker.scan(keys.LEASE_SHADOW_PATTERN):
            try:
                if self._recover_zombie(shadow_key):
                    recovered += 1
            except BrokerUnavailableError:
                raise
            except Exception:
                logger.exception("Zombie recovery for %s failed", shadow_key)
        if recovered:
            logger.info("Zombie sweep requeued %d tasks", recovered)
        return recovered

    def _recover_zombie(self, shadow_key: str) -> bool:
        suffix = shadow_key.removeprefix("job-shadow:")
        batch_id, _, task_id = suffix.partition(":")
        if self._broker.exists(keys.lease_key(batch_id, task_id)):
            return False
        raw = self._broker.get(shadow_key)
        if raw is None:
            return False
        # Only the process whose delete removed the shadow may requeue.
        if self._broker.delete(shadow_key) != 1:
            return False
        try:
            task = Task.from_json(raw)
        except ValueError as error:
            logger.warning("Dropping unreadable lease shadow %s: %s", shadow_key, error)
            return False
        if self.queue.is_batch_cancelled(task.batch_id):
            logger.info("Zombie task %s dropped; batch %s cancelled", task.task_id, task.batch_id)
            return False
        logger.warning("Task %s lease expired; requeueing", task.task_id)
        self.queue.retry_task(task, LEASE_EXPIRED)
        return True

    def adopt_active_batches(self) -> int:
        """Track progress records written by other processes (CLI submissions)."""

        adopted = 0
        for batch_id in self.ledger.list_batch_ids():
            if not self.progress.is_tracking(batch_id):
                self.progress.track(batch_id)
                adopted += 1
        return adopted

    def _supervise(self) -> None:
        cs = self.settings.coordinator
        schedule: list[tuple[float, Callable[[], object]]] = [
            (cs.heartbeat_interval_seconds, self.send_heartbeat),
            (cs.dead_worker_sweep_seconds, self.detect_dead_workers),
            (cs.zombie_sweep_seconds, self.recover_zombie_tasks),
            (cs.pending_forward_sweep_seconds, self.forwarder.retry_pending_forwards),
            (self.settings.progress.poll_interval_seconds, self.adopt_active_batches),
            (cs.zombie_sweep_seconds, self._broker.purge_expired),
        ]
        started = time.monotonic()
        next_run = [started + interval for interval, _ in schedule]
        while not self._stop.wait(timeout=self._tick_seconds):
            now = time.monotonic()
            for index, (interval, job) in enumerate(schedule):
                if now < next_run[index]:
                    continue
                next_run[index] = now + interval
                if not self._run_job(job):
                    return

    def _run_job(self, job: Callable[[], object]) -> bool:
        try:
            job()
        except BrokerUnavailableError as error:
            logger.error("Broker unavailable; coordinator stopping: %s", error)
            self._fatal_error = error
            self._stop.set()
            return False
        except Exception:
            logger.exception("Supervisor job %s failed", getattr(job, "__name__", job))
        return True

    def _clear_own_heartbeat(self) -> None:
        try:
            raw = self._broker.get(keys.COORDINATOR_HEARTBEAT)
            if raw is not None and json.loads(raw).get("coordinator_id") == self.coordinator_id:
                self._broker.delete(keys.COORDINATOR_HEARTBEAT)
        except Exception as error:  # noqa: BLE001
            logger.warning("Could not clear coordinator heartbeat: %s", error)

    # -- locks ----------------------------------------------------------------

    def acquire_lock(self, operation: str, ttl: int | None = None) -> LockHandle | None:
        return self.locks.acquire(operation, ttl=ttl)

    def release_lock(self, handle: LockHandle) -> bool:
        return self.locks.release(handle)

    @contextmanager
    def with_lock(self, operation: str, ttl: int | None = None) -> Iterator[LockHandle]:
        with self.locks.hold(operation, ttl=ttl) as handle:
            yield handle

    # -- batch routing --------------------------------------------------------

    def submit_batch(
        self,
        batch_id: str,
        credentials: Sequence[Credential],
        options: BatchOptions | None = None,
    ) -> EnqueueResult:
        return self.queue.enqueue_batch(batch_id, credentials, options)

    def cancel_batch(self, batch_id: str) -> CancelResult:
        result = self.queue.cancel_batch(batch_id)
        self.progress.abort_batch(batch_id)
        return result

    def get_system_status(self) -> SystemStatus:
        now = self._broker.now()
        threshold = self.settings.coordinator.dead_worker_seconds
        with self._workers_lock:
            last_seen = dict(self._worker_last_seen)
        for heartbeat_key in self._broker.scan(keys.WORKER_HEARTBEAT_PATTERN):
            last_seen.setdefault(keys.worker_id_from_heartbeat_key(heartbeat_key), now)
        workers = [
            WorkerHealth(
                worker_id=worker_id,
                last_seen_seconds_ago=max(0.0, now - seen),
                alive=now - seen <= threshold,
            )
            for worker_id, seen in sorted(last_seen.items())
        ]
        return SystemStatus(
            mode="distributed",
            instance_id=self.coordinator_id,
            uptime_seconds=(
                0.0 if self._started_at is None else time.monotonic() - self._started_at
            ),
            running=self.running,
            queue=self.queue.get_queue_stats(),
            workers=workers,
            proxies=self.proxy_pool.get_proxy_stats(),
            active_batches=len(self.ledger.list_batch_ids()),
            metrics=self.metrics.snapshot(),
        )

    def _init_progress(self, batch_id: str, total: int, options: BatchOptions) -> None:
        self.progress.init_batch(batch_id, total, options.target, options.batch_type)

    def _is_batch_cancelled(self, batch_id: str) -> bool:
        return self.queue.is_batch_cancelled(batch_id)
