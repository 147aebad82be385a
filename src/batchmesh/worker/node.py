"""Queue worker that leases tasks, runs the processor and records outcomes."""

from __future__ import annotations

import json
import logging
import os
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from batchmesh.broker import keys
from batchmesh.broker.base import Broker
from batchmesh.config import Settings
from batchmesh.coordinator.forwarder import ForwardEvent
from batchmesh.coordinator.metrics import MetricsRecorder
from batchmesh.coordinator.job_queue import JobQueueManager
from batchmesh.coordinator.progress import ProgressLedger
from batchmesh.coordinator.proxy_pool import ProxyPoolManager
from batchmesh.errors import BrokerError, BrokerUnavailableError, TaskTimeoutError
from batchmesh.models import ResultRecord, ResultStatus, Task
from batchmesh.signals import stop_on_signals
from batchmesh.worker.circuit_breaker import CircuitBreaker
from batchmesh.worker.failure_classifier import FailureClass, classify_task_failure
from batchmesh.worker.processor import Enricher, ProcessOutcome, TaskProcessor

logger = logging.getLogger(__name__)

TASK_TIMEOUT = "TASK_TIMEOUT"
PROCESSOR_EXCEPTION = "PROCESSOR_EXCEPTION"


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    skipped: int = 0
    timeouts: int = 0
    deferred: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.skipped += other.skipped
        self.timeouts += other.timeouts
        self.deferred += other.deferred
        self.idle_polls += other.idle_polls


class WorkerNode:
    """Consumes queued tasks one at a time."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        broker: Broker,
        processor: TaskProcessor,
        settings: Settings | None = None,
        worker_id: str | None = None,
        enricher: Enricher | None = None,
        proxy_pool: ProxyPoolManager | None = None,
    ) -> None:
        self._broker = broker
        self.processor = processor
        self.enricher = enricher
        self.settings = settings or Settings()
        self.worker_id = worker_id or (
            f"worker-{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:6]}"
        )
        self.proxy_pool = proxy_pool or ProxyPoolManager(
            broker=broker,
            proxies=self.settings.proxy.proxies,
            unhealthy_ttl_seconds=self.settings.proxy.unhealthy_ttl_seconds,
            failure_threshold=self.settings.proxy.failure_threshold,
        )
        self.ledger = ProgressLedger(broker, ttl_seconds=self.settings.progress.ttl_seconds)
        self.queue = JobQueueManager(
            broker=broker,
            ledger=self.ledger,
            proxy_pool=self.proxy_pool,
            settings=self.settings.queue,
        )
        worker_settings = self.settings.worker
        self.circuit_breaker = CircuitBreaker(
            window_size=worker_settings.circuit_window_size,
            error_threshold=worker_settings.circuit_error_threshold,
            pause_seconds=worker_settings.circuit_pause_seconds,
        )
        self.metrics = MetricsRecorder(broker, self.settings.metrics)
        self.tasks_completed = 0
        self._executor = self._new_executor()
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._current_task: Task | None = None
        self._idle = threading.Event()
        self._idle.set()
        self._heartbeat_stop = threading.Event()
        self._heartbeat_thread: threading.Thread | None = None

    # -- liveness -------------------------------------------------------------

    def register(self) -> None:
        self._broker.set(
            keys.worker_info_key(self.worker_id),
            json.dumps(
                {
                    "worker_id": self.worker_id,
                    "hostname": socket.gethostname(),
                    "pid": os.getpid(),
                    "started_at": self._broker.now(),
                },
            ),
            ttl=self.settings.worker.heartbeat_ttl_seconds,
        )
        logger.info("Worker %s registered", self.worker_id)

    def send_heartbeat(self) -> None:
        now = self._broker.now()
        ttl = self.settings.worker.heartbeat_ttl_seconds
        self._broker.set(
            keys.worker_heartbeat_key(self.worker_id),
            json.dumps({"worker_id": self.worker_id, "timestamp": now}),
            ttl=ttl,
        )
        self._broker.expire(keys.worker_info_key(self.worker_id), ttl)
        task = self._current_task
        self._broker.publish(
            keys.WORKER_HEARTBEATS,
            {
                "worker_id": self.worker_id,
                "timestamp": now,
                "tasks_completed": self.tasks_completed,
                "batch_id": None if task is None else task.batch_id,
                "current_task_id": None if task is None else task.task_id,
            },
        )

    def start(self) -> None:
        self.register()
        self.send_heartbeat()
        if self._heartbeat_thread is not None:
            return
        self._heartbeat_stop.clear()
        self._heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop,
            daemon=True,
            name=f"heartbeat-{self.worker_id}",
        )
        self._heartbeat_thread.start()

    def _heartbeat_loop(self) -> None:
        while not self._heartbeat_stop.wait(timeout=self.settings.worker.heartbeat_interval_seconds):
            try:
                self.send_heartbeat()
            except BrokerUnavailableError as error:
                logger.error("Heartbeat stopped; broker unavailable: %s", error)
                self.request_stop("broker_unavailable")
                return
            except Exception:
                logger.exception("Worker heartbeat failed")

    # -- task loop ------------------------------------------------------------

    def dequeue_task(self) -> Task | None:
        """Retry queue first with a short wait, then the main queue."""

        popped = self._broker.blpop(
            [keys.RETRY_QUEUE],
            timeout=self.settings.worker.retry_pop_timeout_seconds,
        )
        if popped is None and not self._stop_requested:
            popped = self._broker.blpop(
                [keys.TASK_QUEUE],
                timeout=self.settings.worker.main_pop_timeout_seconds,
            )
        if popped is None:
            return None
        queue_name, raw = popped
        try:
            return Task.from_json(raw)
        except ValueError as error:
            logger.warning("Dropping malformed task from %s: %s", queue_name, error)
            return None

    def run_once(self) -> WorkerRunSummary:
        """Process at most one task from the queues."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        task = self.dequeue_task()
        if task is None:
            summary.idle_polls = 1
            return summary

        if self.queue.is_batch_cancelled(task.batch_id):
            logger.debug("Skipping %s; batch %s cancelled", task.task_id, task.batch_id)
            summary.skipped = 1
            return summary

        lease_key = keys.lease_key(task.batch_id, task.task_id)
        if not self._broker.set_if_absent(
            lease_key,
            self.worker_id,
            ttl=self.settings.worker.lease_ttl_seconds,
        ):
            logger.debug("Task %s already leased by another worker", task.task_id)
            summary.skipped = 1
            return summary

        self._idle.clear()
        self._current_task = task
        success = True
        try:
            self._broker.set(
                keys.lease_shadow_key(task.batch_id, task.task_id),
                task.to_json(),
                ttl=self.settings.worker.lease_shadow_ttl_seconds,
            )
            if self.queue.is_batch_cancelled(task.batch_id):
                logger.debug("Batch %s cancelled after lease; dropping %s", task.batch_id, task.task_id)
                self._release_lease(task)
                summary.skipped = 1
                return summary

            summary.processed = 1
            started = time.monotonic()
            outcome = self._execute(task, summary)
            self.metrics.record_task(outcome.status, time.monotonic() - started, outcome.error_code)
            success = outcome.status != ResultStatus.ERROR
            try:
                if success:
                    self._complete(task, outcome)
                else:
                    self._fail(task, outcome, summary)
            except BrokerUnavailableError:
                raise
            except BrokerError as error:
                # Shadow stays; the zombie sweep requeues once the lease expires.
                logger.warning(
                    "Outcome of %s not recorded, leaving lease for recovery: %s",
                    task.task_id,
                    error,
                )
                summary.deferred = 1
                summary.failed = 0
                summary.retried = 0
            else:
                if success:
                    summary.succeeded = 1
                self._release_lease(task)
        finally:
            self._current_task = None
            self._idle.set()

        pause = self.circuit_breaker.record(success=success)
        if pause > 0:
            self._sleep_with_stop(pause)
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Run until stopped, ``max_tasks`` processed or ``max_idle_polls`` empty polls in a row."""

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with stop_on_signals(self.request_stop):
            self.start()
            try:
                while not self._stop_requested:
                    if max_tasks is not None and aggregate.processed >= max_tasks:
                        break
                    try:
                        summary = self.run_once()
                    except BrokerUnavailableError as error:
                        logger.error("Broker unavailable; worker %s stopping: %s", self.worker_id, error)
                        raise
                    except BrokerError as error:
                        logger.warning("Worker %s iteration failed: %s", self.worker_id, error)
                        self._sleep_with_stop(self.settings.worker.error_backoff_seconds)
                        # Counts toward max_idle_polls.
                        summary = WorkerRunSummary(idle_polls=1)
                    aggregate.add(summary)
                    if summary.idle_polls:
                        consecutive_idle += 1
                        if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                            break
                        continue
                    consecutive_idle = 0
            finally:
                self.shutdown()
        return aggregate

    def request_stop(self, signal_name: str = "manual") -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name
        logger.info("Worker %s stop requested (%s)", self.worker_id, signal_name)

    def shutdown(self) -> None:
        """Wait (bounded) for the in-flight task, then drop liveness keys."""

        self._stop_requested = True
        if not self._idle.wait(timeout=self.settings.worker.graceful_shutdown_seconds):
            logger.warning(
                "Worker %s shut down with task %s still running",
                self.worker_id,
                None if self._current_task is None else self._current_task.task_id,
            )
        self._heartbeat_stop.set()
        thread = self._heartbeat_thread
        self._heartbeat_thread = None
        if thread is not None:
            thread.join(timeout=5.0)
        self._executor.shutdown(wait=False, cancel_futures=True)
        try:
            self._broker.delete(
                keys.worker_heartbeat_key(self.worker_id),
                keys.worker_info_key(self.worker_id),
            )
        except BrokerError as error:
            logger.warning("Could not remove liveness keys for %s: %s", self.worker_id, error)
        logger.info("Worker %s stopped after %d tasks", self.worker_id, self.tasks_completed)

    # -- internals ------------------------------------------------------------

    def _execute(self, task: Task, summary: WorkerRunSummary) -> ProcessOutcome:
        try:
            return self._invoke_processor(task)
        except TaskTimeoutError as error:
            summary.timeouts = 1
            logger.warning("Task %s timed out: %s", task.task_id, error)
            return ProcessOutcome(status=ResultStatus.ERROR, error_code=TASK_TIMEOUT, detail=str(error))
        except Exception as error:  # noqa: BLE001
            logger.warning("Processor raised for %s: %s", task.task_id, error)
            return ProcessOutcome(
                status=ResultStatus.ERROR,
                error_code=PROCESSOR_EXCEPTION,
                detail=f"{type(error).__name__}: {error}",
            )

    def _invoke_processor(self, task: Task) -> ProcessOutcome:
        proxy_url = None if task.proxy is None else task.proxy.url
        timeout = self.settings.worker.task_timeout_seconds
        future = self._executor.submit(self.processor.process, task.credential, proxy_url)
        try:
            outcome = future.result(timeout=timeout)
        except FutureTimeoutError as error:
            future.cancel()
            # The stuck call keeps its thread; later tasks get a fresh one.
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = self._new_executor()
            raise TaskTimeoutError(f"processor exceeded {timeout:.0f}s") from error
        if not isinstance(outcome, ProcessOutcome):
            raise TypeError(f"processor returned {type(outcome).__name__}, expected ProcessOutcome")
        return outcome

    def _complete(self, task: Task, outcome: ProcessOutcome) -> None:
        aux_data = self._enrich(task, outcome) if outcome.status == ResultStatus.VALID else None
        record = ResultRecord(
            status=outcome.status,
            identity=task.credential.identity,
            username=task.credential.masked,
            batch_id=task.batch_id,
            task_id=task.task_id,
            worker_id=self.worker_id,
            checked_at=self._broker.now(),
            aux_data=aux_data,
        )
        self.queue.store_result(record)
        self.ledger.record_outcome(
            task.batch_id,
            task.task_id,
            outcome.status,
            valid_item=task.credential.masked if outcome.status == ResultStatus.VALID else None,
        )
        if task.proxy is not None:
            self.proxy_pool.record_proxy_result(task.proxy.proxy_id, success=True)
        self.tasks_completed += 1
        self._publish_result(task, record)
        logger.info("Task %s -> %s", task.task_id, outcome.status.value)

    def _fail(self, task: Task, outcome: ProcessOutcome, summary: WorkerRunSummary) -> None:
        error_code = outcome.error_code or "UNKNOWN_ERROR"
        classification = classify_task_failure(error_code, outcome.detail)
        if task.proxy is not None:
            self.proxy_pool.record_proxy_result(task.proxy.proxy_id, success=False)
        logger.info(
            "Task %s failed with %s (%s)",
            task.task_id,
            error_code,
            classification.matched_rule,
        )
        if classification.failure_class == FailureClass.NON_RETRYABLE:
            self.queue.mark_task_as_error(task, error_code, worker_id=self.worker_id)
            summary.failed = 1
            return
        if self.queue.retry_task(task, error_code):
            summary.retried = 1
        else:
            summary.failed = 1

    def _enrich(self, task: Task, outcome: ProcessOutcome) -> dict[str, Any] | None:
        if self.enricher is None or outcome.session is None:
            return None
        try:
            return self.enricher.enrich(outcome.session)
        except Exception as error:  # noqa: BLE001
            logger.warning("Enrichment for %s failed: %s", task.task_id, error)
            return None

    def _publish_result(self, task: Task, record: ResultRecord) -> None:
        channel = (
            keys.FORWARD_EVENTS if record.status == ResultStatus.VALID else keys.UPDATE_EVENTS
        )
        event = ForwardEvent(
            identity=record.identity,
            username=record.username,
            status=record.status,
            batch_id=task.batch_id,
            task_id=task.task_id,
            checked_at=record.checked_at,
            aux_data=record.aux_data,
        )
        try:
            self._broker.publish(channel, event.to_payload())
        except BrokerUnavailableError:
            raise
        except BrokerError as error:
            logger.warning("Publishing result of %s failed: %s", task.task_id, error)

    def _release_lease(self, task: Task) -> None:
        # Shadow first: a shadow without its lease reads as a zombie.
        self._broker.delete(keys.lease_shadow_key(task.batch_id, task.task_id))
        self._broker.compare_and_delete(keys.lease_key(task.batch_id, task.task_id), self.worker_id)

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=1, thread_name_prefix="task")

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))
