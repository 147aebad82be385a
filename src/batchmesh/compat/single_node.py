"""In-process job queue used when no shared broker is configured.

It keeps the distributed path's contract (``submit_batch``, ``cancel_batch``,
``get_system_status`` and their return types) so callers do not need to know
which topology they talk to.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Protocol
from uuid import uuid4

from batchmesh.broker import keys, open_broker
from batchmesh.compat.processed_store import ProcessedStore
from batchmesh.config import Settings
from batchmesh.coordinator.coordinator import Coordinator
from batchmesh.coordinator.forwarder import ForwardPolicy, has_aux_data
from batchmesh.coordinator.messages import format_aborted, format_forward, format_summary
from batchmesh.coordinator.metrics import LocalMetrics
from batchmesh.coordinator.notifier import NotificationChannel, RetryingChannel
from batchmesh.coordinator.proxy_pool import ProxyPoolManager
from batchmesh.models import (
    SKIPPABLE_STATUSES,
    BatchOptions,
    CachedCredential,
    CancelResult,
    Credential,
    EnqueueResult,
    NotifyTarget,
    ProgressRecord,
    ProgressSnapshot,
    QueueStats,
    ResultStatus,
    SystemStatus,
    Task,
    WorkerHealth,
)
from batchmesh.worker.failure_classifier import FailureClass, classify_task_failure
from batchmesh.worker.processor import Enricher, ProcessOutcome, TaskProcessor

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressSnapshot], None]


class BatchGateway(Protocol):
    """Topology-agnostic batch surface shared by both modes."""

    def submit_batch(
        self,
        batch_id: str,
        credentials: Sequence[Credential],
        options: BatchOptions | None = None,
    ) -> EnqueueResult: ...

    def cancel_batch(self, batch_id: str) -> CancelResult: ...

    def get_system_status(self) -> SystemStatus: ...


@dataclass(slots=True)
class _LocalBatch:
    record: ProgressRecord
    counts: dict[str, int] = field(
        default_factory=lambda: {status.value: 0 for status in SKIPPABLE_STATUSES},
    )
    done: set[str] = field(default_factory=set)
    valid_items: list[str] = field(default_factory=list)
    last_emit_at: float | None = None

    @property
    def completed(self) -> int:
        return len(self.done)

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            batch_id=self.record.batch_id,
            total=self.record.total,
            completed=min(self.completed, self.record.total),
            counts=dict(self.counts),
            aborted=self.record.aborted,
        )


class SingleNodeJobQueue:
    """FIFO queue plus a fixed pool of local worker threads."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        processor: TaskProcessor,
        settings: Settings | None = None,
        store: ProcessedStore | None = None,
        channel: NotificationChannel | None = None,
        enricher: Enricher | None = None,
        on_progress: ProgressCallback | None = None,
        forward_policy: ForwardPolicy = has_aux_data,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or Settings()
        self.processor = processor
        self.enricher = enricher
        self.channel = (
            None
            if channel is None
            else RetryingChannel(channel, self.settings.notification, sleep=sleep)
        )
        self.metrics = LocalMetrics(self.settings.metrics, clock=clock)
        self.forward_policy = forward_policy
        self.on_progress = on_progress
        self._clock = clock
        self.store = store or ProcessedStore(
            self.settings.single_node.store_path,
            ttl_seconds=self.settings.single_node.processed_ttl_seconds,
            error_ttl_seconds=self.settings.queue.error_exclusion_seconds,
            clock=clock,
        )
        self.proxy_pool = ProxyPoolManager(broker=None, proxies=self.settings.proxy.proxies)
        self.instance_id = f"single-node-{uuid4().hex[:8]}"
        self.forward_target = (
            NotifyTarget(chat_id=self.settings.forward.channel_id)
            if self.settings.forward.channel_id
            else None
        )

        self._main: deque[Task] = deque()
        self._retry: deque[Task] = deque()
        self._batches: dict[str, _LocalBatch] = {}
        self._cancelled: set[str] = set()
        self._forwarded: set[str] = set()
        self._in_flight = 0
        self._cond = threading.Condition()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._started_at: float | None = None
        self._hydrated = False

    # -- batch surface --------------------------------------------------------

    def enqueue_batch(
        self,
        batch_id: str,
        credentials: Sequence[Credential],
        options: BatchOptions | None = None,
    ) -> EnqueueResult:
        options = options or BatchOptions()
        self._ensure_hydrated()
        pending: list[tuple[int, Credential]] = []
        seen: set[str] = set()
        skipped: list[CachedCredential] = []
        hits = 0
        for index, credential in enumerate(credentials):
            identity = credential.identity
            cached_status = self.store.get(identity)
            if cached_status is not None:
                hits += 1
            if identity in seen or cached_status is not None:
                skipped.append(CachedCredential(credential, cached_status))
                continue
            seen.add(identity)
            pending.append((index, credential))
        self.metrics.record_cache_lookup(hits=hits, lookups=len(credentials))

        now = self._clock()
        batch = _LocalBatch(
            record=ProgressRecord(
                batch_id=batch_id,
                total=len(pending),
                start_time=now,
                target=options.target,
                batch_type=options.batch_type,
            ),
        )
        proxies = self.proxy_pool.bulk_assign(len(pending))
        tasks = [
            Task(
                task_id=keys.task_id_for(batch_id, index),
                batch_id=batch_id,
                credential=credential,
                proxy=proxy,
                created_at=now,
                batch_type=options.batch_type,
            )
            for (index, credential), proxy in zip(pending, proxies, strict=True)
        ]
        with self._cond:
            self._batches[batch_id] = batch
            self._main.extend(tasks)
            self._cond.notify_all()
        logger.info(
            "Batch %s enqueued locally: queued=%d cached=%d",
            batch_id,
            len(tasks),
            len(skipped),
        )
        if not tasks:
            self._finalize(batch_id, aborted=False)
        return EnqueueResult(queued=len(tasks), cached=len(skipped), cached_credentials=tuple(skipped))

    def submit_batch(
        self,
        batch_id: str,
        credentials: Sequence[Credential],
        options: BatchOptions | None = None,
    ) -> EnqueueResult:
        return self.enqueue_batch(batch_id, credentials, options)

    def cancel_batch(self, batch_id: str) -> CancelResult:
        with self._cond:
            self._cancelled.add(batch_id)
            before = len(self._main) + len(self._retry)
            self._main = deque(task for task in self._main if task.batch_id != batch_id)
            self._retry = deque(task for task in self._retry if task.batch_id != batch_id)
            drained = before - len(self._main) - len(self._retry)
            batch = self._batches.get(batch_id)
            if batch is not None:
                batch.record.aborted = True
            self._cond.notify_all()
        logger.info("Batch %s cancelled locally; drained %d tasks", batch_id, drained)
        if batch is not None:
            self._finalize(batch_id, aborted=True)
        return CancelResult(drained=drained)

    def get_queue_stats(self) -> QueueStats:
        with self._cond:
            by_batch: dict[str, int] = {}
            for task in (*self._main, *self._retry):
                by_batch[task.batch_id] = by_batch.get(task.batch_id, 0) + 1
            return QueueStats(main_queue=len(self._main), retry_queue=len(self._retry), by_batch=by_batch)

    def get_system_status(self) -> SystemStatus:
        running = self._started_at is not None and not self._stop.is_set()
        workers = [
            WorkerHealth(worker_id=thread.name, last_seen_seconds_ago=0.0, alive=thread.is_alive())
            for thread in self._threads
        ]
        with self._cond:
            active = len(self._batches)
        queue = self.get_queue_stats()
        return SystemStatus(
            mode="single-node",
            instance_id=self.instance_id,
            uptime_seconds=0.0 if self._started_at is None else time.monotonic() - self._started_at,
            running=running,
            queue=queue,
            workers=workers,
            proxies=self.proxy_pool.get_proxy_stats(),
            active_batches=active,
            metrics=self.metrics.snapshot(
                queue_depth=queue.main_queue + queue.retry_queue,
                active_workers=sum(1 for worker in workers if worker.alive),
            ),
        )

    def progress(self, batch_id: str) -> ProgressSnapshot | None:
        with self._cond:
            batch = self._batches.get(batch_id)
            return None if batch is None else batch.snapshot()

    # -- processing -----------------------------------------------------------

    def start_processing(self, concurrency: int | None = None) -> None:
        if self._threads:
            return
        self._ensure_hydrated()
        self._stop.clear()
        self._started_at = time.monotonic()
        count = concurrency or self.settings.single_node.concurrency
        for index in range(count):
            thread = threading.Thread(
                target=self._worker_loop,
                daemon=True,
                name=f"local-worker-{index + 1}",
            )
            thread.start()
            self._threads.append(thread)
        logger.info("Single-node processing started with %d threads", count)

    def stop(self, *, timeout: float = 5.0) -> None:
        self._stop.set()
        with self._cond:
            self._cond.notify_all()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("Single-node processing stopped")

    def wait_until_idle(self, timeout: float | None = None) -> bool:
        """Block until both queues are empty and nothing is in flight."""

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._main or self._retry or self._in_flight:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(timeout=remaining)
        return True

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            task = self._next_task()
            if task is None:
                continue
            try:
                self._process(task)
            except Exception:
                logger.exception("Local task %s failed", task.task_id)
            finally:
                with self._cond:
                    self._in_flight -= 1
                    self._cond.notify_all()

    def _next_task(self) -> Task | None:
        with self._cond:
            while not self._main and not self._retry:
                if self._stop.is_set():
                    return None
                self._cond.wait(timeout=0.2)
            task = self._retry.popleft() if self._retry else self._main.popleft()
            self._in_flight += 1
            return task

    def _process(self, task: Task) -> None:
        if task.batch_id in self._cancelled:
            return
        proxy_url = None if task.proxy is None else task.proxy.url
        started = time.monotonic()
        try:
            outcome = self.processor.process(task.credential, proxy_url)
        except Exception as error:  # noqa: BLE001
            outcome = ProcessOutcome(
                status=ResultStatus.ERROR,
                error_code="PROCESSOR_EXCEPTION",
                detail=f"{type(error).__name__}: {error}",
            )
        self.metrics.record_task(outcome.status, time.monotonic() - started, outcome.error_code)
        if outcome.status != ResultStatus.ERROR:
            aux_data = self._enrich(outcome) if outcome.status == ResultStatus.VALID else None
            self.store.mark(task.credential.identity, outcome.status)
            self._record(task, outcome.status)
            if outcome.status == ResultStatus.VALID:
                self._forward(task, aux_data)
            return

        error_code = outcome.error_code or "UNKNOWN_ERROR"
        classification = classify_task_failure(error_code, outcome.detail)
        retryable = classification.failure_class != FailureClass.NON_RETRYABLE
        if retryable and task.retry_count < self.settings.queue.max_retries:
            with self._cond:
                self._retry.append(task.for_retry(error_code=error_code, now=self._clock()))
                self._cond.notify_all()
            return
        self.store.mark(task.credential.identity, ResultStatus.ERROR)
        self._record(task, ResultStatus.ERROR)
        logger.warning("Local task %s failed terminally (%s)", task.task_id, error_code)

    def _record(self, task: Task, status: ResultStatus) -> None:
        with self._cond:
            batch = self._batches.get(task.batch_id)
            if batch is None or task.task_id in batch.done:
                return
            batch.done.add(task.task_id)
            batch.counts[status.value] += 1
            if status == ResultStatus.VALID:
                batch.valid_items.append(task.credential.masked)
            complete = batch.completed >= batch.record.total
        if complete:
            self._finalize(task.batch_id, aborted=False)
        else:
            self._emit_progress(task.batch_id)

    def _emit_progress(self, batch_id: str) -> None:
        now = self._clock()
        with self._cond:
            batch = self._batches.get(batch_id)
            if batch is None:
                return
            throttle = self.settings.single_node.progress_throttle_seconds
            if batch.last_emit_at is not None and now - batch.last_emit_at < throttle:
                return
            batch.last_emit_at = now
            # Emitted under the lock: snapshots arrive in completion order.
            self._notify_progress(batch.snapshot())

    def _finalize(self, batch_id: str, *, aborted: bool) -> None:
        with self._cond:
            batch = self._batches.pop(batch_id, None)
            if batch is None:
                return
            snapshot = batch.snapshot()
            self._notify_progress(snapshot)
        elapsed = max(0.0, self._clock() - batch.record.start_time)
        if aborted:
            text = format_aborted(batch.record, snapshot, elapsed=elapsed)
        else:
            text = format_summary(batch.record, snapshot, elapsed=elapsed, qualifying=len(batch.valid_items))
        logger.info("Batch %s %s: %s", batch_id, "aborted" if aborted else "complete", snapshot.counts)
        if self.channel is None or batch.record.target is None:
            return
        try:
            self.channel.send(batch.record.target, text)
        except Exception as error:  # noqa: BLE001
            logger.warning("Final message for batch %s failed: %s", batch_id, error)

    def _notify_progress(self, snapshot: ProgressSnapshot) -> None:
        if self.on_progress is None:
            return
        try:
            self.on_progress(snapshot)
        except Exception:
            logger.exception("Progress callback for %s failed", snapshot.batch_id)

    def _enrich(self, outcome: ProcessOutcome) -> dict | None:
        if self.enricher is None or outcome.session is None:
            return None
        try:
            return self.enricher.enrich(outcome.session)
        except Exception as error:  # noqa: BLE001
            logger.warning("Enrichment failed: %s", error)
            return None

    def _forward(self, task: Task, aux_data: dict | None) -> None:
        if self.channel is None or self.forward_target is None or not self.forward_policy(aux_data):
            return
        identity = task.credential.identity
        with self._cond:
            if identity in self._forwarded:
                return
            self._forwarded.add(identity)
        try:
            self.channel.send(
                self.forward_target,
                format_forward(
                    tracking_code=keys.tracking_code(identity),
                    username=task.credential.masked,
                    batch_id=task.batch_id,
                    aux_data=aux_data,
                ),
            )
        except Exception as error:  # noqa: BLE001
            with self._cond:
                self._forwarded.discard(identity)
            logger.warning("Forward for %s failed: %s", task.task_id, error)

    def _ensure_hydrated(self) -> None:
        if self._hydrated:
            return
        self.store.hydrate()
        self._hydrated = True


def detect_single_node(settings: Settings) -> bool:
    """True when no shared broker is configured."""

    return settings.single_node_mode


def build_gateway(
    settings: Settings,
    *,
    processor: TaskProcessor,
    channel: NotificationChannel | None = None,
    enricher: Enricher | None = None,
    on_progress: ProgressCallback | None = None,
) -> Coordinator | SingleNodeJobQueue:
    """Coordinator over the shared broker, or the in-process queue without one."""

    if detect_single_node(settings):
        logger.info("No broker configured; running in single-node mode")
        return SingleNodeJobQueue(
            processor=processor,
            settings=settings,
            channel=channel,
            enricher=enricher,
            on_progress=on_progress,
        )
    broker = open_broker(settings.broker)
    return Coordinator(broker=broker, settings=settings, channel=channel)
