"""Batch splitting, result-cache dedup, retry queue and cancellation."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Sequence
from typing import TypeVar

from batchmesh.broker import keys
from batchmesh.broker.base import Broker
from batchmesh.config import QueueSettings
from batchmesh.coordinator.metrics import MetricsRecorder
from batchmesh.coordinator.progress import ProgressLedger
from batchmesh.coordinator.proxy_pool import ProxyPoolManager
from batchmesh.errors import BrokerError, BrokerUnavailableError
from batchmesh.models import (
    SKIPPABLE_STATUSES,
    BatchOptions,
    CachedCredential,
    CancelResult,
    Credential,
    EnqueueResult,
    ProgressRecord,
    QueueStats,
    ResultRecord,
    ResultStatus,
    Task,
)

logger = logging.getLogger(__name__)

ProgressInitializer = Callable[[str, int, BatchOptions], None]

T = TypeVar("T")


class JobQueueManager:
    """Owns the main and retry queues and the result cache."""

    def __init__(
        self,
        *,
        broker: Broker,
        ledger: ProgressLedger,
        proxy_pool: ProxyPoolManager,
        settings: QueueSettings | None = None,
        progress_initializer: ProgressInitializer | None = None,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._broker = broker
        self.ledger = ledger
        self.proxy_pool = proxy_pool
        self.settings = settings or QueueSettings()
        self._progress_initializer = progress_initializer
        self.metrics = metrics

    def enqueue_batch(
        self,
        batch_id: str,
        credentials: Sequence[Credential],
        options: BatchOptions | None = None,
    ) -> EnqueueResult:
        """Queue every credential without a cached outcome; returns queued/cached counts."""

        options = options or BatchOptions()
        cached_statuses = self.find_cached_statuses(credentials)
        if self.metrics is not None:
            hits = sum(1 for credential in credentials if credential.identity in cached_statuses)
            self.metrics.record_cache_lookup(hits=hits, lookups=len(credentials))

        pending: list[tuple[int, Credential]] = []
        seen: set[str] = set()
        skipped: list[CachedCredential] = []
        for index, credential in enumerate(credentials):
            identity = credential.identity
            if identity in cached_statuses or identity in seen:
                skipped.append(CachedCredential(credential, cached_statuses.get(identity)))
                continue
            seen.add(identity)
            pending.append((index, credential))

        # Progress must exist before the first task can complete.
        self._init_progress(batch_id, len(pending), options)

        now = self._broker.now()
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
        for chunk in _chunks(tasks, self.settings.push_chunk_size):
            self._broker.rpush(keys.TASK_QUEUE, *(task.to_json() for task in chunk))

        logger.info(
            "Batch %s enqueued: queued=%d cached=%d",
            batch_id,
            len(tasks),
            len(skipped),
        )
        return EnqueueResult(queued=len(tasks), cached=len(skipped), cached_credentials=tuple(skipped))

    def find_cached(self, credentials: Sequence[Credential]) -> set[str]:
        """Identities with any stored outcome. Lookup failures count as not cached."""

        return set(self.find_cached_statuses(credentials))

    def find_cached_statuses(self, credentials: Sequence[Credential]) -> dict[str, ResultStatus]:
        identities = list(dict.fromkeys(credential.identity for credential in credentials))
        cached: dict[str, ResultStatus] = {}
        for chunk in _chunks(identities, self.settings.lookup_chunk_size):
            lookup_keys = [
                keys.result_key(status.value, identity)
                for identity in chunk
                for status in SKIPPABLE_STATUSES
            ]
            try:
                values = self._broker.mget(lookup_keys)
            except BrokerUnavailableError:
                raise
            except BrokerError as error:
                logger.warning("Result cache lookup failed, treating chunk as uncached: %s", error)
                continue
            for position, value in enumerate(values):
                if value is not None:
                    identity = chunk[position // len(SKIPPABLE_STATUSES)]
                    cached.setdefault(identity, SKIPPABLE_STATUSES[position % len(SKIPPABLE_STATUSES)])
        return cached

    def get_cached_status(self, credential: Credential) -> ResultStatus | None:
        values = self._broker.mget(
            [keys.result_key(status.value, credential.identity) for status in SKIPPABLE_STATUSES],
        )
        for status, value in zip(SKIPPABLE_STATUSES, values, strict=True):
            if value is not None:
                return status
        return None

    def store_result(self, record: ResultRecord) -> None:
        ttl = (
            self.settings.error_exclusion_seconds
            if record.status == ResultStatus.ERROR
            else self.settings.result_ttl_seconds
        )
        self._broker.set(keys.result_key(record.status.value, record.identity), record.to_json(), ttl=ttl)

    def retry_task(self, task: Task, error_code: str) -> bool:
        """Requeue with retry_count + 1, or record a terminal ERROR past the limit."""

        if task.retry_count < self.settings.max_retries:
            retried = task.for_retry(error_code=error_code, now=self._broker.now())
            self._broker.rpush(keys.RETRY_QUEUE, retried.to_json())
            logger.info(
                "Task %s requeued (retry %d/%d, %s)",
                task.task_id,
                retried.retry_count,
                self.settings.max_retries,
                error_code,
            )
            return True
        self.mark_task_as_error(task, error_code)
        return False

    def mark_task_as_error(self, task: Task, error_code: str, *, worker_id: str = "system") -> None:
        record = ResultRecord(
            status=ResultStatus.ERROR,
            identity=task.credential.identity,
            username=task.credential.masked,
            batch_id=task.batch_id,
            task_id=task.task_id,
            worker_id=worker_id,
            checked_at=self._broker.now(),
            error_code=error_code,
        )
        self.store_result(record)
        self.ledger.record_outcome(task.batch_id, task.task_id, ResultStatus.ERROR)
        logger.warning(
            "Task %s failed terminally after %d retries (%s)",
            task.task_id,
            task.retry_count,
            error_code,
        )

    def cancel_batch(self, batch_id: str) -> CancelResult:
        """Flag the batch cancelled and drain its tasks from both queues."""

        self._broker.set(
            keys.batch_cancelled_key(batch_id),
            "1",
            ttl=self.settings.cancel_ttl_seconds,
        )

        def keep(raw: str) -> bool:
            return _batch_of(raw) != batch_id

        drained = self._broker.filter_list(keys.TASK_QUEUE, keep)
        drained += self._broker.filter_list(keys.RETRY_QUEUE, keep)
        logger.info("Batch %s cancelled; drained %d queued tasks", batch_id, drained)
        return CancelResult(drained=drained)

    def is_batch_cancelled(self, batch_id: str) -> bool:
        try:
            return self._broker.exists(keys.batch_cancelled_key(batch_id))
        except BrokerError as error:
            logger.debug("Cancel flag check for %s failed: %s", batch_id, error)
            return False

    def get_queue_stats(self) -> QueueStats:
        main_items = self._broker.lrange(keys.TASK_QUEUE)
        retry_items = self._broker.lrange(keys.RETRY_QUEUE)
        by_batch: dict[str, int] = {}
        for raw in (*main_items, *retry_items):
            batch_id = _batch_of(raw)
            if batch_id is not None:
                by_batch[batch_id] = by_batch.get(batch_id, 0) + 1
        return QueueStats(main_queue=len(main_items), retry_queue=len(retry_items), by_batch=by_batch)

    def _init_progress(self, batch_id: str, total: int, options: BatchOptions) -> None:
        if self._progress_initializer is not None:
            self._progress_initializer(batch_id, total, options)
            return
        self.ledger.init_batch(
            ProgressRecord(
                batch_id=batch_id,
                total=total,
                start_time=self._broker.now(),
                target=options.target,
                batch_type=options.batch_type,
            ),
        )


def _batch_of(raw: str) -> str | None:
    try:
        return Task.from_json(raw).batch_id
    except ValueError:
        return None


def _chunks(values: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    step = max(1, size)
    for start in range(0, len(values), step):
        yield values[start : start + step]
