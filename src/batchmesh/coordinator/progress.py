"""Durable per-batch progress counters and throttled outward notification."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from contextlib import AbstractContextManager, nullcontext
from dataclasses import dataclass

from batchmesh.broker import keys
from batchmesh.broker.base import Broker
from batchmesh.coordinator.messages import format_aborted, format_progress, format_summary
from batchmesh.coordinator.notifier import NotificationChannel
from batchmesh.errors import LockNotAcquiredError, MessageNotFoundError, MessageNotModifiedError
from batchmesh.models import (
    SKIPPABLE_STATUSES,
    NotifyTarget,
    ProgressRecord,
    ProgressSnapshot,
    ResultStatus,
)

logger = logging.getLogger(__name__)

_FINAL_EDIT_LOCK_ATTEMPTS = 5
_FINAL_EDIT_LOCK_WAIT_SECONDS = 0.2


class ProgressLedger:
    """Broker-side progress state written by workers and read by the tracker."""

    def __init__(self, broker: Broker, *, ttl_seconds: int = 7 * 24 * 3_600) -> None:
        self._broker = broker
        self.ttl_seconds = ttl_seconds

    def init_batch(self, record: ProgressRecord) -> None:
        ttl = self.ttl_seconds
        self._broker.set(keys.progress_key(record.batch_id), record.to_json(), ttl=ttl)
        self._broker.set(keys.progress_count_key(record.batch_id), "0", ttl=ttl)
        for status in SKIPPABLE_STATUSES:
            self._broker.hincrby(
                keys.progress_counts_key(record.batch_id),
                status.value,
                0,
                ttl=ttl,
            )

    def get_record(self, batch_id: str) -> ProgressRecord | None:
        raw = self._broker.get(keys.progress_key(batch_id))
        if raw is None:
            return None
        try:
            return ProgressRecord.from_json(raw)
        except (ValueError, KeyError) as error:
            logger.warning("Unreadable progress record for %s: %s", batch_id, error)
            return None

    def save_record(self, record: ProgressRecord) -> None:
        self._broker.set(keys.progress_key(record.batch_id), record.to_json(), ttl=self.ttl_seconds)

    def record_outcome(
        self,
        batch_id: str,
        task_id: str,
        status: ResultStatus,
        *,
        valid_item: str | None = None,
    ) -> bool:
        """Count one terminal task outcome; repeated calls for the same task are no-ops."""

        if not self._broker.exists(keys.progress_key(batch_id)):
            logger.debug("No progress record for %s; outcome of %s not counted", batch_id, task_id)
            return False
        if not self._broker.set_if_absent(
            keys.progress_done_key(batch_id, task_id),
            status.value,
            ttl=self.ttl_seconds,
        ):
            return False
        self._broker.incr(keys.progress_count_key(batch_id), ttl=self.ttl_seconds)
        self._broker.hincrby(
            keys.progress_counts_key(batch_id),
            status.value,
            1,
            ttl=self.ttl_seconds,
        )
        if status == ResultStatus.VALID and valid_item:
            self._broker.rpush(keys.progress_valid_key(batch_id), valid_item, ttl=self.ttl_seconds)
        return True

    def get_completed(self, batch_id: str) -> int:
        raw = self._broker.get(keys.progress_count_key(batch_id))
        return int(raw) if raw else 0

    def get_counts(self, batch_id: str) -> dict[str, int]:
        stored = self._broker.hgetall(keys.progress_counts_key(batch_id))
        return {status.value: int(stored.get(status.value, 0)) for status in SKIPPABLE_STATUSES}

    def get_valid_items(self, batch_id: str) -> list[str]:
        return self._broker.lrange(keys.progress_valid_key(batch_id))

    def snapshot(self, batch_id: str) -> ProgressSnapshot | None:
        record = self.get_record(batch_id)
        if record is None:
            return None
        return ProgressSnapshot(
            batch_id=batch_id,
            total=record.total,
            completed=min(self.get_completed(batch_id), record.total),
            counts=self.get_counts(batch_id),
            aborted=record.aborted,
        )

    def mark_aborted(self, batch_id: str) -> bool:
        record = self.get_record(batch_id)
        if record is None:
            return False
        record.aborted = True
        self.save_record(record)
        return True

    def claim_finalization(self, batch_id: str) -> bool:
        return self._broker.set_if_absent(
            keys.progress_finalized_key(batch_id),
            "1",
            ttl=self.ttl_seconds,
        )

    def delete(self, batch_id: str) -> None:
        done_keys = self._broker.scan(keys.progress_done_pattern(batch_id))
        self._broker.delete(
            keys.progress_key(batch_id),
            keys.progress_count_key(batch_id),
            keys.progress_counts_key(batch_id),
            keys.progress_valid_key(batch_id),
            *done_keys,
        )

    def list_batch_ids(self) -> list[str]:
        batch_ids: list[str] = []
        for key in self._broker.scan(keys.PROGRESS_PATTERN):
            batch_id = keys.batch_id_from_progress_key(key)
            if batch_id is not None:
                batch_ids.append(batch_id)
        return batch_ids


@dataclass(slots=True)
class _TrackedBatch:
    last_edit_at: float | None = None
    last_completed: int = -1


class ProgressTracker:
    """Throttled progress edits plus exactly-once summary and abort messages.

    One poller thread serves every active batch, so progress keeps moving even
    when no worker heartbeat arrives to trigger an update.
    """

    def __init__(
        self,
        *,
        ledger: ProgressLedger,
        channel: NotificationChannel | None = None,
        is_cancelled: Callable[[str], bool] | None = None,
        edit_lock: Callable[[str], AbstractContextManager[object]] | None = None,
        throttle_seconds: float = 3.0,
        poll_interval_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.ledger = ledger
        self.channel = channel
        self.throttle_seconds = throttle_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._is_cancelled = is_cancelled or (lambda _batch_id: False)
        self._edit_lock = edit_lock
        self._clock = clock
        self._wall_clock = wall_clock
        self._sleep = sleep
        self._active: dict[str, _TrackedBatch] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # -- lifecycle ------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._poll_loop, daemon=True, name="progress-poller")
        self._thread.start()
        logger.info("Progress poller started")

    def stop(self, *, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Progress poller stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _poll_loop(self) -> None:
        while not self._stop.wait(timeout=self.poll_interval_seconds):
            self.poll_once()

    # -- tracking -------------------------------------------------------------

    def init_batch(
        self,
        batch_id: str,
        total: int,
        target: NotifyTarget | None = None,
        batch_type: str = "default",
    ) -> ProgressRecord:
        """Persist the progress record and start tracking the batch."""

        record = ProgressRecord(
            batch_id=batch_id,
            total=total,
            start_time=self._wall_clock(),
            target=target,
            batch_type=batch_type,
        )
        if self.channel is not None and target is not None:
            snapshot = ProgressSnapshot(
                batch_id=batch_id,
                total=total,
                completed=0,
                counts={status.value: 0 for status in SKIPPABLE_STATUSES},
            )
            try:
                record.message_id = self.channel.send(
                    target,
                    format_progress(record, snapshot, elapsed=0.0),
                )
            except Exception as error:  # noqa: BLE001
                logger.warning("Initial progress message for %s failed: %s", batch_id, error)
        self.ledger.init_batch(record)
        self.track(batch_id)
        self.start()
        if total == 0:
            self.send_summary(batch_id)
        return record

    def track(self, batch_id: str) -> None:
        with self._lock:
            self._active.setdefault(batch_id, _TrackedBatch())

    def untrack(self, batch_id: str) -> None:
        with self._lock:
            self._active.pop(batch_id, None)

    def is_tracking(self, batch_id: str) -> bool:
        with self._lock:
            return batch_id in self._active

    def active_batch_ids(self) -> list[str]:
        with self._lock:
            return list(self._active)

    def poll_once(self) -> None:
        for batch_id in self.active_batch_ids():
            self.handle_progress_update(batch_id)

    def handle_progress_update(self, batch_id: str) -> None:
        """Refresh from durable state; finalize when complete or aborted. Never raises."""

        try:
            snapshot = self.ledger.snapshot(batch_id)
            if snapshot is None:
                self.untrack(batch_id)
                return
            if snapshot.aborted:
                self.send_aborted_message(batch_id)
                return
            if snapshot.is_complete:
                self.send_summary(batch_id)
                return
            if self._is_cancelled(batch_id):
                return
            self._maybe_edit_progress(batch_id, snapshot)
        except Exception:
            logger.exception("Progress update for %s failed", batch_id)

    def abort_batch(self, batch_id: str) -> bool:
        aborted = self.ledger.mark_aborted(batch_id)
        if aborted:
            self.track(batch_id)
        return aborted

    # -- outward messages -----------------------------------------------------

    def send_summary(self, batch_id: str) -> bool:
        """Emit the final counts once; cleanup runs even if delivery fails."""

        return self._finalize(batch_id, aborted=False)

    def send_aborted_message(self, batch_id: str) -> bool:
        return self._finalize(batch_id, aborted=True)

    def _finalize(self, batch_id: str, *, aborted: bool) -> bool:
        if not self.ledger.claim_finalization(batch_id):
            self.untrack(batch_id)
            return False
        try:
            record = self.ledger.get_record(batch_id)
            snapshot = self.ledger.snapshot(batch_id)
            if record is None or snapshot is None:
                return True
            elapsed = max(0.0, self._wall_clock() - record.start_time)
            if aborted:
                text = format_aborted(record, snapshot, elapsed=elapsed)
            else:
                text = format_summary(
                    record,
                    snapshot,
                    elapsed=elapsed,
                    qualifying=len(self.ledger.get_valid_items(batch_id)),
                )
            logger.info(
                "Batch %s %s: %s",
                batch_id,
                "aborted" if aborted else "complete",
                snapshot.counts,
            )
            self._deliver(record, text)
        except Exception as error:  # noqa: BLE001
            logger.warning("Final message for batch %s failed: %s", batch_id, error)
        finally:
            self._cleanup(batch_id)
        return True

    def _deliver(self, record: ProgressRecord, text: str) -> None:
        channel, target, message_id = self.channel, record.target, record.message_id
        if channel is None or target is None:
            return
        if message_id is None:
            channel.send(target, text)
            return
        lock = self._edit_lock or (lambda _name: nullcontext())
        for _attempt in range(_FINAL_EDIT_LOCK_ATTEMPTS):
            try:
                with lock(_edit_lock_name(record)):
                    self._edit_or_resend(channel, target, message_id, text)
                return
            except LockNotAcquiredError:
                self._sleep(_FINAL_EDIT_LOCK_WAIT_SECONDS)
        logger.warning("Edit lock for batch %s stayed busy; editing without it", record.batch_id)
        self._edit_or_resend(channel, target, message_id, text)

    def _edit_or_resend(
        self,
        channel: NotificationChannel,
        target: NotifyTarget,
        message_id: str,
        text: str,
    ) -> None:
        try:
            channel.edit(target, message_id, text)
        except MessageNotModifiedError:
            return
        except MessageNotFoundError:
            # Progress message was sent from another process or removed.
            channel.send(target, text)

    def _cleanup(self, batch_id: str) -> None:
        try:
            self.ledger.delete(batch_id)
        except Exception:
            logger.exception("Progress cleanup for %s failed", batch_id)
        finally:
            self.untrack(batch_id)

    def _maybe_edit_progress(self, batch_id: str, snapshot: ProgressSnapshot) -> None:
        with self._lock:
            tracked = self._active.get(batch_id)
            if tracked is None:
                return
            now = self._clock()
            if tracked.last_edit_at is not None and now - tracked.last_edit_at < self.throttle_seconds:
                return
            if tracked.last_completed == snapshot.completed:
                return
            tracked.last_edit_at = now
            tracked.last_completed = snapshot.completed

        record = self.ledger.get_record(batch_id)
        if self.channel is None or record is None or record.target is None:
            return
        if record.message_id is None:
            return
        text = format_progress(
            record,
            snapshot,
            elapsed=max(0.0, self._wall_clock() - record.start_time),
        )
        lock = self._edit_lock or (lambda _name: nullcontext())
        try:
            with lock(_edit_lock_name(record)):
                self.channel.edit(record.target, record.message_id, text)
        except LockNotAcquiredError:
            logger.debug("Progress edit for %s skipped; lock busy", batch_id)
        except MessageNotModifiedError:
            return
        except Exception as error:  # noqa: BLE001
            logger.warning("Progress edit for %s failed: %s", batch_id, error)


def _edit_lock_name(record: ProgressRecord) -> str:
    chat_id = None if record.target is None else record.target.chat_id
    return f"edit:{chat_id}:{record.message_id}"
