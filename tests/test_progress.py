from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

import allure

from batchmesh.coordinator import ProgressLedger, ProgressTracker
from batchmesh.errors import LockNotAcquiredError, NotificationError
from batchmesh.models import NotifyTarget, ResultStatus

pytestmark = [
    allure.epic("Job Distribution"),
    allure.feature("Progress Tracking"),
]

TARGET = NotifyTarget(chat_id="chat-1")


def _tracker(
    broker,
    channel,
    clock,
    *,
    throttle_seconds: float = 3.0,
    poll_interval_seconds: float = 3_600.0,
    edit_lock=None,
    sleep=None,
) -> ProgressTracker:
    return ProgressTracker(
        ledger=ProgressLedger(broker),
        channel=channel,
        edit_lock=edit_lock,
        throttle_seconds=throttle_seconds,
        poll_interval_seconds=poll_interval_seconds,
        clock=clock,
        wall_clock=clock,
        sleep=sleep or (lambda _seconds: None),
    )


class ScriptedLock:
    """Edit lock that reports busy for the first ``busy_attempts`` acquisitions."""

    def __init__(self, busy_attempts: int = 0) -> None:
        self.busy_attempts = busy_attempts
        self.acquired: list[str] = []

    @contextmanager
    def __call__(self, name: str) -> Iterator[None]:
        if self.busy_attempts > 0:
            self.busy_attempts -= 1
            raise LockNotAcquiredError(name)
        self.acquired.append(name)
        yield


def test_record_outcome_counts_each_task_once(broker, channel, clock) -> None:
    tracker = _tracker(broker, channel, clock)
    tracker.init_batch("b1", 3, TARGET)

    assert tracker.ledger.record_outcome("b1", "t1", ResultStatus.VALID, valid_item="a***")
    assert not tracker.ledger.record_outcome("b1", "t1", ResultStatus.VALID, valid_item="a***")
    assert not tracker.ledger.record_outcome("b1", "t1", ResultStatus.ERROR)

    snapshot = tracker.ledger.snapshot("b1")
    assert snapshot.completed == 1
    assert snapshot.counts == {"VALID": 1, "INVALID": 0, "BLOCKED": 0, "ERROR": 0}
    assert tracker.ledger.get_valid_items("b1") == ["a***"]


def test_record_outcome_without_progress_record_is_ignored(broker, channel, clock) -> None:
    tracker = _tracker(broker, channel, clock)

    assert not tracker.ledger.record_outcome("missing", "t1", ResultStatus.VALID)
    assert broker.scan("progress:*") == []


def test_summary_is_sent_exactly_once(broker, channel, clock) -> None:
    tracker = _tracker(broker, channel, clock)
    tracker.init_batch("b1", 1, TARGET)
    tracker.ledger.record_outcome("b1", "t1", ResultStatus.INVALID)

    tracker.handle_progress_update("b1")
    tracker.handle_progress_update("b1")

    assert tracker.send_summary("b1") is False
    summaries = [text for _, text in channel.edits if "complete" in text]
    assert len(summaries) == 1
    assert not tracker.is_tracking("b1")


def test_summary_cleanup_runs_when_delivery_fails(broker, channel, clock) -> None:
    tracker = _tracker(broker, channel, clock)
    tracker.init_batch("b1", 1, TARGET)
    tracker.ledger.record_outcome("b1", "t1", ResultStatus.VALID, valid_item="v***")
    channel.fail_edits_with = NotificationError("channel down")

    assert tracker.send_summary("b1") is True

    assert tracker.ledger.get_record("b1") is None
    assert broker.scan("progress:b1*") == ["progress:b1:finalized"]
    assert not tracker.is_tracking("b1")


def test_summary_falls_back_to_new_message_when_progress_message_is_gone(
    broker,
    channel,
    clock,
) -> None:
    tracker = _tracker(broker, channel, clock)
    tracker.init_batch("b1", 1, TARGET)
    channel.messages.clear()
    tracker.ledger.record_outcome("b1", "t1", ResultStatus.BLOCKED)

    tracker.handle_progress_update("b1")

    assert len(channel.sent) == 2
    assert "Batch b1 complete" in channel.sent[-1][1]


def test_empty_batch_is_summarized_immediately(broker, channel, clock) -> None:
    tracker = _tracker(broker, channel, clock)

    tracker.init_batch("b1", 0, TARGET)

    assert "Processed: 0/0" in channel.edits[-1][1]
    assert tracker.ledger.get_record("b1") is None


def test_progress_edits_are_throttled(broker, channel, clock) -> None:
    tracker = _tracker(broker, channel, clock, throttle_seconds=3.0)
    tracker.init_batch("b1", 5, TARGET)

    tracker.ledger.record_outcome("b1", "t1", ResultStatus.VALID)
    tracker.handle_progress_update("b1")
    tracker.ledger.record_outcome("b1", "t2", ResultStatus.INVALID)
    tracker.handle_progress_update("b1")
    assert len(channel.edits) == 1
    assert "1/5" in channel.edits[-1][1]

    clock.advance(3)
    tracker.handle_progress_update("b1")

    assert len(channel.edits) == 2
    assert "2/5" in channel.edits[-1][1]


def test_unchanged_progress_is_not_re_edited(broker, channel, clock) -> None:
    tracker = _tracker(broker, channel, clock, throttle_seconds=0.0)
    tracker.init_batch("b1", 5, TARGET)
    tracker.ledger.record_outcome("b1", "t1", ResultStatus.VALID)

    tracker.handle_progress_update("b1")
    clock.advance(10)
    tracker.handle_progress_update("b1")

    assert len(channel.edits) == 1


def test_abort_sends_aborted_message_once(broker, channel, clock) -> None:
    tracker = _tracker(broker, channel, clock)
    tracker.init_batch("b1", 4, TARGET)
    tracker.ledger.record_outcome("b1", "t1", ResultStatus.VALID)

    assert tracker.abort_batch("b1")
    tracker.poll_once()
    tracker.poll_once()

    aborted = [text for _, text in channel.edits if "aborted" in text]
    assert len(aborted) == 1
    assert "Processed before abort: 1/4" in aborted[0]
    assert tracker.ledger.get_record("b1") is None


def test_initial_message_failure_does_not_block_tracking(broker, channel, clock) -> None:
    tracker = _tracker(broker, channel, clock)
    channel.fail_next_send_with = NotificationError("rate limited")

    record = tracker.init_batch("b1", 2, TARGET)

    assert record.message_id is None
    assert tracker.is_tracking("b1")
    assert tracker.ledger.get_record("b1").total == 2


def test_init_batch_starts_poller_that_finalizes_without_manual_updates(
    broker,
    channel,
    clock,
    stop_progress_pollers,
) -> None:
    tracker = _tracker(broker, channel, clock, throttle_seconds=0.0, poll_interval_seconds=0.02)

    tracker.init_batch("b1", 1, TARGET)
    tracker.init_batch("b2", 1, TARGET)

    assert tracker.is_running
    assert stop_progress_pollers.count(tracker) == 2
    tracker.ledger.record_outcome("b1", "t1", ResultStatus.VALID, valid_item="v***")
    deadline = time.monotonic() + 5.0
    while tracker.is_tracking("b1") and time.monotonic() < deadline:
        time.sleep(0.02)

    assert not tracker.is_tracking("b1")
    assert "Batch b1 complete" in channel.messages["1"][1]
    assert tracker.is_tracking("b2")


def test_progress_edit_is_skipped_while_edit_lock_is_busy(broker, channel, clock) -> None:
    lock = ScriptedLock(busy_attempts=1)
    tracker = _tracker(broker, channel, clock, throttle_seconds=0.0, edit_lock=lock)
    tracker.init_batch("b1", 5, TARGET)
    tracker.ledger.record_outcome("b1", "t1", ResultStatus.VALID)

    tracker.handle_progress_update("b1")

    assert channel.edits == []
    assert lock.acquired == []
    assert tracker.is_tracking("b1")

    tracker.ledger.record_outcome("b1", "t2", ResultStatus.INVALID)
    tracker.handle_progress_update("b1")

    assert lock.acquired == ["edit:chat-1:1"]
    assert "2/5" in channel.edits[-1][1]


def test_summary_edit_waits_for_edit_lock(broker, channel, clock) -> None:
    sleeps: list[float] = []
    lock = ScriptedLock(busy_attempts=2)
    tracker = _tracker(broker, channel, clock, edit_lock=lock, sleep=sleeps.append)
    tracker.init_batch("b1", 1, TARGET)
    tracker.ledger.record_outcome("b1", "t1", ResultStatus.BLOCKED)

    assert tracker.send_summary("b1") is True

    assert len(sleeps) == 2
    assert lock.acquired == ["edit:chat-1:1"]
    assert "Batch b1 complete" in channel.messages["1"][1]


def test_summary_is_delivered_when_edit_lock_never_frees(broker, channel, clock) -> None:
    sleeps: list[float] = []
    lock = ScriptedLock(busy_attempts=100)
    tracker = _tracker(broker, channel, clock, edit_lock=lock, sleep=sleeps.append)
    tracker.init_batch("b1", 1, TARGET)
    tracker.ledger.record_outcome("b1", "t1", ResultStatus.VALID)

    tracker.send_summary("b1")

    assert len(sleeps) == 5
    assert lock.acquired == []
    assert "Batch b1 complete" in channel.messages["1"][1]
    assert tracker.ledger.get_record("b1") is None
