"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from batchmesh.broker import SQLiteBroker
from batchmesh.config import Settings, WorkerSettings
from batchmesh.coordinator.progress import ProgressTracker
from batchmesh.errors import MessageNotFoundError, MessageNotModifiedError
from batchmesh.models import NotifyTarget


class FakeClock:
    """Manually advanced epoch clock shared by broker and components."""

    def __init__(self, start: float = 1_800_000_000.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class RecordingChannel:
    """Notification channel that keeps every message in memory."""

    def __init__(self) -> None:
        self.messages: dict[str, tuple[str, str]] = {}
        self.sent: list[tuple[str, str]] = []
        self.edits: list[tuple[str, str]] = []
        self.deleted: list[str] = []
        self.fail_edits_with: Exception | None = None
        self.fail_next_send_with: BaseException | None = None

    def send(self, target: NotifyTarget, text: str) -> str:
        if self.fail_next_send_with is not None:
            error, self.fail_next_send_with = self.fail_next_send_with, None
            raise error
        message_id = str(len(self.sent) + 1)
        self.messages[message_id] = (target.chat_id, text)
        self.sent.append((target.chat_id, text))
        return message_id

    def edit(self, target: NotifyTarget, message_id: str, text: str) -> None:
        if self.fail_edits_with is not None:
            raise self.fail_edits_with
        current = self.messages.get(message_id)
        if current is None:
            raise MessageNotFoundError(message_id)
        if current[1] == text:
            raise MessageNotModifiedError(message_id)
        self.messages[message_id] = (target.chat_id, text)
        self.edits.append((message_id, text))

    def delete(self, target: NotifyTarget, message_id: str) -> None:
        if self.messages.pop(message_id, None) is None:
            raise MessageNotFoundError(message_id)
        self.deleted.append(message_id)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def broker(tmp_path: Path, clock: FakeClock):
    instance = SQLiteBroker(tmp_path / "broker.db", poll_interval_seconds=0.01, clock=clock)
    instance.init_schema()
    yield instance
    instance.close()


@pytest.fixture()
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings with pop waits and pauses short enough for inline worker runs."""

    fast = Settings(
        worker=WorkerSettings(
            task_timeout_seconds=5.0,
            retry_pop_timeout_seconds=0.0,
            main_pop_timeout_seconds=0.0,
            graceful_shutdown_seconds=1.0,
            heartbeat_interval_seconds=60.0,
            circuit_pause_seconds=0.0,
            error_backoff_seconds=0.0,
        ),
    )
    fast.broker.db_path = tmp_path / "broker.db"
    fast.single_node.store_path = tmp_path / "processed" / "processed-creds.jsonl"
    fast.progress.throttle_seconds = 0.0
    fast.notification.backoff_seconds = (0.0,)
    return fast


@pytest.fixture(autouse=True)
def stop_progress_pollers(monkeypatch: pytest.MonkeyPatch):
    """Stop every poller thread a test starts through ``init_batch``."""

    started: list[ProgressTracker] = []
    original_start = ProgressTracker.start

    def start(self: ProgressTracker) -> None:
        started.append(self)
        original_start(self)

    monkeypatch.setattr(ProgressTracker, "start", start)
    yield started
    for tracker in started:
        tracker.stop()
