from __future__ import annotations

import allure
import pytest

from batchmesh.config import NotificationSettings
from batchmesh.coordinator import Coordinator, RetryingChannel
from batchmesh.coordinator.notifier import LoggingChannel, is_retryable_notification_error
from batchmesh.errors import MessageNotFoundError, MessageNotModifiedError, NotificationError
from batchmesh.models import BatchOptions, Credential, NotifyTarget

pytestmark = [
    allure.epic("Outward Notifications"),
    allure.feature("Channel Retry"),
]

TARGET = NotifyTarget(chat_id="chat-1")


class FlakyChannel:
    """Fails the first ``failures`` calls of each operation with ``error``."""

    def __init__(self, error: Exception, failures: int) -> None:
        self.error = error
        self.failures = failures
        self.calls: dict[str, int] = {"send": 0, "edit": 0, "delete": 0}
        self.inner = LoggingChannel()

    def _maybe_fail(self, operation: str) -> None:
        self.calls[operation] += 1
        if self.calls[operation] <= self.failures:
            raise self.error

    def send(self, target: NotifyTarget, text: str) -> str:
        self._maybe_fail("send")
        return self.inner.send(target, text)

    def edit(self, target: NotifyTarget, message_id: str, text: str) -> None:
        self._maybe_fail("edit")
        self.inner.edit(target, message_id, text)

    def delete(self, target: NotifyTarget, message_id: str) -> None:
        self._maybe_fail("delete")
        self.inner.delete(target, message_id)


def _retrying(channel, sleeps: list[float]) -> RetryingChannel:
    return RetryingChannel(
        channel,
        NotificationSettings(max_retries=3, delete_max_retries=2, backoff_seconds=(1.0, 2.0, 5.0)),
        sleep=sleeps.append,
    )


@pytest.mark.parametrize(
    ("error", "retryable"),
    [
        (NotificationError("429 Too Many Requests: retry after 3"), True),
        (NotificationError("Bad Gateway (502)"), True),
        (ConnectionError("connection reset by peer"), True),
        (TimeoutError(), True),
        (NotificationError("chat not found"), False),
        (MessageNotFoundError("network message 7 gone"), False),
        (MessageNotModifiedError("timeout text unchanged"), False),
    ],
)
def test_retryable_errors_are_transport_failures(error: Exception, retryable: bool) -> None:
    assert is_retryable_notification_error(error) is retryable


def test_transient_send_failure_is_retried_with_backoff() -> None:
    sleeps: list[float] = []
    flaky = FlakyChannel(NotificationError("503 Service Unavailable"), failures=2)

    message_id = _retrying(flaky, sleeps).send(TARGET, "hello")

    assert message_id == "1"
    assert flaky.calls["send"] == 3
    assert sleeps == [1.0, 2.0]


def test_retry_gives_up_after_max_attempts() -> None:
    sleeps: list[float] = []
    flaky = FlakyChannel(NotificationError("network unreachable"), failures=10)

    with pytest.raises(NotificationError, match="network"):
        _retrying(flaky, sleeps).edit(TARGET, "1", "text")

    assert flaky.calls["edit"] == 3
    assert sleeps == [1.0, 2.0]


def test_delete_uses_its_own_smaller_budget() -> None:
    sleeps: list[float] = []
    flaky = FlakyChannel(TimeoutError("read timed out"), failures=10)

    with pytest.raises(TimeoutError):
        _retrying(flaky, sleeps).delete(TARGET, "1")

    assert flaky.calls["delete"] == 2
    assert sleeps == [1.0]


def test_permanent_failures_are_raised_immediately() -> None:
    sleeps: list[float] = []
    flaky = FlakyChannel(NotificationError("bot was blocked by the user"), failures=1)

    with pytest.raises(NotificationError, match="blocked"):
        _retrying(flaky, sleeps).send(TARGET, "hello")
    with pytest.raises(MessageNotFoundError):
        _retrying(LoggingChannel(), sleeps).edit(TARGET, "404", "text")

    assert sleeps == []
    assert flaky.calls["send"] == 1


def test_coordinator_progress_messages_survive_a_rate_limit(broker, settings) -> None:
    sleeps: list[float] = []
    flaky = FlakyChannel(NotificationError("Too Many Requests: retry after 1"), failures=1)
    coordinator = Coordinator(
        broker=broker,
        settings=settings,
        channel=flaky,
        coordinator_id="coord",
        sleep=sleeps.append,
    )

    coordinator.submit_batch(
        "b1",
        [Credential("valid-a", "secret")],
        BatchOptions(target=TARGET),
    )

    record = coordinator.ledger.get_record("b1")
    assert record is not None
    assert record.message_id == "1"
    assert flaky.calls["send"] == 2
    assert sleeps == [0.0]
