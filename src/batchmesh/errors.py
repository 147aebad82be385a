"""Exception hierarchy shared by coordinator, worker and broker."""

from __future__ import annotations


class BatchmeshError(Exception):
    """Base error for the job-distribution layer."""


class BrokerError(BatchmeshError):
    """Broker operation failed but the broker may still be reachable."""


class BrokerUnavailableError(BrokerError):
    """Broker cannot be reached; the calling process should shut down."""


class CoordinatorStartupError(BatchmeshError):
    """Another coordinator looks alive or the takeover lock is held."""


class LockNotAcquiredError(BatchmeshError):
    """Distributed lock is held by someone else."""

    def __init__(self, operation: str) -> None:
        super().__init__(f"Lock for operation {operation!r} is held by another owner.")
        self.operation = operation


class TaskTimeoutError(BatchmeshError):
    """Task processor did not finish within the configured bound."""


class NotificationError(BatchmeshError):
    """Outward notification channel rejected a request."""


class MessageNotFoundError(NotificationError):
    """Target message is already gone."""


class MessageNotModifiedError(NotificationError):
    """Edit carried the same text as the current message."""
