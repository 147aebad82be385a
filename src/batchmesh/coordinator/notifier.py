"""Outward notification channel contract, a logging implementation and a retry wrapper."""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections.abc import Callable
from typing import Protocol, TypeVar

from batchmesh.config import NotificationSettings
from batchmesh.errors import MessageNotFoundError, MessageNotModifiedError
from batchmesh.models import NotifyTarget

logger = logging.getLogger(__name__)

T = TypeVar("T")


class NotificationChannel(Protocol):
    """Send/edit/delete messages in an external chat-like channel."""

    def send(self, target: NotifyTarget, text: str) -> str: ...

    def edit(self, target: NotifyTarget, message_id: str, text: str) -> None: ...

    def delete(self, target: NotifyTarget, message_id: str) -> None: ...


class LoggingChannel:
    """In-process channel that logs every message; used by the CLI."""

    def __init__(self) -> None:
        self._messages: dict[tuple[str, str], str] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def send(self, target: NotifyTarget, text: str) -> str:
        with self._lock:
            message_id = str(next(self._ids))
            self._messages[(target.chat_id, message_id)] = text
        logger.info("[%s#%s] %s", target.chat_id, message_id, text)
        return message_id

    def edit(self, target: NotifyTarget, message_id: str, text: str) -> None:
        with self._lock:
            current = self._messages.get((target.chat_id, message_id))
            if current is None:
                raise MessageNotFoundError(f"Message {message_id} not found in {target.chat_id}.")
            if current == text:
                raise MessageNotModifiedError(f"Message {message_id} is not modified.")
            self._messages[(target.chat_id, message_id)] = text
        logger.info("[%s#%s edited] %s", target.chat_id, message_id, text)

    def delete(self, target: NotifyTarget, message_id: str) -> None:
        with self._lock:
            if self._messages.pop((target.chat_id, message_id), None) is None:
                raise MessageNotFoundError(f"Message {message_id} not found in {target.chat_id}.")
        logger.info("[%s#%s deleted]", target.chat_id, message_id)


_RETRYABLE_PATTERNS = (
    "network",
    "timeout",
    "timed out",
    "econnreset",
    "enotfound",
    "econnrefused",
    "connection reset",
    "connection refused",
    "too many requests",
    "rate limit",
    "429",
    "500",
    "502",
    "503",
    "504",
)


def is_retryable_notification_error(error: BaseException) -> bool:
    """Transient transport failures are retryable; message-state answers never are."""

    if isinstance(error, MessageNotFoundError | MessageNotModifiedError):
        return False
    if isinstance(error, ConnectionError | TimeoutError):
        return True
    return _first_match(str(error).lower(), _RETRYABLE_PATTERNS) is not None


class RetryingChannel:
    """Wraps a channel with a bounded retry on transient failures.

    Other errors, and the last failed attempt, propagate to the caller.
    """

    def __init__(
        self,
        channel: NotificationChannel,
        settings: NotificationSettings | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.channel = channel
        self.settings = settings or NotificationSettings()
        self._sleep = sleep

    def send(self, target: NotifyTarget, text: str) -> str:
        return self._call("send", self.settings.max_retries, self.channel.send, target, text)

    def edit(self, target: NotifyTarget, message_id: str, text: str) -> None:
        self._call("edit", self.settings.max_retries, self.channel.edit, target, message_id, text)

    def delete(self, target: NotifyTarget, message_id: str) -> None:
        self._call("delete", self.settings.delete_max_retries, self.channel.delete, target, message_id)

    def _call(self, operation: str, attempts: int, func: Callable[..., T], *args: object) -> T:
        backoff = self.settings.backoff_seconds
        attempt = 1
        while True:
            try:
                return func(*args)
            except Exception as error:
                if attempt >= attempts or not is_retryable_notification_error(error):
                    raise
                delay = backoff[min(attempt - 1, len(backoff) - 1)]
                logger.warning(
                    "Channel %s failed (attempt %d/%d), retrying in %.0fs: %s",
                    operation,
                    attempt,
                    attempts,
                    delay,
                    error,
                )
                self._sleep(delay)
                attempt += 1


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
