"""Typed pub/sub subscriptions over the broker message log."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BrokerMessageView:
    """One message delivered to a subscriber."""

    message_id: int
    channel: str
    payload: dict[str, Any]
    published_at: float


class MessageSource(Protocol):
    def fetch_messages(self, channel: str, *, after_id: int) -> list[BrokerMessageView]: ...

    def latest_message_id(self, channel: str) -> int: ...


class Subscription:
    """Cursor over one channel; only messages published after creation are seen."""

    def __init__(
        self,
        *,
        source: MessageSource,
        channel: str,
        poll_interval_seconds: float = 0.1,
    ) -> None:
        self.channel = channel
        self._source = source
        self._poll_interval = poll_interval_seconds
        self._last_id = source.latest_message_id(channel)
        self._closed = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def poll(self) -> list[BrokerMessageView]:
        """Return messages published since the previous poll."""

        if self._closed.is_set():
            return []
        messages = self._source.fetch_messages(self.channel, after_id=self._last_id)
        if messages:
            self._last_id = messages[-1].message_id
        return messages

    def listen(self, handler: Callable[[dict[str, Any]], None], *, name: str | None = None) -> None:
        """Deliver each message to ``handler`` on a background thread until closed."""

        if self._thread is not None:
            raise RuntimeError(f"Subscription to {self.channel!r} already has a listener.")
        self._thread = threading.Thread(
            target=self._listen_loop,
            args=(handler,),
            daemon=True,
            name=name or f"sub-{self.channel}",
        )
        self._thread.start()

    def close(self, *, timeout: float = 5.0) -> None:
        self._closed.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def _listen_loop(self, handler: Callable[[dict[str, Any]], None]) -> None:
        while not self._closed.is_set():
            try:
                messages = self.poll()
            except Exception:
                logger.exception("Polling channel %s failed", self.channel)
                self._closed.wait(timeout=max(self._poll_interval, 1.0))
                continue
            for message in messages:
                if self._closed.is_set():
                    return
                try:
                    handler(message.payload)
                except Exception:
                    logger.exception("Handler for channel %s failed", self.channel)
            if not messages:
                self._closed.wait(timeout=self._poll_interval)


def decode_payload(raw: str) -> dict[str, Any]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return {"raw": raw}
    if not isinstance(payload, dict):
        return {"value": payload}
    return payload
