"""Forward qualifying results to the notification channel exactly once.

The sequence is a two-phase commit over independent broker keys:

1. reserve ``forward:reserved:{identity}`` with the tracking code
2. write ``forward:pending:{code}`` (short TTL)
3. send the outward message
4. write ``msg:{code}`` (message reference)
5. write ``msg:cred:{identity}`` (reverse index)
6. delete the pending record

A crash between steps leaves a pending record behind that
``retry_pending_forwards`` replays. A crash between steps 4 and 5 after the
pending record has expired leaves a message reference without its reverse
index; nothing repairs that state.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from batchmesh.broker import keys
from batchmesh.broker.base import Broker
from batchmesh.broker.pubsub import Subscription
from batchmesh.config import ForwardSettings
from batchmesh.coordinator.messages import format_forward, format_status_change
from batchmesh.coordinator.notifier import NotificationChannel
from batchmesh.errors import BrokerUnavailableError, MessageNotFoundError, MessageNotModifiedError
from batchmesh.models import NotifyTarget, ResultStatus

logger = logging.getLogger(__name__)

ForwardPolicy = Callable[[dict[str, Any] | None], bool]


def has_aux_data(aux_data: dict[str, Any] | None) -> bool:
    """Default policy: at least one non-empty auxiliary value."""

    if not isinstance(aux_data, dict):
        return False
    return any(value not in (None, "", [], {}) for value in aux_data.values())


@dataclass(slots=True)
class ForwardEvent:
    """Result notification published by workers on the forward/update channels."""

    identity: str
    username: str
    status: ResultStatus
    batch_id: str
    task_id: str
    checked_at: float
    aux_data: dict[str, Any] | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "username": self.username,
            "status": self.status.value,
            "batch_id": self.batch_id,
            "task_id": self.task_id,
            "checked_at": self.checked_at,
            "aux_data": self.aux_data,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ForwardEvent:
        try:
            return cls(
                identity=str(payload["identity"]),
                username=str(payload.get("username", "")),
                status=ResultStatus(payload["status"]),
                batch_id=str(payload.get("batch_id", "")),
                task_id=str(payload.get("task_id", "")),
                checked_at=float(payload.get("checked_at", 0.0)),
                aux_data=payload.get("aux_data"),
            )
        except (KeyError, TypeError, ValueError) as error:
            raise ValueError(f"Malformed forward event: {error}") from error


class ChannelForwarder:
    """Subscribes to worker result events and drives the forwarding protocol."""

    def __init__(
        self,
        *,
        broker: Broker,
        channel: NotificationChannel | None,
        settings: ForwardSettings | None = None,
        forward_policy: ForwardPolicy = has_aux_data,
    ) -> None:
        self._broker = broker
        self.channel = channel
        self.settings = settings or ForwardSettings()
        self.forward_policy = forward_policy
        self.target = (
            NotifyTarget(chat_id=self.settings.channel_id) if self.settings.channel_id else None
        )
        self._subscriptions: list[Subscription] = []

    @property
    def enabled(self) -> bool:
        return self.channel is not None and self.target is not None

    def start(self) -> None:
        if self._subscriptions:
            return
        forward_sub = self._broker.subscribe(keys.FORWARD_EVENTS)
        forward_sub.listen(self.handle_forward_event, name="forwarder-forward")
        update_sub = self._broker.subscribe(keys.UPDATE_EVENTS)
        update_sub.listen(self.handle_update_event, name="forwarder-update")
        self._subscriptions = [forward_sub, update_sub]
        logger.info("Channel forwarder listening (enabled=%s)", self.enabled)

    def stop(self) -> None:
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions = []

    # -- forwarding -----------------------------------------------------------

    def handle_forward_event(self, payload: dict[str, Any]) -> bool:
        try:
            event = ForwardEvent.from_payload(payload)
        except ValueError as error:
            logger.warning("Dropping forward event: %s", error)
            return False
        return self.forward(event)

    def forward(self, event: ForwardEvent, *, created_at: float | None = None) -> bool:
        """Run the protocol for one event. ``created_at`` marks a replay of a pending record."""

        replay = created_at is not None
        channel, target = self.channel, self.target
        if channel is None or target is None:
            logger.debug("Forwarding disabled; ignoring %s", event.task_id)
            return False
        if event.status != ResultStatus.VALID or not self.forward_policy(event.aux_data):
            logger.debug("Forward policy rejected %s", event.task_id)
            return False

        code = keys.tracking_code(event.identity)
        reserved_key = keys.forward_reserved_key(event.identity)
        pending_key = keys.forward_pending_key(code)
        if not self._broker.set_if_absent(reserved_key, code, ttl=self.settings.message_ttl_seconds):
            if not replay or self._broker.get(reserved_key) != code:
                logger.debug("Result %s already forwarded", code)
                return False

        try:
            if replay and self._broker.exists(keys.message_ref_key(code)):
                self._write_reverse_index(event, code)
                self._broker.delete(pending_key)
                logger.info("Forward %s recovered from partial commit", code)
                return True
            if not replay:
                self._broker.set(
                    pending_key,
                    json.dumps(
                        {
                            "phase": "pending",
                            "tracking_code": code,
                            "created_at": self._broker.now(),
                            "event": event.to_payload(),
                        },
                    ),
                    ttl=self.settings.pending_ttl_seconds,
                )
            message_id = channel.send(
                target,
                format_forward(
                    tracking_code=code,
                    username=event.username,
                    batch_id=event.batch_id,
                    aux_data=event.aux_data,
                ),
            )
            self._broker.set(
                keys.message_ref_key(code),
                json.dumps(
                    {
                        "message_id": message_id,
                        "chat_id": target.chat_id,
                        "identity": event.identity,
                        "username": event.username,
                        "batch_id": event.batch_id,
                        "created_at": self._broker.now(),
                    },
                ),
                ttl=self.settings.message_ttl_seconds,
            )
            self._write_reverse_index(event, code)
            self._broker.delete(pending_key)
            logger.info("Forwarded %s for batch %s", code, event.batch_id)
            return True
        except BrokerUnavailableError:
            raise
        except Exception as error:  # noqa: BLE001
            logger.warning("Forward %s failed: %s", code, error)
            self._abort(
                pending_key=pending_key,
                reserved_key=reserved_key,
                code=code,
                created_at=created_at,
            )
            return False

    def retry_pending_forwards(self) -> int:
        """Replay stale pending records; returns how many committed."""

        now = self._broker.now()
        committed = 0
        for pending_key in self._broker.scan(keys.FORWARD_PENDING_PATTERN):
            try:
                raw = self._broker.get(pending_key)
                if raw is None:
                    continue
                try:
                    pending = json.loads(raw)
                    created_at = float(pending["created_at"])
                    event = ForwardEvent.from_payload(pending["event"])
                except (json.JSONDecodeError, KeyError, TypeError, ValueError) as error:
                    logger.warning("Dropping unreadable pending forward %s: %s", pending_key, error)
                    self._broker.delete(pending_key)
                    continue
                if now - created_at < self.settings.replay_after_seconds:
                    continue
                if self.forward(event, created_at=created_at):
                    committed += 1
            except BrokerUnavailableError:
                raise
            except Exception:
                logger.exception("Replaying %s failed", pending_key)
        return committed

    def _write_reverse_index(self, event: ForwardEvent, code: str) -> None:
        self._broker.set(
            keys.message_reverse_key(event.identity),
            code,
            ttl=self.settings.message_ttl_seconds,
        )

    def _abort(
        self,
        *,
        pending_key: str,
        reserved_key: str,
        code: str,
        created_at: float | None,
    ) -> None:
        if created_at is not None:
            age = self._broker.now() - created_at
            if age < self.settings.abandon_after_seconds:
                self._broker.expire(pending_key, self.settings.pending_ttl_seconds)
                return
            logger.warning("Abandoning forward %s after %.0fs", code, age)
        self._broker.delete(pending_key)
        self._broker.compare_and_delete(reserved_key, code)

    # -- status changes -------------------------------------------------------

    def handle_update_event(self, payload: dict[str, Any]) -> bool:
        """Delete (INVALID) or edit (BLOCKED) a previously forwarded message."""

        try:
            event = ForwardEvent.from_payload(payload)
        except ValueError as error:
            logger.warning("Dropping update event: %s", error)
            return False
        if self.channel is None or event.status not in (ResultStatus.INVALID, ResultStatus.BLOCKED):
            return False
        try:
            return self._apply_status_change(event)
        except BrokerUnavailableError:
            raise
        except Exception:
            logger.exception("Status change for %s failed", event.task_id)
            return False

    def _apply_status_change(self, event: ForwardEvent) -> bool:
        channel = self.channel
        if channel is None:
            return False
        code = self._broker.get(keys.message_reverse_key(event.identity))
        if code is None:
            return False
        raw_ref = self._broker.get(keys.message_ref_key(code))
        if raw_ref is None:
            logger.debug("Reverse index %s has no message reference", code)
            return False
        ref = json.loads(raw_ref)
        target = NotifyTarget(chat_id=str(ref["chat_id"]))
        message_id = str(ref["message_id"])

        if event.status == ResultStatus.INVALID:
            try:
                channel.delete(target, message_id)
            except MessageNotFoundError:
                logger.debug("Message for %s already deleted", code)
            self._broker.delete(
                keys.message_ref_key(code),
                keys.message_reverse_key(event.identity),
                keys.forward_reserved_key(event.identity),
            )
            logger.info("Forward %s withdrawn after INVALID", code)
            return True

        try:
            channel.edit(
                target,
                message_id,
                format_status_change(
                    tracking_code=code,
                    username=event.username,
                    status=event.status.value,
                ),
            )
        except (MessageNotFoundError, MessageNotModifiedError) as error:
            logger.debug("Edit for %s tolerated: %s", code, error)
        logger.info("Forward %s marked %s", code, event.status.value)
        return True
