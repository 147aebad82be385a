from __future__ import annotations

import json

import allure

from batchmesh.broker import keys
from batchmesh.config import ForwardSettings
from batchmesh.coordinator import ChannelForwarder, ForwardEvent, has_aux_data
from batchmesh.errors import NotificationError
from batchmesh.models import Credential, ResultStatus

pytestmark = [
    allure.epic("Result Forwarding"),
    allure.feature("Exactly-Once Delivery"),
]

CREDENTIAL = Credential(username="valid.alice@example.com", password="pw")


class SimulatedCrash(BaseException):
    """Stands in for the process dying mid-protocol."""


def _event(status: ResultStatus = ResultStatus.VALID, aux_data=None) -> ForwardEvent:
    return ForwardEvent(
        identity=CREDENTIAL.identity,
        username=CREDENTIAL.masked,
        status=status,
        batch_id="b1",
        task_id="b1-0000",
        checked_at=0.0,
        aux_data={"reference": "abc123"} if aux_data is None else aux_data,
    )


def _forwarder(broker, channel, **kwargs) -> ChannelForwarder:
    return ChannelForwarder(
        broker=broker,
        channel=channel,
        settings=ForwardSettings(channel_id="forward-chat"),
        **kwargs,
    )


def test_default_policy_requires_non_empty_aux_data() -> None:
    assert has_aux_data({"reference": "x"})
    assert not has_aux_data({"reference": ""})
    assert not has_aux_data({})
    assert not has_aux_data(None)


def test_forward_commits_all_keys_and_sends_once(broker, channel) -> None:
    forwarder = _forwarder(broker, channel)
    code = keys.tracking_code(CREDENTIAL.identity)

    assert forwarder.forward(_event())
    assert not forwarder.forward(_event())

    assert len(channel.sent) == 1
    chat_id, text = channel.sent[0]
    assert chat_id == "forward-chat"
    assert code in text
    assert "pw" not in text
    assert broker.get(keys.forward_reserved_key(CREDENTIAL.identity)) == code
    assert broker.get(keys.message_reverse_key(CREDENTIAL.identity)) == code
    assert json.loads(broker.get(keys.message_ref_key(code)))["message_id"] == "1"
    assert broker.scan(keys.FORWARD_PENDING_PATTERN) == []


def test_forward_skips_non_qualifying_results(broker, channel) -> None:
    forwarder = _forwarder(broker, channel)

    assert not forwarder.forward(_event(status=ResultStatus.INVALID))
    assert not forwarder.forward(_event(aux_data={}))
    assert not _forwarder(broker, channel, forward_policy=lambda _aux: False).forward(_event())

    assert channel.sent == []
    assert broker.scan("forward:*") == []


def test_forward_is_disabled_without_a_channel_id(broker, channel) -> None:
    forwarder = ChannelForwarder(broker=broker, channel=channel, settings=ForwardSettings())

    assert not forwarder.enabled
    assert not forwarder.forward(_event())
    assert channel.sent == []


def test_send_failure_releases_reservation(broker, channel) -> None:
    forwarder = _forwarder(broker, channel)
    channel.fail_next_send_with = NotificationError("channel down")

    assert not forwarder.forward(_event())
    assert broker.scan("forward:*") == []

    assert forwarder.forward(_event())
    assert len(channel.sent) == 1


def test_crash_before_send_is_replayed_once(broker, channel, clock) -> None:
    forwarder = _forwarder(broker, channel)
    channel.fail_next_send_with = SimulatedCrash()

    try:
        forwarder.forward(_event())
    except SimulatedCrash:
        pass
    assert len(broker.scan(keys.FORWARD_PENDING_PATTERN)) == 1

    assert forwarder.retry_pending_forwards() == 0

    clock.advance(31)
    assert forwarder.retry_pending_forwards() == 1
    assert forwarder.retry_pending_forwards() == 0

    assert len(channel.sent) == 1
    assert broker.scan(keys.FORWARD_PENDING_PATTERN) == []


def test_crash_after_message_reference_is_repaired_without_resending(
    broker,
    channel,
    clock,
    monkeypatch,
) -> None:
    forwarder = _forwarder(broker, channel)
    original_set = broker.set

    def crash_on_reverse_index(key, value, *, ttl=None):
        if key.startswith("msg:cred:"):
            raise SimulatedCrash()
        return original_set(key, value, ttl=ttl)

    monkeypatch.setattr(broker, "set", crash_on_reverse_index)
    try:
        forwarder.forward(_event())
    except SimulatedCrash:
        pass
    monkeypatch.setattr(broker, "set", original_set)

    code = keys.tracking_code(CREDENTIAL.identity)
    assert broker.exists(keys.message_ref_key(code))
    assert broker.get(keys.message_reverse_key(CREDENTIAL.identity)) is None

    clock.advance(31)
    assert forwarder.retry_pending_forwards() == 1

    assert len(channel.sent) == 1
    assert broker.get(keys.message_reverse_key(CREDENTIAL.identity)) == code
    assert broker.scan(keys.FORWARD_PENDING_PATTERN) == []


def test_failed_replay_keeps_pending_until_ceiling_then_abandons(broker, channel, clock) -> None:
    forwarder = _forwarder(broker, channel)
    channel.fail_next_send_with = SimulatedCrash()
    try:
        forwarder.forward(_event())
    except SimulatedCrash:
        pass

    age = 0
    while age < 500:
        clock.advance(100)
        age += 100
        channel.fail_next_send_with = NotificationError("still down")
        assert forwarder.retry_pending_forwards() == 0
        assert len(broker.scan(keys.FORWARD_PENDING_PATTERN)) == 1

    clock.advance(100)
    channel.fail_next_send_with = NotificationError("still down")
    assert forwarder.retry_pending_forwards() == 0

    assert broker.scan("forward:*") == []
    assert channel.sent == []


def test_unreadable_pending_record_is_dropped(broker, channel) -> None:
    forwarder = _forwarder(broker, channel)
    broker.set(keys.forward_pending_key("BM-DEADBEEF"), "not json", ttl=120)

    assert forwarder.retry_pending_forwards() == 0
    assert broker.scan(keys.FORWARD_PENDING_PATTERN) == []


def test_invalid_update_withdraws_forwarded_message(broker, channel) -> None:
    forwarder = _forwarder(broker, channel)
    forwarder.forward(_event())
    code = keys.tracking_code(CREDENTIAL.identity)

    assert forwarder.handle_update_event(_event(status=ResultStatus.INVALID).to_payload())

    assert channel.deleted == ["1"]
    assert broker.get(keys.message_ref_key(code)) is None
    assert broker.get(keys.message_reverse_key(CREDENTIAL.identity)) is None
    assert broker.get(keys.forward_reserved_key(CREDENTIAL.identity)) is None


def test_blocked_update_edits_forwarded_message(broker, channel) -> None:
    forwarder = _forwarder(broker, channel)
    forwarder.forward(_event())

    assert forwarder.handle_update_event(_event(status=ResultStatus.BLOCKED).to_payload())

    message_id, text = channel.edits[-1]
    assert message_id == "1"
    assert "Status: BLOCKED" in text
    assert broker.exists(keys.message_reverse_key(CREDENTIAL.identity))


def test_update_for_unknown_or_missing_message_is_tolerated(broker, channel) -> None:
    forwarder = _forwarder(broker, channel)

    assert not forwarder.handle_update_event(_event(status=ResultStatus.INVALID).to_payload())

    forwarder.forward(_event())
    channel.messages.clear()
    assert forwarder.handle_update_event(_event(status=ResultStatus.INVALID).to_payload())
    assert broker.get(keys.message_reverse_key(CREDENTIAL.identity)) is None


def test_malformed_events_are_dropped(broker, channel) -> None:
    forwarder = _forwarder(broker, channel)

    assert not forwarder.handle_forward_event({"status": "VALID"})
    assert not forwarder.handle_update_event({"identity": "x", "status": "NOPE"})
    assert channel.sent == []
