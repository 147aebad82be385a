from __future__ import annotations

import allure
import pytest

from batchmesh.broker import keys
from batchmesh.models import Credential, ProxyAssignment, Task
from batchmesh.worker import EchoEnricher, EchoProcessor

pytestmark = [
    allure.epic("Job Distribution"),
    allure.feature("Task Model"),
]


def test_credential_parse_accepts_username_password_lines() -> None:
    credential = Credential.parse("  alice@example.com:pa:ss  ")

    assert credential == Credential(username="alice@example.com", password="pa:ss")
    assert Credential.parse("no separator") is None
    assert Credential.parse(":missing-user") is None
    assert Credential.parse("# comment:line") is None


def test_identity_is_a_stable_fingerprint_without_the_secret() -> None:
    credential = Credential(username="alice@example.com", password="hunter2")

    assert credential.identity == Credential("alice@example.com", "hunter2").identity
    assert credential.identity != Credential("alice@example.com", "other").identity
    assert "hunter2" not in credential.identity
    assert credential.masked == "alice***"


def test_task_json_round_trip_keeps_retry_state() -> None:
    task = Task(
        task_id="b1-0003",
        batch_id="b1",
        credential=Credential("bob", "pw"),
        proxy=ProxyAssignment(proxy_id="abc", url="http://p1:8080"),
        created_at=10.0,
    )

    retried = Task.from_json(task.for_retry(error_code="NETWORK_ERROR", now=20.0).to_json())

    assert retried.retry_count == 1
    assert retried.last_error_code == "NETWORK_ERROR"
    assert retried.retry_at == 20.0
    assert retried.proxy == task.proxy
    assert retried.credential == task.credential


def test_malformed_task_payload_raises_value_error() -> None:
    with pytest.raises(ValueError, match="Malformed task payload"):
        Task.from_json('{"task_id": "x"}')


def test_progress_key_parsing_ignores_sub_keys() -> None:
    assert keys.batch_id_from_progress_key("progress:b1") == "b1"
    assert keys.batch_id_from_progress_key("progress:b1:count") is None
    assert keys.batch_id_from_progress_key("job:b1") is None


def test_tracking_code_is_deterministic() -> None:
    identity = Credential("carol", "pw").identity

    assert keys.tracking_code(identity) == keys.tracking_code(identity)
    assert keys.tracking_code(identity).startswith("BM-")
    assert len(keys.tracking_code(identity)) == 11


def test_echo_processor_outcomes_follow_username_prefixes() -> None:
    processor = EchoProcessor()

    assert processor.process(Credential("valid-1", "pw"), None).status.value == "VALID"
    assert processor.process(Credential("blocked-1", "pw"), None).status.value == "BLOCKED"
    assert processor.process(Credential("fail-1", "pw"), None).error_code == "INVALID_INPUT"
    with pytest.raises(RuntimeError):
        processor.process(Credential("raise-1", "pw"), None)
    assert processor.calls == 4

    session = processor.process(Credential("valid-2", "pw"), "http://p1:8080").session
    assert EchoEnricher().enrich(session)["source"] == "echo"
    assert EchoEnricher().enrich(None) is None
