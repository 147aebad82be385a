from __future__ import annotations

import json
from pathlib import Path

import allure

from batchmesh.compat import ProcessedStore
from batchmesh.models import ResultStatus

pytestmark = [
    allure.epic("Single-Node Mode"),
    allure.feature("Processed Store"),
]


def test_hydrate_creates_missing_file(tmp_path: Path, clock) -> None:
    store = ProcessedStore(tmp_path / "nested" / "processed.jsonl", clock=clock)

    assert store.hydrate() == 0
    assert store.path.exists()


def test_marks_survive_rehydration(tmp_path: Path, clock) -> None:
    path = tmp_path / "processed.jsonl"
    store = ProcessedStore(path, clock=clock)
    store.hydrate()
    store.mark("id-1", ResultStatus.VALID)
    store.mark("id-2", ResultStatus.INVALID)
    store.mark("id-1", ResultStatus.BLOCKED)

    reloaded = ProcessedStore(path, clock=clock)

    assert reloaded.hydrate() == 2
    assert reloaded.get("id-1") == ResultStatus.BLOCKED
    assert reloaded.get("id-2") == ResultStatus.INVALID
    assert reloaded.get("id-3") is None


def test_hydrate_drops_expired_and_malformed_lines(tmp_path: Path, clock) -> None:
    path = tmp_path / "processed.jsonl"
    now = clock()
    path.write_text(
        "\n".join(
            [
                json.dumps({"key": "fresh", "status": "VALID", "ts": now - 60}),
                json.dumps({"key": "old", "status": "VALID", "ts": now - 8 * 24 * 3_600}),
                json.dumps({"key": "old-error", "status": "ERROR", "ts": now - 2 * 24 * 3_600}),
                "{broken",
                json.dumps({"key": "bad-status", "status": "MAYBE", "ts": now}),
            ],
        )
        + "\n",
        encoding="utf-8",
    )
    store = ProcessedStore(path, clock=clock)

    assert store.hydrate() == 1
    assert len(store) == 1
    lines = path.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["key"] for line in lines] == ["fresh"]
    assert not path.with_suffix(".tmp").exists()


def test_error_entries_use_the_shorter_ttl(tmp_path: Path, clock) -> None:
    store = ProcessedStore(
        tmp_path / "processed.jsonl",
        ttl_seconds=7 * 24 * 3_600,
        error_ttl_seconds=24 * 3_600,
        clock=clock,
    )
    store.hydrate()
    store.mark("flaky", ResultStatus.ERROR)
    store.mark("stable", ResultStatus.VALID)

    clock.advance(24 * 3_600 + 1)

    assert store.get("flaky") is None
    assert store.get("stable") == ResultStatus.VALID
    assert store.prune() == 1
    assert len(store) == 1
