"""Plain-text rendering for progress, summary and forwarded messages."""

from __future__ import annotations

from typing import Any

from batchmesh.logging_setup import mask_identity
from batchmesh.models import SKIPPABLE_STATUSES, ProgressRecord, ProgressSnapshot

_BAR_WIDTH = 20


def format_progress(record: ProgressRecord, snapshot: ProgressSnapshot, *, elapsed: float) -> str:
    percent = 0 if snapshot.total <= 0 else int(snapshot.completed * 100 / snapshot.total)
    filled = 0 if snapshot.total <= 0 else int(_BAR_WIDTH * snapshot.completed / snapshot.total)
    bar = "#" * filled + "-" * (_BAR_WIDTH - filled)
    return "\n".join(
        [
            f"Batch {record.batch_id} ({record.batch_type})",
            f"[{bar}] {snapshot.completed}/{snapshot.total} ({percent}%)",
            _counts_line(snapshot.counts),
            f"Elapsed: {_format_duration(elapsed)}",
        ],
    )


def format_summary(
    record: ProgressRecord,
    snapshot: ProgressSnapshot,
    *,
    elapsed: float,
    qualifying: int,
) -> str:
    return "\n".join(
        [
            f"Batch {record.batch_id} complete",
            f"Processed: {snapshot.completed}/{snapshot.total}",
            _counts_line(snapshot.counts),
            f"Qualifying: {qualifying}",
            f"Duration: {_format_duration(elapsed)}",
        ],
    )


def format_aborted(record: ProgressRecord, snapshot: ProgressSnapshot, *, elapsed: float) -> str:
    return "\n".join(
        [
            f"Batch {record.batch_id} aborted",
            f"Processed before abort: {snapshot.completed}/{snapshot.total}",
            _counts_line(snapshot.counts),
            f"Duration: {_format_duration(elapsed)}",
        ],
    )


def format_forward(
    *,
    tracking_code: str,
    username: str,
    batch_id: str,
    aux_data: dict[str, Any] | None,
) -> str:
    lines = [
        f"Qualifying result {tracking_code}",
        f"Account: {mask_identity(username)}",
        f"Batch: {batch_id}",
    ]
    for name, value in sorted((aux_data or {}).items()):
        lines.append(f"{name}: {_compact(value)}")
    return "\n".join(lines)


def format_status_change(*, tracking_code: str, username: str, status: str) -> str:
    return "\n".join(
        [
            f"Result {tracking_code} changed",
            f"Account: {mask_identity(username)}",
            f"Status: {status}",
        ],
    )


def _counts_line(counts: dict[str, int]) -> str:
    return " | ".join(f"{status.value}: {counts.get(status.value, 0)}" for status in SKIPPABLE_STATUSES)


def _format_duration(seconds: float) -> str:
    total = max(0, int(seconds))
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def _compact(value: Any, *, limit: int = 120) -> str:
    if isinstance(value, (list, tuple)):
        text = ", ".join(str(item) for item in value)
    elif isinstance(value, dict):
        text = ", ".join(f"{key}={item}" for key, item in sorted(value.items()))
    else:
        text = str(value)
    if len(text) <= limit:
        return text
    return f"{text[: limit - 3]}..."
