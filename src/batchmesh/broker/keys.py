"""Broker key and channel naming."""

from __future__ import annotations

import hashlib
import secrets
import time

TASK_QUEUE = "queue:tasks"
RETRY_QUEUE = "queue:retry"

FORWARD_EVENTS = "forward_events"
UPDATE_EVENTS = "update_events"
WORKER_HEARTBEATS = "worker_heartbeats"

COORDINATOR_HEARTBEAT = "coordinator:heartbeat"

METRICS_COUNTERS = "metrics:counters"
METRICS_RECENT_RESULTS = "metrics:recent"
METRICS_DURATIONS = "metrics:durations"

LEASE_SHADOW_PATTERN = "job-shadow:*"
PROGRESS_PATTERN = "progress:*"
WORKER_HEARTBEAT_PATTERN = "worker:*:heartbeat"
FORWARD_PENDING_PATTERN = "forward:pending:*"
PROXY_HEALTH_PATTERN = "proxy:*:health"

TRACKING_CODE_PREFIX = "BM-"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def lease_key(batch_id: str, task_id: str) -> str:
    return f"job:{batch_id}:{task_id}"


def lease_shadow_key(batch_id: str, task_id: str) -> str:
    return f"job-shadow:{batch_id}:{task_id}"


def result_key(status: str, identity: str) -> str:
    return f"result:{status}:{identity}"


def progress_key(batch_id: str) -> str:
    return f"progress:{batch_id}"


def progress_count_key(batch_id: str) -> str:
    return f"progress:{batch_id}:count"


def progress_counts_key(batch_id: str) -> str:
    return f"progress:{batch_id}:counts"


def progress_valid_key(batch_id: str) -> str:
    return f"progress:{batch_id}:valid"


def progress_done_key(batch_id: str, task_id: str) -> str:
    return f"progress:{batch_id}:done:{task_id}"


def progress_done_pattern(batch_id: str) -> str:
    return f"progress:{batch_id}:done:*"


def progress_finalized_key(batch_id: str) -> str:
    return f"progress:{batch_id}:finalized"


def batch_id_from_progress_key(key: str) -> str | None:
    """Return the batch id for a progress record key, None for its sub-keys."""

    prefix, _, rest = key.partition(":")
    if prefix != "progress" or not rest or ":" in rest:
        return None
    return rest


def batch_cancelled_key(batch_id: str) -> str:
    return f"batch:{batch_id}:cancelled"


def worker_heartbeat_key(worker_id: str) -> str:
    return f"worker:{worker_id}:heartbeat"


def worker_info_key(worker_id: str) -> str:
    return f"worker:{worker_id}:info"


def worker_id_from_heartbeat_key(key: str) -> str:
    return key.removeprefix("worker:").removesuffix(":heartbeat")


def coordinator_lock_key(operation: str) -> str:
    return f"coordinator:lock:{operation}"


def proxy_health_key(proxy_id: str) -> str:
    return f"proxy:{proxy_id}:health"


def forward_pending_key(tracking_code: str) -> str:
    return f"forward:pending:{tracking_code}"


def forward_reserved_key(identity: str) -> str:
    return f"forward:reserved:{identity}"


def message_ref_key(tracking_code: str) -> str:
    return f"msg:{tracking_code}"


def message_reverse_key(identity: str) -> str:
    return f"msg:cred:{identity}"


def tracking_code(identity: str) -> str:
    """Deterministic short code correlating an outward message with its credential."""

    digest = hashlib.sha256(identity.encode("utf-8")).hexdigest()
    return f"{TRACKING_CODE_PREFIX}{digest[:8].upper()}"


def task_id_for(batch_id: str, index: int) -> str:
    return f"{batch_id}-{index:04d}"


def new_batch_id() -> str:
    """Base-36 millisecond timestamp plus a random suffix."""

    return f"{_to_base36(int(time.time() * 1000))}{secrets.token_hex(3)}"


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))
