"""Domain models shared by queue, worker, coordinator and single-node mode."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

from batchmesh.logging_setup import mask_identity

if TYPE_CHECKING:
    from batchmesh.coordinator.metrics import MetricsSnapshot


class ResultStatus(str, Enum):
    VALID = "VALID"
    INVALID = "INVALID"
    BLOCKED = "BLOCKED"
    ERROR = "ERROR"


SKIPPABLE_STATUSES: tuple[ResultStatus, ...] = (
    ResultStatus.VALID,
    ResultStatus.INVALID,
    ResultStatus.BLOCKED,
    ResultStatus.ERROR,
)


@dataclass(frozen=True, slots=True)
class Credential:
    """One batch item: a username/password pair to verify."""

    username: str
    password: str

    @property
    def identity(self) -> str:
        """Stable fingerprint used in broker keys instead of the raw secret."""

        return hashlib.sha256(f"{self.username}:{self.password}".encode()).hexdigest()

    @property
    def masked(self) -> str:
        return mask_identity(self.username)

    @classmethod
    def parse(cls, line: str) -> Credential | None:
        """Parse ``username:password``; blank and malformed lines yield None."""

        text = line.strip()
        if not text or text.startswith("#"):
            return None
        username, sep, password = text.partition(":")
        if not sep or not username or not password:
            return None
        return cls(username=username.strip(), password=password.strip())

    def to_payload(self) -> dict[str, str]:
        return {"username": self.username, "password": self.password}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Credential:
        return cls(username=str(payload["username"]), password=str(payload["password"]))


@dataclass(frozen=True, slots=True)
class ProxyAssignment:
    proxy_id: str
    url: str


@dataclass(slots=True)
class Task:
    """Unit of work derived from one batch item."""

    task_id: str
    batch_id: str
    credential: Credential
    proxy: ProxyAssignment | None = None
    retry_count: int = 0
    created_at: float = 0.0
    batch_type: str = "default"
    last_error_code: str | None = None
    retry_at: float | None = None

    def for_retry(self, *, error_code: str, now: float) -> Task:
        return replace(
            self,
            retry_count=self.retry_count + 1,
            last_error_code=error_code,
            retry_at=now,
        )

    def to_json(self) -> str:
        return json.dumps(
            {
                "task_id": self.task_id,
                "batch_id": self.batch_id,
                "credential": self.credential.to_payload(),
                "proxy": (
                    None
                    if self.proxy is None
                    else {"proxy_id": self.proxy.proxy_id, "url": self.proxy.url}
                ),
                "retry_count": self.retry_count,
                "created_at": self.created_at,
                "batch_type": self.batch_type,
                "last_error_code": self.last_error_code,
                "retry_at": self.retry_at,
            },
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: str) -> Task:
        """Decode a queued task; raises ValueError for malformed payloads."""

        try:
            payload = json.loads(raw)
            proxy_raw = payload.get("proxy")
            return cls(
                task_id=str(payload["task_id"]),
                batch_id=str(payload["batch_id"]),
                credential=Credential.from_payload(payload["credential"]),
                proxy=(
                    None
                    if not proxy_raw
                    else ProxyAssignment(
                        proxy_id=str(proxy_raw["proxy_id"]),
                        url=str(proxy_raw["url"]),
                    )
                ),
                retry_count=int(payload.get("retry_count", 0)),
                created_at=float(payload.get("created_at", 0.0)),
                batch_type=str(payload.get("batch_type", "default")),
                last_error_code=payload.get("last_error_code"),
                retry_at=payload.get("retry_at"),
            )
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as error:
            raise ValueError(f"Malformed task payload: {error}") from error


@dataclass(slots=True)
class ResultRecord:
    """Persisted terminal outcome for one credential."""

    status: ResultStatus
    identity: str
    username: str
    batch_id: str
    task_id: str
    worker_id: str
    checked_at: float
    error_code: str | None = None
    aux_data: dict[str, Any] | None = None

    def to_json(self) -> str:
        return json.dumps(
            {
                "status": self.status.value,
                "identity": self.identity,
                "username": self.username,
                "batch_id": self.batch_id,
                "task_id": self.task_id,
                "worker_id": self.worker_id,
                "checked_at": self.checked_at,
                "error_code": self.error_code,
                "aux_data": self.aux_data,
            },
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: str) -> ResultRecord:
        payload = json.loads(raw)
        return cls(
            status=ResultStatus(payload["status"]),
            identity=str(payload["identity"]),
            username=str(payload.get("username", "")),
            batch_id=str(payload.get("batch_id", "")),
            task_id=str(payload.get("task_id", "")),
            worker_id=str(payload.get("worker_id", "")),
            checked_at=float(payload.get("checked_at", 0.0)),
            error_code=payload.get("error_code"),
            aux_data=payload.get("aux_data"),
        )


@dataclass(frozen=True, slots=True)
class NotifyTarget:
    """Where progress and summary messages for a batch go."""

    chat_id: str


@dataclass(slots=True)
class BatchOptions:
    target: NotifyTarget | None = None
    batch_type: str = "default"


@dataclass(frozen=True, slots=True)
class CachedCredential:
    """A submitted item skipped at enqueue time.

    ``cached_status`` is None for a duplicate inside the same submission.
    """

    credential: Credential
    cached_status: ResultStatus | None

    def __repr__(self) -> str:
        status = None if self.cached_status is None else self.cached_status.value
        return f"CachedCredential(username={self.credential.masked!r}, cached_status={status!r})"


@dataclass(frozen=True, slots=True)
class EnqueueResult:
    queued: int
    cached: int
    cached_credentials: tuple[CachedCredential, ...] = ()


@dataclass(frozen=True, slots=True)
class CancelResult:
    drained: int


@dataclass(slots=True)
class QueueStats:
    main_queue: int = 0
    retry_queue: int = 0
    by_batch: dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.main_queue + self.retry_queue


@dataclass(slots=True)
class ProgressRecord:
    """Durable per-batch progress header."""

    batch_id: str
    total: int
    start_time: float
    target: NotifyTarget | None = None
    message_id: str | None = None
    batch_type: str = "default"
    aborted: bool = False

    def to_json(self) -> str:
        return json.dumps(
            {
                "batch_id": self.batch_id,
                "total": self.total,
                "start_time": self.start_time,
                "chat_id": None if self.target is None else self.target.chat_id,
                "message_id": self.message_id,
                "batch_type": self.batch_type,
                "aborted": self.aborted,
            },
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: str) -> ProgressRecord:
        payload = json.loads(raw)
        chat_id = payload.get("chat_id")
        return cls(
            batch_id=str(payload["batch_id"]),
            total=int(payload.get("total", 0)),
            start_time=float(payload.get("start_time", 0.0)),
            target=None if chat_id is None else NotifyTarget(chat_id=str(chat_id)),
            message_id=payload.get("message_id"),
            batch_type=str(payload.get("batch_type", "default")),
            aborted=bool(payload.get("aborted", False)),
        )


@dataclass(slots=True)
class ProgressSnapshot:
    batch_id: str
    total: int
    completed: int
    counts: dict[str, int]
    aborted: bool = False

    @property
    def is_complete(self) -> bool:
        return self.completed >= self.total


@dataclass(frozen=True, slots=True)
class WorkerHealth:
    worker_id: str
    last_seen_seconds_ago: float
    alive: bool


@dataclass(frozen=True, slots=True)
class ProxyHealth:
    proxy_id: str
    url: str
    healthy: bool
    consecutive_failures: int


@dataclass(slots=True)
class SystemStatus:
    """Read-only snapshot returned by ``get_system_status``."""

    mode: str
    instance_id: str
    uptime_seconds: float
    running: bool
    queue: QueueStats
    workers: list[WorkerHealth] = field(default_factory=list)
    proxies: list[ProxyHealth] = field(default_factory=list)
    active_batches: int = 0
    metrics: MetricsSnapshot | None = None
