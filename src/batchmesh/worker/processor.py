"""Collaborator contracts consumed by the worker."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from batchmesh.models import Credential, ResultStatus


@dataclass(slots=True)
class ProcessOutcome:
    """What the task processor reports for one credential.

    ``session`` is opaque to the worker; it is handed to the enricher for
    VALID outcomes only.
    """

    status: ResultStatus
    error_code: str | None = None
    detail: str | None = None
    session: Any = None


class TaskProcessor(Protocol):
    def process(self, credential: Credential, proxy_url: str | None) -> ProcessOutcome: ...


class Enricher(Protocol):
    def enrich(self, session: Any) -> dict[str, Any] | None: ...
