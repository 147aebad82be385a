"""Deterministic processor and enricher used by the CLI demo and tests."""

from __future__ import annotations

import hashlib
import time
from typing import Any

from batchmesh.models import Credential, ResultStatus
from batchmesh.worker.processor import ProcessOutcome

_HASHED_STATUSES = (ResultStatus.VALID, ResultStatus.INVALID, ResultStatus.BLOCKED)


class EchoProcessor:
    """Derives an outcome from the username alone.

    Usernames starting with ``valid``, ``invalid``, ``blocked``, ``error``
    (transient failure), ``fail`` (non-retryable failure) or ``raise``
    (processor exception) force that outcome. Any other username maps to
    VALID, INVALID or BLOCKED through its hash.
    """

    def __init__(self, *, delay_seconds: float = 0.0) -> None:
        self.delay_seconds = delay_seconds
        self.calls = 0

    def process(self, credential: Credential, proxy_url: str | None) -> ProcessOutcome:
        self.calls += 1
        if self.delay_seconds > 0:
            time.sleep(self.delay_seconds)
        name = credential.username.lower()
        if name.startswith("invalid"):
            return ProcessOutcome(status=ResultStatus.INVALID)
        if name.startswith("valid"):
            return ProcessOutcome(
                status=ResultStatus.VALID,
                session={"username": credential.username, "proxy": proxy_url},
            )
        if name.startswith("blocked"):
            return ProcessOutcome(status=ResultStatus.BLOCKED)
        if name.startswith("error"):
            return ProcessOutcome(
                status=ResultStatus.ERROR,
                error_code="NETWORK_ERROR",
                detail="simulated network error",
            )
        if name.startswith("fail"):
            return ProcessOutcome(
                status=ResultStatus.ERROR,
                error_code="INVALID_INPUT",
                detail="simulated non-retryable failure",
            )
        if name.startswith("raise"):
            raise RuntimeError(f"simulated processor crash for {credential.masked}")
        digest = hashlib.sha256(credential.identity.encode("utf-8")).digest()
        status = _HASHED_STATUSES[digest[0] % len(_HASHED_STATUSES)]
        session = {"username": credential.username, "proxy": proxy_url}
        return ProcessOutcome(status=status, session=session if status == ResultStatus.VALID else None)


class EchoEnricher:
    """Returns a small reference record for sessions that carry a username."""

    def enrich(self, session: Any) -> dict[str, Any] | None:
        if not isinstance(session, dict) or not session.get("username"):
            return None
        reference = hashlib.sha256(str(session["username"]).encode("utf-8")).hexdigest()[:10]
        return {"reference": reference, "source": "echo"}
