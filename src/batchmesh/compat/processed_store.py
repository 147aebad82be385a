"""Append-only JSONL result cache used when no shared broker is configured."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from batchmesh.models import ResultStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Entry:
    status: ResultStatus
    ts: float


class ProcessedStore:
    """Maps credential fingerprints to their last terminal status.

    Each ``mark`` appends one line; ``hydrate`` and ``prune`` rewrite the file
    without expired or unreadable lines.
    """

    def __init__(
        self,
        path: Path,
        *,
        ttl_seconds: float = 7 * 24 * 3_600,
        error_ttl_seconds: float = 24 * 3_600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = path
        self.ttl_seconds = ttl_seconds
        self.error_ttl_seconds = error_ttl_seconds
        self._clock = clock
        self._cache: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def hydrate(self) -> int:
        """Load the file into memory; returns the number of live entries."""

        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.write_text("", encoding="utf-8")
        now = self._clock()
        pruned = False
        with self._lock:
            self._cache.clear()
            for line in self.path.read_text(encoding="utf-8").splitlines():
                if not line.strip():
                    continue
                try:
                    payload = json.loads(line)
                    key = str(payload["key"])
                    entry = _Entry(status=ResultStatus(payload["status"]), ts=float(payload["ts"]))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                    pruned = True
                    continue
                if self._expired(entry, now):
                    pruned = True
                    continue
                self._cache[key] = entry
            if pruned:
                self._rewrite()
            count = len(self._cache)
        logger.info("Processed store hydrated: %d entries from %s", count, self.path)
        return count

    def get(self, identity: str) -> ResultStatus | None:
        with self._lock:
            entry = self._cache.get(identity)
            if entry is None or self._expired(entry, self._clock()):
                return None
            return entry.status

    def mark(self, identity: str, status: ResultStatus) -> None:
        entry = _Entry(status=status, ts=self._clock())
        line = json.dumps({"key": identity, "status": status.value, "ts": entry.ts})
        with self._lock:
            self._cache[identity] = entry
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")

    def prune(self) -> int:
        """Drop expired entries and rewrite the file; returns how many were removed."""

        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._cache.items() if self._expired(entry, now)]
            for key in expired:
                del self._cache[key]
            if expired:
                self._rewrite()
        return len(expired)

    def _expired(self, entry: _Entry, now: float) -> bool:
        ttl = self.error_ttl_seconds if entry.status == ResultStatus.ERROR else self.ttl_seconds
        return now - entry.ts > ttl

    def _rewrite(self) -> None:
        temp_path = self.path.with_suffix(".tmp")
        with temp_path.open("w", encoding="utf-8") as handle:
            for key, entry in self._cache.items():
                handle.write(json.dumps({"key": key, "status": entry.status.value, "ts": entry.ts}) + "\n")
        temp_path.replace(self.path)
