"""Token-owned distributed locks on top of broker set-if-absent."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from uuid import uuid4

from batchmesh.broker import keys
from batchmesh.broker.base import Broker
from batchmesh.errors import LockNotAcquiredError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LockHandle:
    operation: str
    key: str
    token: str


class DistributedLock:
    """Short-lived administrative locks; only the owner's token can release."""

    def __init__(self, broker: Broker, *, owner_id: str, default_ttl_seconds: int = 10) -> None:
        self._broker = broker
        self.owner_id = owner_id
        self.default_ttl_seconds = default_ttl_seconds

    def acquire(self, operation: str, *, ttl: int | None = None) -> LockHandle | None:
        key = keys.coordinator_lock_key(operation)
        token = f"{self.owner_id}:{uuid4().hex}"
        acquired = self._broker.set_if_absent(
            key,
            token,
            ttl=ttl if ttl is not None else self.default_ttl_seconds,
        )
        if not acquired:
            logger.debug("Lock %s busy", operation)
            return None
        return LockHandle(operation=operation, key=key, token=token)

    def release(self, handle: LockHandle) -> bool:
        released = self._broker.compare_and_delete(handle.key, handle.token)
        if not released:
            logger.warning("Lock %s expired before release", handle.operation)
        return released

    @contextmanager
    def hold(self, operation: str, *, ttl: int | None = None) -> Iterator[LockHandle]:
        handle = self.acquire(operation, ttl=ttl)
        if handle is None:
            raise LockNotAcquiredError(operation)
        try:
            yield handle
        finally:
            self.release(handle)
