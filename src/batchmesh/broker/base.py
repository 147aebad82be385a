"""Broker contract consumed by queue, worker, coordinator and forwarder."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any, Protocol

from batchmesh.broker.pubsub import Subscription


class Broker(Protocol):
    """Key/list/pub-sub store with per-key TTL.

    Every method is atomic on its own. There are no multi-key transactions.
    """

    def now(self) -> float: ...

    def get(self, key: str) -> str | None: ...

    def mget(self, keys: Sequence[str]) -> list[str | None]: ...

    def set(self, key: str, value: str, *, ttl: float | None = None) -> None: ...

    def set_if_absent(self, key: str, value: str, *, ttl: float | None = None) -> bool: ...

    def delete(self, *keys: str) -> int: ...

    def compare_and_delete(self, key: str, expected: str) -> bool: ...

    def exists(self, key: str) -> bool: ...

    def expire(self, key: str, ttl: float) -> bool: ...

    def ttl(self, key: str) -> int: ...

    def scan(self, pattern: str) -> list[str]: ...

    def incr(self, key: str, amount: int = 1, *, ttl: float | None = None) -> int: ...

    def hincrby(self, key: str, field: str, amount: int = 1, *, ttl: float | None = None) -> int: ...

    def hgetall(self, key: str) -> dict[str, int]: ...

    def rpush(self, key: str, *values: str, ttl: float | None = None) -> int: ...

    def lpop(self, key: str) -> str | None: ...

    def blpop(self, keys: Sequence[str], timeout: float) -> tuple[str, str] | None: ...

    def lrange(self, key: str) -> list[str]: ...

    def llen(self, key: str) -> int: ...

    def filter_list(self, key: str, keep: Callable[[str], bool]) -> int: ...

    def trim_list(self, key: str, max_length: int) -> int: ...

    def publish(self, channel: str, payload: dict[str, Any]) -> int: ...

    def subscribe(self, channel: str) -> Subscription: ...

    def purge_expired(self) -> int: ...

    def close(self) -> None: ...
