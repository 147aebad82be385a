"""Shared broker: keys with TTL, counters, lists and pub/sub."""

from __future__ import annotations

from collections.abc import Callable

from batchmesh.broker.base import Broker
from batchmesh.broker.pubsub import BrokerMessageView, Subscription
from batchmesh.broker.sqlite_broker import SQLiteBroker
from batchmesh.config import BrokerSettings


def open_broker(settings: BrokerSettings, *, clock: Callable[[], float] | None = None) -> SQLiteBroker:
    """Open the configured broker file and bring its schema to head."""

    if settings.db_path is None:
        raise ValueError("BATCHMESH_BROKER_PATH is not set; use single-node mode instead.")
    broker = SQLiteBroker(
        settings.db_path,
        busy_timeout_ms=settings.busy_timeout_ms,
        poll_interval_seconds=settings.poll_interval_seconds,
        message_retention_seconds=settings.message_retention_seconds,
        clock=clock,
    )
    broker.init_schema()
    return broker


__all__ = [
    "Broker",
    "BrokerMessageView",
    "SQLiteBroker",
    "Subscription",
    "open_broker",
]
