"""Shared broker backed by a single SQLite file."""

from __future__ import annotations

import json
import logging
import math
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import delete, func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, col, select

from batchmesh.broker.pubsub import BrokerMessageView, Subscription, decode_payload
from batchmesh.errors import BrokerError, BrokerUnavailableError
from batchmesh.storage.alembic_runner import upgrade_head
from batchmesh.storage.common import build_sqlite_engine
from batchmesh.storage.tables import (
    KIND_HASH,
    KIND_LIST,
    KIND_STRING,
    BrokerHashField,
    BrokerKey,
    BrokerListItem,
    BrokerMessage,
)

logger = logging.getLogger(__name__)

_IN_CLAUSE_CHUNK = 500
_TRANSIENT_MARKERS = ("database is locked", "database table is locked", "busy")


class SQLiteBroker:
    """Broker facade over SQLModel + SQLite.

    Each write operation opens its transaction with a DELETE of expired rows
    for the touched keys, which takes SQLite's write lock up front. The
    read-modify-write that follows is therefore serialized across processes
    sharing the file.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 10_000,
        poll_interval_seconds: float = 0.05,
        message_retention_seconds: int = 300,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.db_path = db_path
        self.poll_interval_seconds = poll_interval_seconds
        self.message_retention_seconds = message_retention_seconds
        self._clock = clock or time.time
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def init_schema(self) -> None:
        """Run schema migrations."""

        try:
            upgrade_head(self.db_path)
        except OperationalError as error:
            raise _translate_error(error) from error

    def close(self) -> None:
        self.engine.dispose()

    def now(self) -> float:
        return self._clock()

    # -- plain keys -----------------------------------------------------------

    def get(self, key: str) -> str | None:
        now = self.now()
        with self._session() as session:
            return session.exec(
                select(BrokerKey.value).where(
                    BrokerKey.key == key,
                    BrokerKey.kind == KIND_STRING,
                    _live(now),
                ),
            ).first()

    def mget(self, keys: Sequence[str]) -> list[str | None]:
        if not keys:
            return []
        now = self.now()
        found: dict[str, str | None] = {}
        with self._session() as session:
            for chunk in _chunks(list(dict.fromkeys(keys)), _IN_CLAUSE_CHUNK):
                rows = session.exec(
                    select(BrokerKey.key, BrokerKey.value).where(
                        col(BrokerKey.key).in_(chunk),
                        BrokerKey.kind == KIND_STRING,
                        _live(now),
                    ),
                ).all()
                for row_key, row_value in rows:
                    found[row_key] = row_value
        return [found.get(key) for key in keys]

    def set(self, key: str, value: str, *, ttl: float | None = None) -> None:
        now = self.now()
        with self._session() as session:
            session.execute(delete(BrokerKey).where(col(BrokerKey.key) == key))
            session.add(
                BrokerKey(key=key, kind=KIND_STRING, value=value, expires_at=_expiry(now, ttl)),
            )
            session.commit()

    def set_if_absent(self, key: str, value: str, *, ttl: float | None = None) -> bool:
        """Create ``key`` only when no live value exists. Returns True on creation."""

        now = self.now()
        with self._session() as session:
            self._purge(session, [key], now)
            result = session.execute(
                sqlite_insert(BrokerKey)
                .values(key=key, kind=KIND_STRING, value=value, expires_at=_expiry(now, ttl))
                .on_conflict_do_nothing(index_elements=["key"]),
            )
            session.commit()
            return result.rowcount == 1

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        now = self.now()
        removed = 0
        with self._session() as session:
            for chunk in _chunks(list(dict.fromkeys(keys)), _IN_CLAUSE_CHUNK):
                result = session.execute(
                    delete(BrokerKey).where(col(BrokerKey.key).in_(chunk), _live(now)),
                )
                removed += result.rowcount
                session.execute(delete(BrokerKey).where(col(BrokerKey.key).in_(chunk)))
            session.commit()
        return removed

    def compare_and_delete(self, key: str, expected: str) -> bool:
        """Delete ``key`` only while it still holds ``expected``."""

        now = self.now()
        with self._session() as session:
            self._purge(session, [key], now)
            result = session.execute(
                delete(BrokerKey).where(
                    col(BrokerKey.key) == key,
                    col(BrokerKey.value) == expected,
                ),
            )
            session.commit()
            return result.rowcount == 1

    def exists(self, key: str) -> bool:
        now = self.now()
        with self._session() as session:
            count = session.exec(
                select(func.count()).select_from(BrokerKey).where(BrokerKey.key == key, _live(now)),
            ).one()
            return count > 0

    def expire(self, key: str, ttl: float) -> bool:
        now = self.now()
        with self._session() as session:
            self._purge(session, [key], now)
            result = session.execute(
                sa_update(BrokerKey)
                .where(col(BrokerKey.key) == key)
                .values(expires_at=_expiry(now, ttl)),
            )
            session.commit()
            return result.rowcount == 1

    def ttl(self, key: str) -> int:
        """Seconds to live; -1 when the key never expires, -2 when it is missing."""

        now = self.now()
        with self._session() as session:
            row = session.exec(
                select(BrokerKey.key, BrokerKey.expires_at).where(
                    BrokerKey.key == key,
                    _live(now),
                ),
            ).first()
        if row is None:
            return -2
        _, expires_at = row
        if expires_at is None:
            return -1
        return max(0, math.ceil(expires_at - now))

    def scan(self, pattern: str) -> list[str]:
        """Live keys matching a glob pattern, sorted."""

        now = self.now()
        with self._session() as session:
            rows = session.exec(
                select(BrokerKey.key)
                .where(col(BrokerKey.key).op("GLOB")(pattern), _live(now))
                .order_by(col(BrokerKey.key)),
            ).all()
        return list(rows)

    # -- counters -------------------------------------------------------------

    def incr(self, key: str, amount: int = 1, *, ttl: float | None = None) -> int:
        """Atomic counter; ``ttl`` only applies when the counter is created."""

        now = self.now()
        with self._session() as session:
            self._purge(session, [key], now)
            current = session.exec(select(BrokerKey).where(BrokerKey.key == key)).first()
            if current is None:
                value = amount
                session.add(
                    BrokerKey(
                        key=key,
                        kind=KIND_STRING,
                        value=str(value),
                        expires_at=_expiry(now, ttl),
                    ),
                )
            else:
                if current.kind != KIND_STRING:
                    raise BrokerError(f"Key {key!r} holds a {current.kind}, not a counter.")
                try:
                    value = int(current.value or 0) + amount
                except ValueError as error:
                    raise BrokerError(f"Value at {key!r} is not an integer.") from error
                current.value = str(value)
                session.add(current)
            session.commit()
            return value

    def hincrby(
        self,
        key: str,
        field: str,
        amount: int = 1,
        *,
        ttl: float | None = None,
    ) -> int:
        now = self.now()
        with self._session() as session:
            self._purge(session, [key], now)
            self._ensure_container(session, key=key, kind=KIND_HASH, now=now, ttl=ttl)
            row = session.exec(
                select(BrokerHashField).where(
                    BrokerHashField.key == key,
                    BrokerHashField.field == field,
                ),
            ).first()
            if row is None:
                row = BrokerHashField(key=key, field=field, value=amount)
            else:
                row.value += amount
            session.add(row)
            session.commit()
            return row.value

    def hgetall(self, key: str) -> dict[str, int]:
        now = self.now()
        with self._session() as session:
            rows = session.exec(
                select(BrokerHashField.field, BrokerHashField.value)
                .join(BrokerKey, col(BrokerKey.key) == col(BrokerHashField.key))
                .where(BrokerHashField.key == key, _live(now)),
            ).all()
        return {field: value for field, value in rows}

    # -- lists ----------------------------------------------------------------

    def rpush(self, key: str, *values: str, ttl: float | None = None) -> int:
        now = self.now()
        with self._session() as session:
            self._purge(session, [key], now)
            self._ensure_container(session, key=key, kind=KIND_LIST, now=now, ttl=ttl)
            if values:
                session.execute(
                    sqlite_insert(BrokerListItem),
                    [{"key": key, "value": value} for value in values],
                )
            length = self._list_length(session, key)
            session.commit()
            return length

    def lpop(self, key: str) -> str | None:
        now = self.now()
        with self._session() as session:
            self._purge(session, [key], now)
            item = session.exec(
                select(BrokerListItem)
                .where(BrokerListItem.key == key)
                .order_by(col(BrokerListItem.item_id))
                .limit(1),
            ).first()
            if item is None:
                session.commit()
                return None
            value = item.value
            session.delete(item)
            session.flush()
            if self._list_length(session, key) == 0:
                session.execute(delete(BrokerKey).where(col(BrokerKey.key) == key))
            session.commit()
            return value

    def blpop(self, keys: Sequence[str], timeout: float) -> tuple[str, str] | None:
        """Pop from the first non-empty list, polling until ``timeout`` elapses."""

        deadline = time.monotonic() + max(0.0, timeout)
        while True:
            for key in keys:
                value = self.lpop(key)
                if value is not None:
                    return key, value
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(self.poll_interval_seconds, remaining))

    def lrange(self, key: str) -> list[str]:
        now = self.now()
        with self._session() as session:
            rows = session.exec(
                select(BrokerListItem.value)
                .join(BrokerKey, col(BrokerKey.key) == col(BrokerListItem.key))
                .where(BrokerListItem.key == key, _live(now))
                .order_by(col(BrokerListItem.item_id)),
            ).all()
        return list(rows)

    def llen(self, key: str) -> int:
        now = self.now()
        with self._session() as session:
            if not self._is_live(session, key, now):
                return 0
            return self._list_length(session, key)

    def filter_list(self, key: str, keep: Callable[[str], bool]) -> int:
        """Drop items for which ``keep`` is false in one transaction. Returns removed count."""

        now = self.now()
        with self._session() as session:
            self._purge(session, [key], now)
            rows = session.exec(
                select(BrokerListItem.item_id, BrokerListItem.value).where(
                    BrokerListItem.key == key,
                ),
            ).all()
            doomed = [item_id for item_id, value in rows if not keep(value)]
            for start in range(0, len(doomed), _IN_CLAUSE_CHUNK):
                session.execute(
                    delete(BrokerListItem).where(
                        col(BrokerListItem.item_id).in_(doomed[start : start + _IN_CLAUSE_CHUNK]),
                    ),
                )
            if doomed and len(doomed) == len(rows):
                session.execute(delete(BrokerKey).where(col(BrokerKey.key) == key))
            session.commit()
            return len(doomed)

    def trim_list(self, key: str, max_length: int) -> int:
        """Keep the newest ``max_length`` items. Returns removed count."""

        if max_length <= 0:
            raise ValueError("max_length must be > 0.")
        now = self.now()
        with self._session() as session:
            self._purge(session, [key], now)
            oldest_kept = session.exec(
                select(BrokerListItem.item_id)
                .where(BrokerListItem.key == key)
                .order_by(col(BrokerListItem.item_id).desc())
                .offset(max_length - 1)
                .limit(1),
            ).first()
            if oldest_kept is None:
                session.commit()
                return 0
            result = session.execute(
                delete(BrokerListItem).where(
                    col(BrokerListItem.key) == key,
                    col(BrokerListItem.item_id) < oldest_kept,
                ),
            )
            session.commit()
            return result.rowcount

    # -- pub/sub --------------------------------------------------------------

    def publish(self, channel: str, payload: dict[str, Any]) -> int:
        now = self.now()
        with self._session() as session:
            session.execute(
                delete(BrokerMessage).where(
                    col(BrokerMessage.published_at) < now - self.message_retention_seconds,
                ),
            )
            message = BrokerMessage(
                channel=channel,
                payload=json.dumps(payload, sort_keys=True),
                published_at=now,
            )
            session.add(message)
            session.commit()
            session.refresh(message)
            return int(message.message_id or 0)

    def subscribe(self, channel: str) -> Subscription:
        return Subscription(
            source=self,
            channel=channel,
            poll_interval_seconds=max(self.poll_interval_seconds, 0.05),
        )

    def fetch_messages(self, channel: str, *, after_id: int) -> list[BrokerMessageView]:
        with self._session() as session:
            rows = session.exec(
                select(BrokerMessage)
                .where(BrokerMessage.channel == channel, col(BrokerMessage.message_id) > after_id)
                .order_by(col(BrokerMessage.message_id)),
            ).all()
            return [
                BrokerMessageView(
                    message_id=int(row.message_id or 0),
                    channel=row.channel,
                    payload=decode_payload(row.payload),
                    published_at=row.published_at,
                )
                for row in rows
            ]

    def latest_message_id(self, channel: str) -> int:
        with self._session() as session:
            value = session.exec(
                select(func.max(BrokerMessage.message_id)).where(BrokerMessage.channel == channel),
            ).one()
        return int(value or 0)

    # -- housekeeping ---------------------------------------------------------

    def purge_expired(self) -> int:
        """Physically remove expired keys and old pub/sub messages."""

        now = self.now()
        with self._session() as session:
            result = session.execute(
                delete(BrokerKey).where(
                    col(BrokerKey.expires_at).is_not(None),
                    col(BrokerKey.expires_at) <= now,
                ),
            )
            session.execute(
                delete(BrokerMessage).where(
                    col(BrokerMessage.published_at) < now - self.message_retention_seconds,
                ),
            )
            session.commit()
            return result.rowcount

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except OperationalError as error:
            raise _translate_error(error) from error

    def _purge(self, session: Session, keys: Sequence[str], now: float) -> None:
        session.execute(
            delete(BrokerKey).where(
                col(BrokerKey.key).in_(list(keys)),
                col(BrokerKey.expires_at).is_not(None),
                col(BrokerKey.expires_at) <= now,
            ),
        )

    def _ensure_container(
        self,
        session: Session,
        *,
        key: str,
        kind: str,
        now: float,
        ttl: float | None,
    ) -> None:
        existing = session.exec(select(BrokerKey.kind).where(BrokerKey.key == key)).first()
        if existing is None:
            session.add(BrokerKey(key=key, kind=kind, value=None, expires_at=_expiry(now, ttl)))
            session.flush()
            return
        if existing != kind:
            raise BrokerError(f"Key {key!r} holds a {existing}, not a {kind}.")

    def _is_live(self, session: Session, key: str, now: float) -> bool:
        count = session.exec(
            select(func.count()).select_from(BrokerKey).where(BrokerKey.key == key, _live(now)),
        ).one()
        return count > 0

    def _list_length(self, session: Session, key: str) -> int:
        return session.exec(
            select(func.count()).select_from(BrokerListItem).where(BrokerListItem.key == key),
        ).one()


def _live(now: float):
    return or_(col(BrokerKey.expires_at).is_(None), col(BrokerKey.expires_at) > now)


def _expiry(now: float, ttl: float | None) -> float | None:
    if ttl is None:
        return None
    return now + ttl


def _chunks(values: list[str], size: int) -> Iterator[list[str]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def _translate_error(error: OperationalError) -> BrokerError:
    message = str(error).lower()
    if any(marker in message for marker in _TRANSIENT_MARKERS):
        return BrokerError(f"Broker busy: {error}")
    logger.error("Broker database unavailable: %s", error)
    return BrokerUnavailableError(f"Broker unavailable: {error}")
