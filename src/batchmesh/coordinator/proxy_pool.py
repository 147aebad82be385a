"""Round-robin proxy assignment with per-proxy health records."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from collections.abc import Sequence

from batchmesh.broker import keys
from batchmesh.broker.base import Broker
from batchmesh.errors import BrokerError, BrokerUnavailableError
from batchmesh.models import ProxyAssignment, ProxyHealth

logger = logging.getLogger(__name__)


def proxy_id_for(url: str) -> str:
    """Stable id so every process names the same proxy the same way."""

    return hashlib.sha256(url.encode("utf-8")).hexdigest()[:12]


class ProxyPoolManager:
    """Assigns proxies to tasks and tracks their health in the broker."""

    def __init__(
        self,
        *,
        broker: Broker | None,
        proxies: Sequence[str],
        unhealthy_ttl_seconds: int = 300,
        failure_threshold: int = 3,
    ) -> None:
        self._broker = broker
        self._proxies = [ProxyAssignment(proxy_id=proxy_id_for(url), url=url) for url in proxies]
        self.unhealthy_ttl_seconds = unhealthy_ttl_seconds
        self.failure_threshold = failure_threshold
        self._cursor = 0
        self._lock = threading.Lock()

    def assign_proxy(self, task_id: str) -> ProxyAssignment | None:
        """Next healthy proxy in rotation; plain rotation when all are unhealthy."""

        if not self._proxies:
            return None
        with self._lock:
            start = self._cursor
            total = len(self._proxies)
            for offset in range(total):
                index = (start + offset) % total
                candidate = self._proxies[index]
                if self.is_healthy(candidate.proxy_id):
                    self._cursor = index + 1
                    return candidate
            self._cursor = start + 1
            fallback = self._proxies[start % total]
        logger.warning("All proxies unhealthy; task %s gets %s anyway", task_id, fallback.proxy_id)
        return fallback

    def bulk_assign(self, count: int) -> list[ProxyAssignment | None]:
        """Pre-assign ``count`` proxies in one pass without broker round-trips."""

        if not self._proxies:
            return [None] * count
        with self._lock:
            start = self._cursor
            self._cursor = start + count
        total = len(self._proxies)
        return [self._proxies[(start + index) % total] for index in range(count)]

    def is_healthy(self, proxy_id: str) -> bool:
        state = self._read_health(proxy_id)
        return bool(state.get("healthy", True))

    def record_proxy_result(self, proxy_id: str, *, success: bool) -> None:
        """Reset health on success; mark unhealthy after consecutive failures."""

        if self._broker is None:
            return
        health_key = keys.proxy_health_key(proxy_id)
        if success:
            self._broker.delete(health_key)
            return
        state = self._read_health(proxy_id)
        failures = int(state.get("consecutive_failures", 0)) + 1
        healthy = failures < self.failure_threshold
        self._broker.set(
            health_key,
            json.dumps({"consecutive_failures": failures, "healthy": healthy}),
            ttl=self.unhealthy_ttl_seconds,
        )
        if not healthy:
            logger.warning(
                "Proxy %s marked unhealthy after %d consecutive failures",
                proxy_id,
                failures,
            )

    def get_proxy_stats(self) -> list[ProxyHealth]:
        stats: list[ProxyHealth] = []
        for proxy in self._proxies:
            state = self._read_health(proxy.proxy_id)
            stats.append(
                ProxyHealth(
                    proxy_id=proxy.proxy_id,
                    url=proxy.url,
                    healthy=bool(state.get("healthy", True)),
                    consecutive_failures=int(state.get("consecutive_failures", 0)),
                ),
            )
        return stats

    def _read_health(self, proxy_id: str) -> dict[str, object]:
        if self._broker is None:
            return {}
        try:
            raw = self._broker.get(keys.proxy_health_key(proxy_id))
        except BrokerUnavailableError:
            raise
        except BrokerError as error:
            logger.debug("Proxy health read failed for %s: %s", proxy_id, error)
            return {}
        if raw is None:
            return {}
        try:
            state = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        return state if isinstance(state, dict) else {}
