from __future__ import annotations

import allure

from batchmesh.coordinator import ProxyPoolManager
from batchmesh.coordinator.proxy_pool import proxy_id_for

pytestmark = [
    allure.epic("Job Distribution"),
    allure.feature("Proxy Pool"),
]

PROXIES = ("http://p1:8080", "http://p2:8080", "http://p3:8080")


def test_assign_proxy_rotates_round_robin(broker) -> None:
    pool = ProxyPoolManager(broker=broker, proxies=PROXIES)

    urls = [pool.assign_proxy(f"t{index}").url for index in range(4)]

    assert urls == [PROXIES[0], PROXIES[1], PROXIES[2], PROXIES[0]]


def test_empty_pool_assigns_nothing(broker) -> None:
    pool = ProxyPoolManager(broker=broker, proxies=())

    assert pool.assign_proxy("t1") is None
    assert pool.bulk_assign(2) == [None, None]


def test_proxy_becomes_unhealthy_after_consecutive_failures(broker) -> None:
    pool = ProxyPoolManager(broker=broker, proxies=PROXIES, failure_threshold=3)
    proxy_id = proxy_id_for(PROXIES[1])

    pool.record_proxy_result(proxy_id, success=False)
    pool.record_proxy_result(proxy_id, success=False)
    assert pool.is_healthy(proxy_id)

    pool.record_proxy_result(proxy_id, success=False)
    assert not pool.is_healthy(proxy_id)

    urls = [pool.assign_proxy(f"t{index}").url for index in range(3)]
    assert PROXIES[1] not in urls

    pool.record_proxy_result(proxy_id, success=True)
    assert pool.is_healthy(proxy_id)


def test_unhealthy_mark_expires(broker, clock) -> None:
    pool = ProxyPoolManager(
        broker=broker,
        proxies=PROXIES,
        failure_threshold=1,
        unhealthy_ttl_seconds=300,
    )
    proxy_id = proxy_id_for(PROXIES[0])
    pool.record_proxy_result(proxy_id, success=False)
    assert not pool.is_healthy(proxy_id)

    clock.advance(301)

    assert pool.is_healthy(proxy_id)


def test_all_unhealthy_falls_back_to_rotation(broker) -> None:
    pool = ProxyPoolManager(broker=broker, proxies=PROXIES[:2], failure_threshold=1)
    for url in PROXIES[:2]:
        pool.record_proxy_result(proxy_id_for(url), success=False)

    assert pool.assign_proxy("t1").url == PROXIES[0]
    assert pool.assign_proxy("t2").url == PROXIES[1]


def test_proxy_stats_report_health(broker) -> None:
    pool = ProxyPoolManager(broker=broker, proxies=PROXIES[:2], failure_threshold=2)
    pool.record_proxy_result(proxy_id_for(PROXIES[0]), success=False)

    stats = {item.url: item for item in pool.get_proxy_stats()}

    assert stats[PROXIES[0]].consecutive_failures == 1
    assert stats[PROXIES[0]].healthy
    assert stats[PROXIES[1]].consecutive_failures == 0
