from __future__ import annotations

from pathlib import Path

import allure
import pytest

from batchmesh.config import MetricsSettings, NotificationSettings, Settings, WorkerSettings

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Configuration"),
]


def test_defaults_select_single_node_mode(monkeypatch) -> None:
    monkeypatch.delenv("BATCHMESH_BROKER_PATH", raising=False)

    settings = Settings.from_env()

    assert settings.single_node_mode
    assert settings.queue.max_retries == 2
    assert settings.worker.lease_ttl_seconds == 300
    assert settings.forward.channel_id is None
    settings.validate()


def test_broker_path_from_env_enables_distributed_mode(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BATCHMESH_BROKER_PATH", str(tmp_path / "broker.db"))

    settings = Settings.from_env()

    assert not settings.single_node_mode
    assert settings.broker.db_path == tmp_path / "broker.db"


def test_explicit_broker_path_wins_over_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BATCHMESH_BROKER_PATH", str(tmp_path / "env.db"))

    settings = Settings.from_env(broker_path=tmp_path / "cli.db")

    assert settings.broker.db_path == tmp_path / "cli.db"


def test_from_env_reads_overrides(monkeypatch) -> None:
    monkeypatch.setenv("BATCHMESH_MAX_RETRIES", "5")
    monkeypatch.setenv("BATCHMESH_TASK_TIMEOUT_SECONDS", "30")
    monkeypatch.setenv("BATCHMESH_RETRY_POP_TIMEOUT_SECONDS", "0.5")
    monkeypatch.setenv("BATCHMESH_FORWARD_CHANNEL_ID", " forward-chat ")
    monkeypatch.setenv("BATCHMESH_LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.queue.max_retries == 5
    assert settings.worker.task_timeout_seconds == 30.0
    assert settings.worker.retry_pop_timeout_seconds == 0.5
    assert settings.forward.channel_id == "forward-chat"
    assert settings.log_level == "DEBUG"


def test_proxy_pool_env_is_deduplicated(monkeypatch) -> None:
    monkeypatch.setenv(
        "BATCHMESH_PROXY_POOL",
        "http://p1:8080, http://p2:8080,,http://p1:8080",
    )

    settings = Settings.from_env()

    assert settings.proxy.proxies == ("http://p1:8080", "http://p2:8080")


def test_validate_rejects_lease_not_longer_than_timeout() -> None:
    settings = Settings(worker=WorkerSettings(task_timeout_seconds=300.0, lease_ttl_seconds=300))

    with pytest.raises(ValueError, match="BATCHMESH_LEASE_TTL_SECONDS"):
        settings.validate()


def test_validate_rejects_negative_retries() -> None:
    settings = Settings()
    settings.queue.max_retries = -1

    with pytest.raises(ValueError, match="BATCHMESH_MAX_RETRIES"):
        settings.validate()


def test_validate_rejects_threshold_outside_unit_interval() -> None:
    settings = Settings(worker=WorkerSettings(circuit_error_threshold=1.5))

    with pytest.raises(ValueError, match="BATCHMESH_CIRCUIT_ERROR_THRESHOLD"):
        settings.validate()


def test_validate_rejects_unknown_log_level() -> None:
    settings = Settings(log_level="LOUD")

    with pytest.raises(ValueError, match="BATCHMESH_LOG_LEVEL"):
        settings.validate()


def test_notification_and_metrics_overrides_from_env(monkeypatch) -> None:
    monkeypatch.setenv("BATCHMESH_NOTIFY_MAX_RETRIES", "5")
    monkeypatch.setenv("BATCHMESH_NOTIFY_DELETE_MAX_RETRIES", "1")
    monkeypatch.setenv("BATCHMESH_METRICS_ERROR_RATE_WARNING", "0.2")
    monkeypatch.setenv("BATCHMESH_WORKER_ERROR_BACKOFF_SECONDS", "2.5")

    settings = Settings.from_env()

    assert settings.notification.max_retries == 5
    assert settings.notification.delete_max_retries == 1
    assert settings.metrics.error_rate_warning == 0.2
    assert settings.worker.error_backoff_seconds == 2.5
    settings.validate()


def test_validate_rejects_zero_notification_attempts() -> None:
    settings = Settings(notification=NotificationSettings(delete_max_retries=0))

    with pytest.raises(ValueError, match="BATCHMESH_NOTIFY_MAX_RETRIES"):
        settings.validate()


def test_validate_rejects_empty_notification_backoff() -> None:
    settings = Settings(notification=NotificationSettings(backoff_seconds=()))

    with pytest.raises(ValueError, match="backoff"):
        settings.validate()


def test_validate_rejects_error_rate_warning_above_one() -> None:
    settings = Settings(metrics=MetricsSettings(error_rate_warning=1.5))

    with pytest.raises(ValueError, match="BATCHMESH_METRICS_ERROR_RATE_WARNING"):
        settings.validate()
