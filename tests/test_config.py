from __future__ import annotations

from pathlib import Path

import allure
import pytest

from execution_orchestrator.config import (
    DEFAULT_WORKER_ENDPOINTS,
    DispatchSettings,
    GovernorSettings,
    QueueSettings,
    Settings,
)

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_defaults_validate() -> None:
    settings = Settings()
    settings.validate()

    assert settings.governor.concurrency_slots == 3
    assert settings.governor.daily_cost_usd == 300.0
    assert settings.scheduler.tick_interval_seconds == 300.0
    assert settings.scheduler.execution_timeout_seconds == 300
    assert settings.dispatch.worker_endpoints == DEFAULT_WORKER_ENDPOINTS


def test_from_env_reads_limits_and_endpoints(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EXEC_ORCH_DB_PATH", "/tmp/orchestrator-test.db")
    monkeypatch.setenv("EXEC_ORCH_CONCURRENCY_SLOTS", "5")
    monkeypatch.setenv("EXEC_ORCH_DAILY_COST_USD", "12.5")
    monkeypatch.setenv("EXEC_ORCH_RETRY_JITTER", "yes")
    monkeypatch.setenv("EXEC_ORCH_AUTO_RESUME", "off")
    monkeypatch.setenv(
        "EXEC_ORCH_WORKER_ENDPOINTS",
        "SEO-Monitor=http://seo.internal/run, content-pipeline=https://content.internal/run",
    )

    settings = Settings.from_env()

    assert settings.db_path == Path("/tmp/orchestrator-test.db")
    assert settings.governor.concurrency_slots == 5
    assert settings.governor.daily_cost_usd == 12.5
    assert settings.scheduler.retry_jitter is True
    assert settings.health.auto_resume is False
    assert settings.dispatch.worker_endpoints == {
        "seo-monitor": "http://seo.internal/run",
        "content-pipeline": "https://content.internal/run",
    }


def test_from_env_explicit_db_path_wins(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EXEC_ORCH_DB_PATH", "/tmp/ignored.db")

    settings = Settings.from_env(db_path=Path("explicit.db"))

    assert settings.db_path == Path("explicit.db")


def test_from_env_rejects_malformed_endpoint_entry(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EXEC_ORCH_WORKER_ENDPOINTS", "seo-monitor http://seo.internal/run")

    with pytest.raises(ValueError, match="Expected format"):
        Settings.from_env()


def test_from_env_rejects_invalid_boolean(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EXEC_ORCH_RETRY_JITTER", "sometimes")

    with pytest.raises(ValueError, match="Invalid boolean value for EXEC_ORCH_RETRY_JITTER"):
        Settings.from_env()


def test_validate_rejects_non_positive_concurrency() -> None:
    settings = Settings(governor=GovernorSettings(concurrency_slots=0))

    with pytest.raises(ValueError, match="EXEC_ORCH_CONCURRENCY_SLOTS"):
        settings.validate()


def test_validate_rejects_inverted_water_marks() -> None:
    settings = Settings(queue=QueueSettings(low_water_mark=500, high_water_mark=100))

    with pytest.raises(ValueError, match="EXEC_ORCH_QUEUE_LOW_WATER"):
        settings.validate()


def test_validate_rejects_fairness_share_out_of_range() -> None:
    settings = Settings(queue=QueueSettings(fairness_share=0.0))

    with pytest.raises(ValueError, match="EXEC_ORCH_FAIRNESS_SHARE"):
        settings.validate()


def test_validate_rejects_non_http_callback_address() -> None:
    settings = Settings(dispatch=DispatchSettings(callback_address="ftp://example.com/cb"))

    with pytest.raises(ValueError, match="Invalid callback address"):
        settings.validate()


def test_validate_requires_worker_endpoints() -> None:
    settings = Settings(dispatch=DispatchSettings(worker_endpoints={}))

    with pytest.raises(ValueError, match="At least one worker endpoint is required"):
        settings.validate()
