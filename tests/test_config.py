from __future__ import annotations

from pathlib import Path

import allure
import pytest

from analysis_queue.config import AnalysisSettings, QueueSettings, SchedulerSettings, Settings

pytestmark = [
    allure.epic("Analysis Queue"),
    allure.feature("Configuration"),
]

_ENV_VARS = (
    "ANALYSIS_QUEUE_DB_PATH",
    "ANALYSIS_QUEUE_BATCH_SIZE",
    "ANALYSIS_QUEUE_MAX_ATTEMPTS",
    "ANALYSIS_QUEUE_RETENTION_HOURS",
    "ANALYSIS_QUEUE_RECONCILE_ARTIFACTS",
    "ANALYSIS_QUEUE_SCHEDULER_INTERVAL_SECONDS",
    "ANALYSIS_QUEUE_ANALYZER",
    "ANALYSIS_QUEUE_LOG_LEVEL",
    "GEMINI_API_KEY",
)


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_from_env_defaults_match_queue_contract(clean_env: pytest.MonkeyPatch) -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".analysis_queue.db")
    assert settings.queue.batch_size == 5
    assert settings.queue.max_attempts == 3
    assert settings.queue.retention_hours == 24
    assert settings.queue.retry_backoff_seconds == 0
    assert settings.queue.reconcile_artifacts is True
    assert settings.scheduler.interval_seconds == 30
    assert settings.scheduler.calendar_period_seconds == 60
    assert settings.scheduler.initial_delay_seconds == 5
    assert settings.analysis.analyzer == "gemini"
    settings.validate()


def test_from_env_reads_overrides(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    clean_env.setenv("ANALYSIS_QUEUE_BATCH_SIZE", "10")
    clean_env.setenv("ANALYSIS_QUEUE_MAX_ATTEMPTS", "5")
    clean_env.setenv("ANALYSIS_QUEUE_RECONCILE_ARTIFACTS", "off")
    clean_env.setenv("ANALYSIS_QUEUE_ANALYZER", " ECHO ")
    clean_env.setenv("ANALYSIS_QUEUE_LOG_LEVEL", "debug")

    settings = Settings.from_env(db_path=tmp_path / "custom.db")

    assert settings.db_path == tmp_path / "custom.db"
    assert settings.queue.batch_size == 10
    assert settings.queue.max_attempts == 5
    assert settings.queue.reconcile_artifacts is False
    assert settings.analysis.analyzer == "echo"
    assert settings.log_level == "DEBUG"


def test_from_env_rejects_invalid_boolean(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("ANALYSIS_QUEUE_RECONCILE_ARTIFACTS", "maybe")

    with pytest.raises(ValueError, match="ANALYSIS_QUEUE_RECONCILE_ARTIFACTS"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(queue=QueueSettings(batch_size=0)), "ANALYSIS_QUEUE_BATCH_SIZE"),
        (Settings(queue=QueueSettings(max_attempts=0)), "ANALYSIS_QUEUE_MAX_ATTEMPTS"),
        (
            Settings(queue=QueueSettings(retry_backoff_seconds=60, retry_backoff_max_seconds=30)),
            "ANALYSIS_QUEUE_RETRY_BACKOFF_MAX_SECONDS",
        ),
        (
            Settings(scheduler=SchedulerSettings(interval_seconds=0)),
            "ANALYSIS_QUEUE_SCHEDULER_INTERVAL_SECONDS",
        ),
        (Settings(analysis=AnalysisSettings(analyzer="vision")), "ANALYSIS_QUEUE_ANALYZER"),
        (Settings(log_level="LOUD"), "ANALYSIS_QUEUE_LOG_LEVEL"),
    ],
)
def test_validate_rejects_unusable_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_validate_for_analyzer_requires_gemini_key() -> None:
    settings = Settings(analysis=AnalysisSettings(analyzer="gemini", gemini_api_key=" "))

    with pytest.raises(ValueError, match="GEMINI_API_KEY is required"):
        settings.validate_for_analyzer()


def test_validate_for_analyzer_rejects_invalid_base_url() -> None:
    settings = Settings(
        analysis=AnalysisSettings(gemini_api_key="key", gemini_api_base_url="ftp://gemini"),
    )

    with pytest.raises(ValueError, match="ANALYSIS_QUEUE_GEMINI_API_BASE_URL"):
        settings.validate_for_analyzer()


def test_validate_for_analyzer_accepts_echo_without_key() -> None:
    Settings(analysis=AnalysisSettings(analyzer="echo")).validate_for_analyzer()
