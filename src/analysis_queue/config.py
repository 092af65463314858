"""Runtime configuration for the analysis queue, worker and scheduler."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

SUPPORTED_ANALYZERS: tuple[str, ...] = ("gemini", "echo")
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(slots=True)
class QueueSettings:
    """Job claiming, retry and retention settings."""

    batch_size: int = 5
    max_attempts: int = 3
    retention_hours: int = 24
    stale_processing_seconds: int = 1_800
    analysis_timeout_seconds: float = 120.0
    retry_backoff_seconds: float = 0.0
    retry_backoff_max_seconds: float = 900.0
    reconcile_artifacts: bool = True


@dataclass(slots=True)
class SchedulerSettings:
    """Sweep trigger settings."""

    interval_seconds: float = 30.0
    calendar_period_seconds: int = 60
    initial_delay_seconds: float = 5.0


@dataclass(slots=True)
class AnalysisSettings:
    """Analysis capability settings."""

    analyzer: str = "gemini"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-1.5-flash"
    gemini_api_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    request_timeout_seconds: float = 60.0
    max_retries: int = 2


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".analysis_queue.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    queue: QueueSettings = field(default_factory=QueueSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    analysis: AnalysisSettings = field(default_factory=AnalysisSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("ANALYSIS_QUEUE_DB_PATH", ".analysis_queue.db")),
            sqlite_busy_timeout_ms=int(os.getenv("ANALYSIS_QUEUE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("ANALYSIS_QUEUE_LOG_LEVEL", "INFO").strip().upper(),
            queue=QueueSettings(
                batch_size=int(os.getenv("ANALYSIS_QUEUE_BATCH_SIZE", "5")),
                max_attempts=int(os.getenv("ANALYSIS_QUEUE_MAX_ATTEMPTS", "3")),
                retention_hours=int(os.getenv("ANALYSIS_QUEUE_RETENTION_HOURS", "24")),
                stale_processing_seconds=int(
                    os.getenv("ANALYSIS_QUEUE_STALE_PROCESSING_SECONDS", "1800"),
                ),
                analysis_timeout_seconds=float(
                    os.getenv("ANALYSIS_QUEUE_ANALYSIS_TIMEOUT_SECONDS", "120"),
                ),
                retry_backoff_seconds=float(
                    os.getenv("ANALYSIS_QUEUE_RETRY_BACKOFF_SECONDS", "0"),
                ),
                retry_backoff_max_seconds=float(
                    os.getenv("ANALYSIS_QUEUE_RETRY_BACKOFF_MAX_SECONDS", "900"),
                ),
                reconcile_artifacts=_env_bool("ANALYSIS_QUEUE_RECONCILE_ARTIFACTS", default=True),
            ),
            scheduler=SchedulerSettings(
                interval_seconds=float(
                    os.getenv("ANALYSIS_QUEUE_SCHEDULER_INTERVAL_SECONDS", "30"),
                ),
                calendar_period_seconds=int(
                    os.getenv("ANALYSIS_QUEUE_SCHEDULER_CALENDAR_PERIOD_SECONDS", "60"),
                ),
                initial_delay_seconds=float(
                    os.getenv("ANALYSIS_QUEUE_SCHEDULER_INITIAL_DELAY_SECONDS", "5"),
                ),
            ),
            analysis=AnalysisSettings(
                analyzer=os.getenv("ANALYSIS_QUEUE_ANALYZER", "gemini").strip().lower(),
                gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
                gemini_model=os.getenv("ANALYSIS_QUEUE_GEMINI_MODEL", "gemini-1.5-flash"),
                gemini_api_base_url=os.getenv(
                    "ANALYSIS_QUEUE_GEMINI_API_BASE_URL",
                    "https://generativelanguage.googleapis.com/v1beta",
                ),
                request_timeout_seconds=float(
                    os.getenv("ANALYSIS_QUEUE_ANALYSIS_REQUEST_TIMEOUT_SECONDS", "60"),
                ),
                max_retries=int(os.getenv("ANALYSIS_QUEUE_ANALYSIS_MAX_RETRIES", "2")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the queue cannot run with."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("ANALYSIS_QUEUE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"Invalid ANALYSIS_QUEUE_LOG_LEVEL: {self.log_level!r}. "
                f"Expected one of {', '.join(sorted(_LOG_LEVELS))}.",
            )
        if self.queue.batch_size <= 0:
            raise ValueError("ANALYSIS_QUEUE_BATCH_SIZE must be a positive integer.")
        if self.queue.max_attempts <= 0:
            raise ValueError("ANALYSIS_QUEUE_MAX_ATTEMPTS must be a positive integer.")
        if self.queue.retention_hours < 0:
            raise ValueError("ANALYSIS_QUEUE_RETENTION_HOURS must be >= 0.")
        if self.queue.stale_processing_seconds < 0:
            raise ValueError("ANALYSIS_QUEUE_STALE_PROCESSING_SECONDS must be >= 0.")
        if self.queue.analysis_timeout_seconds <= 0:
            raise ValueError("ANALYSIS_QUEUE_ANALYSIS_TIMEOUT_SECONDS must be > 0.")
        if self.queue.retry_backoff_seconds < 0:
            raise ValueError("ANALYSIS_QUEUE_RETRY_BACKOFF_SECONDS must be >= 0.")
        if self.queue.retry_backoff_max_seconds < self.queue.retry_backoff_seconds:
            raise ValueError(
                "ANALYSIS_QUEUE_RETRY_BACKOFF_MAX_SECONDS must be >= "
                "ANALYSIS_QUEUE_RETRY_BACKOFF_SECONDS.",
            )
        if self.scheduler.interval_seconds <= 0:
            raise ValueError("ANALYSIS_QUEUE_SCHEDULER_INTERVAL_SECONDS must be > 0.")
        if self.scheduler.calendar_period_seconds <= 0:
            raise ValueError("ANALYSIS_QUEUE_SCHEDULER_CALENDAR_PERIOD_SECONDS must be > 0.")
        if self.scheduler.initial_delay_seconds < 0:
            raise ValueError("ANALYSIS_QUEUE_SCHEDULER_INITIAL_DELAY_SECONDS must be >= 0.")
        if self.analysis.analyzer not in SUPPORTED_ANALYZERS:
            raise ValueError(
                f"Unsupported ANALYSIS_QUEUE_ANALYZER: {self.analysis.analyzer!r}. "
                f"Expected one of {', '.join(SUPPORTED_ANALYZERS)}.",
            )

    def validate_for_analyzer(self) -> None:
        """Validate settings required by the selected analysis capability."""

        self.validate()
        if self.analysis.analyzer != "gemini":
            return
        if not self.analysis.gemini_api_key.strip():
            raise ValueError(
                "GEMINI_API_KEY is required for the gemini analyzer. "
                "Set it or use ANALYSIS_QUEUE_ANALYZER=echo.",
            )
        _validate_base_url(self.analysis.gemini_api_base_url)
        if self.analysis.request_timeout_seconds <= 0:
            raise ValueError("ANALYSIS_QUEUE_ANALYSIS_REQUEST_TIMEOUT_SECONDS must be > 0.")
        if self.analysis.max_retries < 0:
            raise ValueError("ANALYSIS_QUEUE_ANALYSIS_MAX_RETRIES must be >= 0.")


def _validate_base_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid ANALYSIS_QUEUE_GEMINI_API_BASE_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
