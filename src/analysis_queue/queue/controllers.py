"""Controllers for analysis queue CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from analysis_queue.analysis.base import AnalysisCapability
from analysis_queue.analysis.echo import EchoAnalyzer
from analysis_queue.analysis.gemini import GeminiAnalyzer
from analysis_queue.artifacts.repository import ArtifactCreate, ArtifactRepository
from analysis_queue.config import Settings
from analysis_queue.queue.dispatcher import Dispatcher, SweepSummary
from analysis_queue.queue.models import JobKind, JobStatus
from analysis_queue.queue.reaper import Reaper
from analysis_queue.queue.repository import JobRepository
from analysis_queue.queue.scheduler import SweepScheduler
from analysis_queue.queue.services import QueueService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ArtifactRegisterCommand:
    """CLI input for registering an uploaded artifact."""

    db_path: Path | None
    locator: str
    original_name: str | None
    mime_type: str
    size_bytes: int
    owner_id: str | None
    width: int | None = None
    height: int | None = None


@dataclass(slots=True)
class ArtifactStatsCommand:
    """CLI input for artifact processing counts."""

    db_path: Path | None
    owner_id: str | None


@dataclass(slots=True)
class JobEnqueueCommand:
    """CLI input for raw job enqueue."""

    db_path: Path | None
    subject_id: str
    kind: str
    locator: str | None
    max_attempts: int | None


@dataclass(slots=True)
class JobReprocessCommand:
    """CLI input for reprocessing one artifact."""

    db_path: Path | None
    subject_id: str


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    kind: str | None
    subject_id: str | None
    limit: int


@dataclass(slots=True)
class JobInspectCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobStatsCommand:
    """CLI input for queue stats."""

    db_path: Path | None


@dataclass(slots=True)
class JobPurgeCommand:
    """CLI input for manual retention cleanup."""

    db_path: Path | None
    retention_hours: int | None


@dataclass(slots=True)
class WorkerSweepCommand:
    """CLI input for running sweeps in the foreground."""

    db_path: Path | None
    sweeps: int = 1


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for the long-running scheduled worker."""

    db_path: Path | None
    duration_seconds: float | None = None


class QueueCliController:
    """Coordinates artifact, job and worker CLI operations."""

    def register_artifact(self, command: ArtifactRegisterCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _repositories(settings) as (jobs, artifacts):
            service = QueueService(
                jobs=jobs,
                artifacts=artifacts,
                max_attempts=settings.queue.max_attempts,
            )
            artifact, job = service.register_artifact(
                ArtifactCreate(
                    original_name=command.original_name or _name_from_locator(command.locator),
                    locator=command.locator,
                    mime_type=command.mime_type,
                    size_bytes=command.size_bytes,
                    owner_id=command.owner_id,
                    width=command.width,
                    height=command.height,
                ),
            )
        return [
            f"Artifact registered: {artifact.artifact_id}",
            f"Analysis job enqueued: job_id={job.job_id} status={job.status.value}",
        ]

    def artifact_stats(self, command: ArtifactStatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repositories(settings) as (_, artifacts):
            stats = artifacts.processing_stats(owner_id=command.owner_id)
        scope = f"owner={command.owner_id}" if command.owner_id else "all owners"
        return [
            f"Artifact processing ({scope}):",
            f"  total={stats.total} processed={stats.processed} pending={stats.pending}",
        ]

    def enqueue(self, command: JobEnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        kind = _parse_kind(command.kind)
        payload = {"locator": command.locator} if command.locator else {}
        with _repositories(settings) as (jobs, artifacts):
            job = QueueService(
                jobs=jobs,
                artifacts=artifacts,
                max_attempts=settings.queue.max_attempts,
            ).enqueue(
                command.subject_id,
                kind=kind,
                payload=payload,
                max_attempts=command.max_attempts,
            )
        return [
            f"Job enqueued: {job.job_id}",
            f"subject_id={job.subject_id} kind={job.kind.value} max_attempts={job.max_attempts}",
        ]

    def reprocess(self, command: JobReprocessCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _repositories(settings) as (jobs, artifacts):
            job = QueueService(
                jobs=jobs,
                artifacts=artifacts,
                max_attempts=settings.queue.max_attempts,
            ).request_reprocessing(command.subject_id)
        return [f"Reprocessing job enqueued: {job.job_id} subject_id={job.subject_id}"]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = _parse_status(command.status)
        kind = _parse_kind(command.kind) if command.kind is not None else None
        with _repositories(settings) as (jobs, _):
            rows = jobs.list_jobs(
                status=status,
                kind=kind,
                subject_id=command.subject_id,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(rows)}"]
        for job in rows:
            lines.append(
                f"  {job.job_id} subject={job.subject_id} kind={job.kind.value} "
                f"status={job.status.value} attempts={job.attempts}/{job.max_attempts} "
                f"created_at={job.created_at.isoformat()}",
            )
        return lines

    def inspect_job(self, command: JobInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repositories(settings) as (jobs, _):
            details = jobs.get_job_details(command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Subject: {job.subject_id}",
            f"Kind: {job.kind.value}",
            f"Status: {job.status.value}",
            f"Attempts: {job.attempts}/{job.max_attempts}",
            f"Error: {job.last_error or '-'}",
            f"Processed at: {job.processed_at.isoformat() if job.processed_at else '-'}",
            f"Run after: {job.run_after.isoformat()}",
            f"Result: {'saved' if job.result is not None else '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def stats(self, command: JobStatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repositories(settings) as (jobs, _):
            stats = jobs.get_stats()
        return [
            f"Queue stats: total={stats.total}",
            *(f"  {status}={count}" for status, count in stats.as_dict().items()),
        ]

    def purge(self, command: JobPurgeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        hours = (
            command.retention_hours
            if command.retention_hours is not None
            else settings.queue.retention_hours
        )
        with _repositories(settings) as (jobs, _):
            purged = Reaper(jobs, retention=timedelta(hours=hours)).purge()
        return [f"Purged completed jobs: {purged} (retention={hours}h)"]

    def sweep(self, command: WorkerSweepCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_analyzer()
        total = SweepSummary()
        with _repositories(settings) as (jobs, artifacts):
            analyzer = _build_analyzer(settings)
            try:
                dispatcher = _build_dispatcher(settings, jobs, artifacts, analyzer)
                for _ in range(max(1, command.sweeps)):
                    _accumulate(total, dispatcher.run_sweep())
            finally:
                _close_analyzer(analyzer)
        return [
            "Sweep summary: "
            f"claimed={total.claimed} completed={total.completed} retried={total.retried} "
            f"failed={total.failed} store_errors={total.store_errors} "
            f"recovered={total.recovered} reconciled={total.reconciled} purged={total.purged}",
        ]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_analyzer()
        with _repositories(settings) as (jobs, artifacts):
            analyzer = _build_analyzer(settings)
            try:
                dispatcher = _build_dispatcher(settings, jobs, artifacts, analyzer)
                scheduler = SweepScheduler(
                    dispatcher,
                    interval_seconds=settings.scheduler.interval_seconds,
                    calendar_period_seconds=settings.scheduler.calendar_period_seconds,
                    initial_delay_seconds=settings.scheduler.initial_delay_seconds,
                )
                with scheduler:
                    try:
                        scheduler.wait(timeout=command.duration_seconds)
                    except KeyboardInterrupt:
                        logger.info("Interrupted; stopping sweep scheduler")
                counts = dict(scheduler.trigger_counts)
            finally:
                _close_analyzer(analyzer)
        return [
            "Worker stopped: "
            + " ".join(
                f"{name}={counts.get(name, 0)}" for name in ("initial", "interval", "calendar")
            ),
        ]


def _build_analyzer(settings: Settings) -> AnalysisCapability:
    if settings.analysis.analyzer == "echo":
        return EchoAnalyzer()
    return GeminiAnalyzer(
        api_key=settings.analysis.gemini_api_key,
        model=settings.analysis.gemini_model,
        api_base_url=settings.analysis.gemini_api_base_url,
        timeout_seconds=settings.analysis.request_timeout_seconds,
        max_retries=settings.analysis.max_retries,
    )


def _close_analyzer(analyzer: AnalysisCapability) -> None:
    close = getattr(analyzer, "close", None)
    if callable(close):
        close()


def _build_dispatcher(
    settings: Settings,
    jobs: JobRepository,
    artifacts: ArtifactRepository,
    analyzer: AnalysisCapability,
) -> Dispatcher:
    return Dispatcher(
        jobs=jobs,
        artifacts=artifacts,
        analyzer=analyzer,
        reaper=Reaper(jobs, retention=timedelta(hours=settings.queue.retention_hours)),
        batch_size=settings.queue.batch_size,
        analysis_timeout_seconds=settings.queue.analysis_timeout_seconds,
        stale_processing_seconds=settings.queue.stale_processing_seconds,
        retry_backoff_seconds=settings.queue.retry_backoff_seconds,
        retry_backoff_max_seconds=settings.queue.retry_backoff_max_seconds,
        reconcile_artifacts=settings.queue.reconcile_artifacts,
    )


def _accumulate(total: SweepSummary, summary: SweepSummary) -> None:
    total.claimed += summary.claimed
    total.completed += summary.completed
    total.retried += summary.retried
    total.failed += summary.failed
    total.store_errors += summary.store_errors
    total.recovered += summary.recovered
    total.reconciled += summary.reconciled
    total.purged += summary.purged


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    try:
        return JobStatus(value.strip().lower())
    except ValueError as error:
        raise ValueError(f"Unsupported job status: {value!r}") from error


def _parse_kind(value: str) -> JobKind:
    try:
        return JobKind(value.strip().lower())
    except ValueError as error:
        raise ValueError(f"Unsupported job kind: {value!r}") from error


def _name_from_locator(locator: str) -> str:
    name = locator.rstrip("/").rsplit("/", 1)[-1]
    return name or locator


@contextmanager
def _repositories(settings: Settings) -> Iterator[tuple[JobRepository, ArtifactRepository]]:
    jobs = JobRepository(settings.db_path, sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    artifacts = ArtifactRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    jobs.init_schema()
    try:
        yield jobs, artifacts
    finally:
        artifacts.close()
        jobs.close()
