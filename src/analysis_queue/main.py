"""CLI entrypoint for analysis-queue."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from analysis_queue import __version__
from analysis_queue.config import Settings
from analysis_queue.queue.controllers import (
    ArtifactRegisterCommand,
    ArtifactStatsCommand,
    JobEnqueueCommand,
    JobInspectCommand,
    JobListCommand,
    JobPurgeCommand,
    JobReprocessCommand,
    JobStatsCommand,
    QueueCliController,
    WorkerRunCommand,
    WorkerSweepCommand,
)
from analysis_queue.queue.errors import QueueError
from analysis_queue.queue.models import JobKind, JobStatus

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="analysis-queue")
def analysis_queue() -> None:
    """Post-upload analysis job queue CLI."""


@analysis_queue.group()
def artifacts() -> None:
    """Artifact commands."""


@artifacts.command("register")
@_db_path_option
@click.option("--locator", required=True, help="Storage URL of the uploaded artifact.")
@click.option("--name", "original_name", default=None, help="Original file name.")
@click.option("--mime-type", default="image/jpeg", show_default=True, help="Artifact MIME type.")
@click.option("--size-bytes", type=click.IntRange(min=0), default=0, show_default=True)
@click.option("--owner-id", default=None, help="Owning user id.")
def artifacts_register(  # noqa: PLR0913
    db_path: Path | None,
    locator: str,
    original_name: str | None,
    mime_type: str,
    size_bytes: int,
    owner_id: str | None,
) -> None:
    """Record an uploaded artifact and enqueue its analysis job."""

    _run(
        lambda: QUEUE_CONTROLLER.register_artifact(
            ArtifactRegisterCommand(
                db_path=db_path,
                locator=locator,
                original_name=original_name,
                mime_type=mime_type,
                size_bytes=size_bytes,
                owner_id=owner_id,
            ),
        ),
    )


@artifacts.command("stats")
@_db_path_option
@click.option("--owner-id", default=None, help="Only count artifacts of this owner.")
def artifacts_stats(db_path: Path | None, owner_id: str | None) -> None:
    """Show total, processed and pending artifact counts."""

    _run(
        lambda: QUEUE_CONTROLLER.artifact_stats(
            ArtifactStatsCommand(db_path=db_path, owner_id=owner_id),
        ),
    )


@analysis_queue.group()
def jobs() -> None:
    """Job queue commands."""


@jobs.command("enqueue")
@_db_path_option
@click.option("--subject-id", required=True, help="Artifact id the job operates on.")
@click.option(
    "--kind",
    type=click.Choice([kind.value for kind in JobKind]),
    default=JobKind.ANALYSIS.value,
    show_default=True,
)
@click.option("--locator", default=None, help="Locator passed to the analysis capability.")
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1, max=20),
    default=None,
    help="Override ANALYSIS_QUEUE_MAX_ATTEMPTS for this job.",
)
def jobs_enqueue(
    db_path: Path | None,
    subject_id: str,
    kind: str,
    locator: str | None,
    max_attempts: int | None,
) -> None:
    """Insert a pending job without checking that the subject exists."""

    _run(
        lambda: QUEUE_CONTROLLER.enqueue(
            JobEnqueueCommand(
                db_path=db_path,
                subject_id=subject_id,
                kind=kind,
                locator=locator,
                max_attempts=max_attempts,
            ),
        ),
    )


@jobs.command("reprocess")
@_db_path_option
@click.option("--subject-id", required=True, help="Artifact id to analyze again.")
def jobs_reprocess(db_path: Path | None, subject_id: str) -> None:
    """Submit a fresh analysis job for an existing artifact."""

    _run(
        lambda: QUEUE_CONTROLLER.reprocess(
            JobReprocessCommand(db_path=db_path, subject_id=subject_id),
        ),
    )


@jobs.command("list")
@_db_path_option
@click.option("--status", type=click.Choice([status.value for status in JobStatus]), default=None)
@click.option("--kind", type=click.Choice([kind.value for kind in JobKind]), default=None)
@click.option("--subject-id", default=None, help="Only jobs for this artifact.")
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=50, show_default=True)
def jobs_list(
    db_path: Path | None,
    status: str | None,
    kind: str | None,
    subject_id: str | None,
    limit: int,
) -> None:
    """List recent jobs, newest first."""

    _run(
        lambda: QUEUE_CONTROLLER.list_jobs(
            JobListCommand(
                db_path=db_path,
                status=status,
                kind=kind,
                subject_id=subject_id,
                limit=limit,
            ),
        ),
    )


@jobs.command("inspect")
@_db_path_option
@click.argument("job_id")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Show one job with its event trail."""

    _run(lambda: QUEUE_CONTROLLER.inspect_job(JobInspectCommand(db_path=db_path, job_id=job_id)))


@jobs.command("stats")
@_db_path_option
def jobs_stats(db_path: Path | None) -> None:
    """Show job counts per status."""

    _run(lambda: QUEUE_CONTROLLER.stats(JobStatsCommand(db_path=db_path)))


@jobs.command("purge")
@_db_path_option
@click.option(
    "--retention-hours",
    type=click.IntRange(min=0),
    default=None,
    help="Override ANALYSIS_QUEUE_RETENTION_HOURS.",
)
def jobs_purge(db_path: Path | None, retention_hours: int | None) -> None:
    """Delete completed jobs older than the retention window."""

    _run(
        lambda: QUEUE_CONTROLLER.purge(
            JobPurgeCommand(db_path=db_path, retention_hours=retention_hours),
        ),
    )


@analysis_queue.group()
def worker() -> None:
    """Dispatcher commands."""


@worker.command("sweep")
@_db_path_option
@click.option(
    "--sweeps",
    type=click.IntRange(min=1, max=100),
    default=1,
    show_default=True,
    help="How many consecutive sweeps to run.",
)
def worker_sweep(db_path: Path | None, sweeps: int) -> None:
    """Run dispatcher sweeps in the foreground and exit."""

    _run(lambda: QUEUE_CONTROLLER.sweep(WorkerSweepCommand(db_path=db_path, sweeps=sweeps)))


@worker.command("run")
@_db_path_option
@click.option(
    "--duration-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Stop after this many seconds; runs until interrupted when omitted.",
)
def worker_run(db_path: Path | None, duration_seconds: float | None) -> None:
    """Run the scheduled worker: interval, per-minute and initial sweeps."""

    def _start() -> list[str]:
        _configure_logging(Settings.from_env(db_path=db_path).log_level)
        return QUEUE_CONTROLLER.run_worker(
            WorkerRunCommand(db_path=db_path, duration_seconds=duration_seconds),
        )

    _run(_start)


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (ValueError, QueueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    analysis_queue()
