"""Polling dispatcher: claims pending jobs and drives their state machine."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from analysis_queue.analysis.base import (
    AnalysisCapability,
    AnalysisError,
    AnalysisResult,
    AnalysisTimeoutError,
)
from analysis_queue.artifacts.repository import ArtifactStore
from analysis_queue.queue.errors import InvalidTransitionError, QueueError
from analysis_queue.queue.models import SUBJECT_NOT_FOUND_ERROR, JobKind, JobView
from analysis_queue.queue.reaper import Reaper
from analysis_queue.queue.repository import JobRepository
from analysis_queue.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5
DEFAULT_ANALYSIS_TIMEOUT_SECONDS = 120.0
DEFAULT_STALE_PROCESSING_SECONDS = 1_800
DEFAULT_RECONCILE_LOOKBACK = timedelta(hours=24)
RECONCILE_BATCH_LIMIT = 100

_HANDLED_KINDS = frozenset({JobKind.ANALYSIS})


@dataclass(slots=True)
class SweepSummary:
    """Counters for one dispatcher sweep."""

    skipped: bool = False
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    # job store failures plus any other error that escaped one job
    store_errors: int = 0
    recovered: int = 0
    reconciled: int = 0
    purged: int = 0


class JobOutcome(str, Enum):
    """What happened to one claimed job."""

    COMPLETED = "completed"
    RETRIED = "retried"
    FAILED = "failed"
    LOST = "lost"


class Dispatcher:
    """Runs guarded sweeps over the job store.

    Only one sweep runs at a time per instance; overlapping calls return a
    skipped summary instead of waiting.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        jobs: JobRepository,
        artifacts: ArtifactStore,
        analyzer: AnalysisCapability,
        reaper: Reaper | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        analysis_timeout_seconds: float = DEFAULT_ANALYSIS_TIMEOUT_SECONDS,
        stale_processing_seconds: int = DEFAULT_STALE_PROCESSING_SECONDS,
        retry_backoff_seconds: float = 0.0,
        retry_backoff_max_seconds: float = 900.0,
        reconcile_artifacts: bool = True,
        reconcile_lookback: timedelta = DEFAULT_RECONCILE_LOOKBACK,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}.")
        if analysis_timeout_seconds <= 0:
            raise ValueError("analysis_timeout_seconds must be > 0.")
        self.jobs = jobs
        self.artifacts = artifacts
        self.analyzer = analyzer
        self.reaper = reaper
        self.batch_size = batch_size
        self.analysis_timeout_seconds = analysis_timeout_seconds
        self.stale_processing_seconds = stale_processing_seconds
        self.retry_backoff_seconds = retry_backoff_seconds
        self.retry_backoff_max_seconds = retry_backoff_max_seconds
        self.reconcile_artifacts = reconcile_artifacts
        self.reconcile_lookback = reconcile_lookback
        self._clock = clock
        self._guard = threading.Lock()

    @property
    def is_sweeping(self) -> bool:
        return self._guard.locked()

    def run_sweep(self) -> SweepSummary:
        """Process one batch of pending jobs, then reconcile and purge."""

        summary = SweepSummary()
        if not self._guard.acquire(blocking=False):
            logger.debug("Sweep already in progress; skipping")
            summary.skipped = True
            return summary
        try:
            self._sweep(summary)
        finally:
            self._guard.release()

        if summary.claimed or summary.recovered or summary.reconciled or summary.purged:
            logger.info(
                "Sweep finished: claimed=%d completed=%d retried=%d failed=%d "
                "store_errors=%d recovered=%d reconciled=%d purged=%d",
                summary.claimed,
                summary.completed,
                summary.retried,
                summary.failed,
                summary.store_errors,
                summary.recovered,
                summary.reconciled,
                summary.purged,
            )
        return summary

    def _sweep(self, summary: SweepSummary) -> None:
        now = self._clock()
        if self.stale_processing_seconds > 0:
            try:
                summary.recovered = self.jobs.recover_stale_processing(
                    stale_after=timedelta(seconds=self.stale_processing_seconds),
                    now=now,
                    on_failed=self._record_artifact_error,
                )
            except SQLAlchemyError:
                logger.exception("Stale job recovery failed")
                summary.store_errors += 1

        try:
            batch = self.jobs.claim_batch(limit=self.batch_size, now=now)
        except SQLAlchemyError:
            logger.exception("Could not claim pending jobs")
            summary.store_errors += 1
            batch = []
        summary.claimed = len(batch)

        for job in batch:
            try:
                outcome = self._process_job(job)
            except (SQLAlchemyError, QueueError):
                logger.exception("Job store error while processing job %s", job.job_id)
                summary.store_errors += 1
                continue
            except Exception:
                logger.exception("Unexpected error while processing job %s", job.job_id)
                summary.store_errors += 1
                continue
            if outcome is JobOutcome.COMPLETED:
                summary.completed += 1
            elif outcome is JobOutcome.RETRIED:
                summary.retried += 1
            elif outcome is JobOutcome.FAILED:
                summary.failed += 1

        if self.reconcile_artifacts:
            try:
                summary.reconciled = self._reconcile_artifacts(now=self._clock())
            except SQLAlchemyError:
                logger.exception("Artifact reconciliation failed")
                summary.store_errors += 1

        if self.reaper is not None:
            try:
                summary.purged = self.reaper.purge(now=self._clock())
            except SQLAlchemyError:
                logger.exception("Purge of completed jobs failed")
                summary.store_errors += 1

    def _process_job(self, job: JobView) -> JobOutcome:
        try:
            claimed = self.jobs.mark_processing(job.job_id)
        except InvalidTransitionError as error:
            logger.warning("Job %s was taken by another worker: %s", job.job_id, error)
            return JobOutcome.LOST

        try:
            artifact = self.artifacts.get_artifact(claimed.subject_id)
        except Exception as error:  # noqa: BLE001
            logger.warning("Subject lookup failed for job %s: %s", claimed.job_id, error)
            return self._retry_or_fail(
                claimed,
                error=f"subject lookup failed: {_error_message(error)}",
            )
        if artifact is None:
            self.jobs.fail_job(claimed.job_id, error=SUBJECT_NOT_FOUND_ERROR)
            logger.warning(
                "Job %s failed: subject %s not found",
                claimed.job_id,
                claimed.subject_id,
            )
            return JobOutcome.FAILED

        if claimed.kind not in _HANDLED_KINDS:
            self.jobs.fail_job(
                claimed.job_id,
                error=f"unsupported job kind: {claimed.kind.value}",
            )
            logger.warning("Job %s failed: no handler for kind %s", claimed.job_id, claimed.kind)
            return JobOutcome.FAILED

        locator = claimed.locator or artifact.locator
        try:
            result = self._analyze(locator)
        except Exception as error:  # noqa: BLE001
            return self._retry_or_fail(claimed, error=_error_message(error))

        if not self.jobs.save_result(claimed.job_id, result.to_dict()):
            logger.warning("Job %s left processing before its result was saved", claimed.job_id)
            return JobOutcome.LOST

        try:
            self.artifacts.apply_analysis(claimed.subject_id, result)
        except Exception as error:  # noqa: BLE001
            logger.warning("Artifact update failed for job %s: %s", claimed.job_id, error)
            return self._retry_or_fail(
                claimed,
                error=f"artifact update failed: {_error_message(error)}",
            )

        self.jobs.complete_job(claimed.job_id)
        logger.info(
            "Job %s completed on attempt %d/%d",
            claimed.job_id,
            claimed.attempts,
            claimed.max_attempts,
        )
        return JobOutcome.COMPLETED

    def _analyze(self, locator: str) -> AnalysisResult:
        """Run the capability on a helper thread with a hard time budget.

        A call that overruns is abandoned; its late result is discarded.
        """

        outcome: queue.Queue[tuple[AnalysisResult | None, Exception | None]] = queue.Queue(
            maxsize=1,
        )

        def _call() -> None:
            try:
                outcome.put((self.analyzer.analyze(locator), None))
            except Exception as error:  # noqa: BLE001
                outcome.put((None, error))

        thread = threading.Thread(target=_call, daemon=True, name="analysis-call")
        thread.start()
        try:
            result, error = outcome.get(timeout=self.analysis_timeout_seconds)
        except queue.Empty as exc:
            raise AnalysisTimeoutError(
                f"AI analysis failed: timed out after {self.analysis_timeout_seconds:g}s",
            ) from exc
        if error is not None:
            raise error
        if not isinstance(result, AnalysisResult):
            raise AnalysisError("AI analysis failed: capability returned no result")
        return result

    def _retry_or_fail(self, job: JobView, *, error: str) -> JobOutcome:
        if job.attempts_exhausted:
            self.jobs.fail_job(job.job_id, error=error)
            logger.warning(
                "Job %s failed permanently after %d attempts: %s",
                job.job_id,
                job.attempts,
                error,
            )
            self._record_artifact_error(job.subject_id, error)
            return JobOutcome.FAILED

        self.jobs.requeue_job(job.job_id, error=error, run_after=self._next_run_after(job.attempts))
        logger.info(
            "Job %s will be retried (attempt %d/%d): %s",
            job.job_id,
            job.attempts,
            job.max_attempts,
            error,
        )
        return JobOutcome.RETRIED

    def _next_run_after(self, attempts: int) -> datetime | None:
        if self.retry_backoff_seconds <= 0:
            return None
        delay = min(
            self.retry_backoff_max_seconds,
            self.retry_backoff_seconds * (2 ** max(attempts - 1, 0)),
        )
        return self._clock() + timedelta(seconds=delay)

    def _record_artifact_error(self, subject_id: str, error: str) -> None:
        try:
            self.artifacts.record_processing_error(subject_id, error)
        except Exception:  # noqa: BLE001
            logger.warning("Could not record processing error on %s", subject_id, exc_info=True)

    def _reconcile_artifacts(self, *, now: datetime) -> int:
        """Re-apply saved results to artifacts a completed job never reached."""

        results = self.jobs.list_completed_results(
            kind=JobKind.ANALYSIS,
            since=now - self.reconcile_lookback,
            limit=RECONCILE_BATCH_LIMIT,
        )
        if not results:
            return 0
        unprocessed = self.artifacts.unprocessed_ids(item.subject_id for item in results)
        reconciled = 0
        for item in results:
            if item.subject_id not in unprocessed:
                continue
            unprocessed.discard(item.subject_id)
            try:
                self.artifacts.apply_analysis(
                    item.subject_id,
                    AnalysisResult.from_dict(item.result),
                )
            except Exception:  # noqa: BLE001
                logger.warning(
                    "Reconciliation of %s from job %s failed",
                    item.subject_id,
                    item.job_id,
                    exc_info=True,
                )
                continue
            reconciled += 1
            logger.info("Reconciled artifact %s from job %s", item.subject_id, item.job_id)
        return reconciled


def _error_message(error: Exception) -> str:
    if isinstance(error, AnalysisError):
        return str(error) or type(error).__name__
    detail = str(error)
    return f"{type(error).__name__}: {detail}" if detail else type(error).__name__
