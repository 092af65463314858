"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from analysis_queue.queue.errors import InvalidTransitionError, JobNotFoundError
from analysis_queue.queue.models import (
    CompletedResult,
    JobCreate,
    JobDetails,
    JobEventView,
    JobKind,
    JobStatus,
    JobView,
    QueueStats,
    can_transition,
)
from analysis_queue.storage.alembic_runner import upgrade_head
from analysis_queue.storage.common import (
    build_sqlite_engine,
    optional_utc_aware,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from analysis_queue.storage.sqlmodel_models import Job, JobEvent

logger = logging.getLogger(__name__)

STALE_PROCESSING_ERROR = "processing interrupted; recovered after stale timeout"

_TRANSITION_FIELDS = frozenset({"last_error", "processed_at", "run_after", "result"})
_DEFAULT_EVENT_TYPES: dict[JobStatus, str] = {
    JobStatus.PROCESSING: "claimed",
    JobStatus.COMPLETED: "completed",
    JobStatus.PENDING: "retry_scheduled",
    JobStatus.FAILED: "failed",
}


class JobRepository:
    """Job store facade: the single source of truth for queue state."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue(self, payload: JobCreate) -> JobView:
        """Create a pending job; the subject does not have to exist yet."""

        if not payload.subject_id or not payload.subject_id.strip():
            raise ValueError("subject_id must be a non-empty string.")
        if payload.max_attempts <= 0:
            raise ValueError(f"max_attempts must be positive, got {payload.max_attempts}.")

        now = utc_now()
        job_id = str(uuid4())
        with Session(self.engine) as session:
            row = Job(
                job_id=job_id,
                subject_id=payload.subject_id.strip(),
                kind=JobKind(payload.kind).value,
                status=JobStatus.PENDING.value,
                attempts=0,
                max_attempts=payload.max_attempts,
                payload_json=json.dumps(payload.payload, ensure_ascii=False, sort_keys=True),
                run_after=to_db_datetime(now),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="enqueued",
                status_from=None,
                status_to=JobStatus.PENDING,
                details={"kind": row.kind, "max_attempts": payload.max_attempts},
            )
            session.commit()
            session.refresh(row)
            view = _to_job_view(row)
        logger.info("Enqueued job %s (%s) for subject %s", job_id, view.kind.value, view.subject_id)
        return view

    def claim_batch(self, *, limit: int, now: datetime | None = None) -> list[JobView]:
        """Return up to `limit` oldest eligible pending jobs without changing their status.

        Claiming and the `processing` transition are separate steps, so two
        dispatchers sharing one database can pick the same job.
        """

        if limit <= 0:
            return []
        moment = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(
                    Job.status == JobStatus.PENDING.value,
                    col(Job.attempts) < col(Job.max_attempts),
                    col(Job.run_after) <= moment,
                )
                .order_by(col(Job.created_at).asc(), col(Job.job_id).asc())
                .limit(limit),
            ).all()
        return [_to_job_view(row) for row in rows]

    def transition(
        self,
        job_id: str,
        status: JobStatus,
        *,
        increment_attempts: bool = False,
        event_type: str | None = None,
        details: dict[str, object] | None = None,
        **fields: Any,
    ) -> JobView:
        """Move a job to `status` and update auxiliary fields.

        The write is keyed by job id only (last writer wins); the state
        machine is checked against the status read in the same session.
        """

        unknown = sorted(set(fields) - _TRANSITION_FIELDS)
        if unknown:
            raise ValueError(f"Unsupported job fields: {', '.join(unknown)}")

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(Job, job_id)
            if row is None:
                raise JobNotFoundError(job_id)
            current = JobStatus(row.status)
            if not can_transition(current, status):
                raise InvalidTransitionError(job_id, current.value, status.value)

            values: dict[str, Any] = {
                "status": status.value,
                "updated_at": to_db_datetime(now),
            }
            if increment_attempts:
                values["attempts"] = col(Job.attempts) + 1
            for name, value in fields.items():
                if name in {"processed_at", "run_after"}:
                    values[name] = to_db_datetime(value) if value is not None else None
                elif name == "result":
                    values["result_json"] = (
                        json.dumps(value, ensure_ascii=False, sort_keys=True)
                        if value is not None
                        else None
                    )
                else:
                    values[name] = value

            session.exec(sa_update(Job).where(col(Job.job_id) == job_id).values(**values))
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type or _DEFAULT_EVENT_TYPES[status],
                status_from=current,
                status_to=status,
                details=details or {},
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def mark_processing(self, job_id: str) -> JobView:
        """Claim one job for execution and count the attempt."""

        return self.transition(
            job_id,
            JobStatus.PROCESSING,
            increment_attempts=True,
            event_type="claimed",
        )

    def save_result(self, job_id: str, result: dict[str, Any]) -> bool:
        """Persist the analysis result snapshot on a processing job."""

        now = utc_now()
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.PROCESSING.value,
                )
                .values(
                    result_json=json.dumps(result, ensure_ascii=False, sort_keys=True),
                    updated_at=to_db_datetime(now),
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="result_saved",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.PROCESSING,
                details={},
            )
            session.commit()
            return True

    def complete_job(self, job_id: str) -> JobView:
        """Mark a processing job as completed."""

        return self.transition(
            job_id,
            JobStatus.COMPLETED,
            processed_at=utc_now(),
            last_error=None,
        )

    def requeue_job(
        self,
        job_id: str,
        *,
        error: str,
        run_after: datetime | None = None,
    ) -> JobView:
        """Return a processing job to the queue for automatic retry."""

        eligible_at = run_after or utc_now()
        return self.transition(
            job_id,
            JobStatus.PENDING,
            last_error=error,
            run_after=eligible_at,
            details={"run_after": to_utc_aware_datetime(eligible_at).isoformat()},
        )

    def fail_job(self, job_id: str, *, error: str) -> JobView:
        """Mark a processing job as permanently failed."""

        return self.transition(
            job_id,
            JobStatus.FAILED,
            last_error=error,
            details={"error": error},
        )

    def recover_stale_processing(
        self,
        *,
        stale_after: timedelta,
        now: datetime | None = None,
        on_failed: Callable[[str, str], None] | None = None,
    ) -> int:
        """Return jobs stuck in `processing` past the timeout to the queue.

        Jobs that already used all attempts are failed instead; after commit
        `on_failed(subject_id, error)` is called for each of them.
        """

        moment = now or utc_now()
        cutoff = to_db_datetime(moment - stale_after)
        recovered = 0
        failed_subjects: list[str] = []
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job).where(
                    Job.status == JobStatus.PROCESSING.value,
                    col(Job.updated_at) < cutoff,
                ),
            ).all()
            for row in rows:
                target = (
                    JobStatus.FAILED if row.attempts >= row.max_attempts else JobStatus.PENDING
                )
                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == row.job_id,
                        col(Job.status) == JobStatus.PROCESSING.value,
                    )
                    .values(
                        status=target.value,
                        last_error=STALE_PROCESSING_ERROR,
                        run_after=to_db_datetime(moment),
                        updated_at=to_db_datetime(moment),
                    ),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    job_id=row.job_id,
                    event_type="recovered",
                    status_from=JobStatus.PROCESSING,
                    status_to=target,
                    details={"attempts": row.attempts, "max_attempts": row.max_attempts},
                )
                recovered += 1
                if target is JobStatus.FAILED:
                    failed_subjects.append(row.subject_id)
                logger.warning(
                    "Recovered stale processing job %s -> %s",
                    row.job_id,
                    target.value,
                )
            session.commit()
        if on_failed is not None:
            for subject_id in failed_subjects:
                on_failed(subject_id, STALE_PROCESSING_ERROR)
        return recovered

    def purge_completed_older_than(
        self,
        duration: timedelta,
        *,
        now: datetime | None = None,
    ) -> int:
        """Delete completed jobs whose completion is older than `duration`."""

        cutoff = to_db_datetime((now or utc_now()) - duration)
        expired = select(Job.job_id).where(
            Job.status == JobStatus.COMPLETED.value,
            col(Job.processed_at) < cutoff,
        )
        with Session(self.engine) as session:
            session.exec(sa_delete(JobEvent).where(col(JobEvent.job_id).in_(expired)))
            result = session.exec(
                sa_delete(Job).where(
                    col(Job.status) == JobStatus.COMPLETED.value,
                    col(Job.processed_at) < cutoff,
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def get_stats(self) -> QueueStats:
        """Return job counts grouped by status."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Job.status, func.count()).group_by(Job.status),
            ).all()
        stats = QueueStats()
        for status, count in rows:
            if status in {item.value for item in JobStatus}:
                setattr(stats, status, int(count))
        return stats

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(Job, job_id)
            return _to_job_view(row) if row is not None else None

    def get_job_details(self, job_id: str) -> JobDetails | None:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            job = session.get(Job, job_id)
            if job is None:
                return None
            event_rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()
            view = _to_job_view(job)

        events = [
            JobEventView(
                event_id=row.id or 0,
                job_id=row.job_id,
                event_type=row.event_type,
                status_from=JobStatus(row.status_from) if row.status_from is not None else None,
                status_to=JobStatus(row.status_to) if row.status_to is not None else None,
                created_at=to_utc_aware_datetime(row.created_at),
                details=_load_json_object(row.details_json),
            )
            for row in event_rows
        ]
        return JobDetails(job=view, events=events)

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        kind: JobKind | None = None,
        subject_id: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, newest first."""

        with Session(self.engine) as session:
            statement = select(Job).order_by(col(Job.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            if kind is not None:
                statement = statement.where(Job.kind == kind.value)
            if subject_id is not None:
                statement = statement.where(Job.subject_id == subject_id)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def list_completed_results(
        self,
        *,
        kind: JobKind = JobKind.ANALYSIS,
        since: datetime,
        limit: int = 100,
    ) -> list[CompletedResult]:
        """Completed jobs carrying a result snapshot, latest completion first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(
                    Job.status == JobStatus.COMPLETED.value,
                    Job.kind == kind.value,
                    col(Job.result_json).is_not(None),
                    col(Job.processed_at) >= to_db_datetime(since),
                )
                .order_by(col(Job.processed_at).desc())
                .limit(limit),
            ).all()
        return [
            CompletedResult(
                job_id=row.job_id,
                subject_id=row.subject_id,
                result=_load_json_object(row.result_json),
                processed_at=to_utc_aware_datetime(row.processed_at or row.updated_at),
            )
            for row in rows
        ]

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _load_json_object(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _to_job_view(row: Job) -> JobView:
    return JobView(
        job_id=row.job_id,
        subject_id=row.subject_id,
        kind=JobKind(row.kind),
        status=JobStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        last_error=row.last_error,
        processed_at=optional_utc_aware(row.processed_at),
        payload=_load_json_object(row.payload_json),
        result=_load_json_object(row.result_json) if row.result_json is not None else None,
        run_after=to_utc_aware_datetime(row.run_after),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
