"""Domain models for the analysis job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class JobKind(str, Enum):
    """Closed set of job types the queue accepts."""

    ANALYSIS = "analysis"
    THUMBNAILING = "thumbnailing"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

# processing -> pending|failed also covers stale-job recovery after a crash.
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.COMPLETED, JobStatus.PENDING, JobStatus.FAILED},
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

SUBJECT_NOT_FOUND_ERROR = "subject not found"


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Whether the state machine permits moving from `current` to `target`."""

    return target in ALLOWED_TRANSITIONS[current]


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a job."""

    subject_id: str
    kind: JobKind = JobKind.ANALYSIS
    payload: dict[str, Any] = field(default_factory=dict)
    max_attempts: int = 3


@dataclass(slots=True)
class JobView:
    """Readable job view for CLI and dispatcher logic."""

    job_id: str
    subject_id: str
    kind: JobKind
    status: JobStatus
    attempts: int
    max_attempts: int
    last_error: str | None
    processed_at: datetime | None
    payload: dict[str, Any]
    result: dict[str, Any] | None
    run_after: datetime
    created_at: datetime
    updated_at: datetime

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    @property
    def locator(self) -> str | None:
        value = self.payload.get("locator")
        return value if isinstance(value, str) and value.strip() else None


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job details with event stream."""

    job: JobView
    events: list[JobEventView]


@dataclass(slots=True)
class QueueStats:
    """Job counts grouped by status."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.completed + self.failed

    def as_dict(self) -> dict[str, int]:
        return {
            JobStatus.PENDING.value: self.pending,
            JobStatus.PROCESSING.value: self.processing,
            JobStatus.COMPLETED.value: self.completed,
            JobStatus.FAILED.value: self.failed,
        }


@dataclass(slots=True)
class CompletedResult:
    """Result snapshot of a completed job, used to repair artifact writes."""

    job_id: str
    subject_id: str
    result: dict[str, Any]
    processed_at: datetime
