"""Queue error types."""

from __future__ import annotations


class QueueError(RuntimeError):
    """Base error raised by the job store."""


class JobNotFoundError(QueueError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidTransitionError(QueueError):
    def __init__(self, job_id: str, current: str, target: str) -> None:
        super().__init__(f"Job {job_id} cannot move from status={current} to status={target}.")
        self.job_id = job_id
        self.current = current
        self.target = target
