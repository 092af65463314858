"""Use-case services for producers of analysis work."""

from __future__ import annotations

import logging
from typing import Any

from analysis_queue.artifacts.repository import ArtifactCreate, ArtifactRepository, ArtifactView
from analysis_queue.queue.models import JobCreate, JobKind, JobView
from analysis_queue.queue.repository import JobRepository

logger = logging.getLogger(__name__)


class QueueService:
    """Stores artifacts and enqueues the jobs that analyze them."""

    def __init__(
        self,
        *,
        jobs: JobRepository,
        artifacts: ArtifactRepository,
        max_attempts: int = 3,
    ) -> None:
        self.jobs = jobs
        self.artifacts = artifacts
        self.max_attempts = max_attempts

    def enqueue(
        self,
        subject_id: str,
        *,
        kind: JobKind = JobKind.ANALYSIS,
        payload: dict[str, Any] | None = None,
        max_attempts: int | None = None,
    ) -> JobView:
        """Insert a pending job; the subject is resolved only when the job runs."""

        return self.jobs.enqueue(
            JobCreate(
                subject_id=subject_id,
                kind=kind,
                payload=dict(payload or {}),
                max_attempts=max_attempts if max_attempts is not None else self.max_attempts,
            ),
        )

    def register_artifact(self, payload: ArtifactCreate) -> tuple[ArtifactView, JobView]:
        """Record a stored upload and enqueue its analysis."""

        artifact = self.artifacts.create_artifact(payload)
        job = self.enqueue(artifact.artifact_id, payload={"locator": artifact.locator})
        return artifact, job

    def request_reprocessing(self, subject_id: str) -> JobView:
        """Submit a fresh analysis job; failed job records are left untouched."""

        artifact = self.artifacts.get_artifact(subject_id)
        if artifact is None:
            raise ValueError(f"Artifact not found: {subject_id}")
        job = self.enqueue(artifact.artifact_id, payload={"locator": artifact.locator})
        logger.info("Reprocessing requested for %s as job %s", subject_id, job.job_id)
        return job
